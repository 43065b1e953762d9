"""
Position Models
Core data types shared by the aggregator, the cost-basis ledger,
the snapshot store and the analytics layer.
"""

import logging
import time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, List, Any, Optional

logger = logging.getLogger(__name__)


class PositionKind(Enum):
    """Kinds of economic exposure a position can represent"""
    TOKEN = "token"
    LENDING = "lending"
    LIQUIDITY = "liquidity"
    STAKING = "staking"
    YIELD_FARMING = "yield-farming"
    BORROWING = "borrowing"


class TokenAmount:
    """A token balance held inside a position, valued in USD"""

    def __init__(self,
                 symbol: str,
                 address: str = "",
                 balance: str = "0",
                 decimals: int = 18,
                 unit_price: float = 0.0,
                 name: str = ""):
        """
        Initialize token amount

        Args:
            symbol (str): Token symbol
            address (str): Token contract address
            balance (str): Raw balance in the token's smallest unit, as a decimal string
            decimals (int): Token decimals used to scale the raw balance
            unit_price (float): USD price of one whole token
            name (str): Human readable token name
        """
        self.symbol = symbol
        self.address = address
        self.balance = str(balance)
        self.decimals = int(decimals)
        self.unit_price = float(unit_price) if unit_price and unit_price > 0 else 0.0
        self.name = name

    @property
    def amount(self) -> Decimal:
        """Balance scaled by decimals"""
        try:
            raw = Decimal(self.balance)
        except InvalidOperation:
            logger.warning(f"Invalid balance '{self.balance}' for {self.symbol}, treating as zero")
            return Decimal(0)
        if raw < 0:
            return Decimal(0)
        return raw.scaleb(-self.decimals)

    @property
    def value(self) -> float:
        """USD value of the balance, never negative"""
        return max(0.0, float(self.amount) * self.unit_price)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'address': self.address,
            'name': self.name,
            'balance': self.balance,
            'decimals': self.decimals,
            'unit_price': self.unit_price,
            'value': self.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TokenAmount':
        return cls(
            symbol=data['symbol'],
            address=data.get('address', ''),
            balance=data.get('balance', '0'),
            decimals=data.get('decimals', 18),
            unit_price=data.get('unit_price', 0.0),
            name=data.get('name', '')
        )

    @classmethod
    def from_amount(cls,
                    symbol: str,
                    amount: Any,
                    unit_price: float,
                    decimals: int = 18,
                    address: str = "",
                    name: str = "") -> 'TokenAmount':
        """
        Build a token amount from a human readable quantity

        Args:
            symbol (str): Token symbol
            amount (Any): Whole-token quantity (e.g. "1.5")
            unit_price (float): USD price of one whole token
            decimals (int): Token decimals
            address (str): Token contract address
            name (str): Token name

        Returns:
            TokenAmount: Token amount with the raw balance filled in
        """
        raw = Decimal(str(amount)).scaleb(decimals).quantize(Decimal(1))
        return cls(symbol, address, str(raw), decimals, unit_price, name)


class PositionMetadata:
    """
    Narrow common metadata contract for a position.

    The core reads only the typed flags below. Everything a protocol adapter
    wants to attach (tick ranges, gauges, markets) lives in ``payload`` and is
    carried through untouched.
    """

    def __init__(self,
                 is_debt: bool = False,
                 auto_compounding: bool = False,
                 network: Optional[str] = None,
                 payload: Optional[Dict[str, Any]] = None):
        self.is_debt = is_debt
        self.auto_compounding = auto_compounding
        self.network = network
        self.payload = dict(payload or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_debt': self.is_debt,
            'auto_compounding': self.auto_compounding,
            'network': self.network,
            'payload': self.payload
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PositionMetadata':
        data = data or {}
        return cls(
            is_debt=bool(data.get('is_debt', False)),
            auto_compounding=bool(data.get('auto_compounding', False)),
            network=data.get('network'),
            payload=data.get('payload')
        )


class Position:
    """A single economic exposure at one protocol"""

    def __init__(self,
                 position_id: str,
                 protocol: str,
                 kind: PositionKind,
                 tokens: Optional[List[TokenAmount]] = None,
                 apy: float = 0.0,
                 value: Optional[float] = None,
                 claimable: float = 0.0,
                 metadata: Optional[PositionMetadata] = None):
        """
        Initialize position

        Args:
            position_id (str): Stable id, deterministic per source and instance
            protocol (str): Protocol identifier (e.g. "aave", "uniswap-v3")
            kind (PositionKind): Position kind
            tokens (List[TokenAmount], optional): Underlying token balances
            apy (float): Annual percentage yield
            value (float, optional): USD value, defaults to the sum of token values
            claimable (float): USD value of claimable rewards
            metadata (PositionMetadata, optional): Typed flags plus opaque payload
        """
        self.id = position_id
        self.protocol = protocol
        self.kind = PositionKind(kind)
        self.tokens = list(tokens or [])
        self.apy = float(apy or 0.0)
        self.value = float(value) if value is not None else sum(t.value for t in self.tokens)
        self.claimable = float(claimable or 0.0)
        self.metadata = metadata or PositionMetadata()

    @property
    def is_debt(self) -> bool:
        return self.kind == PositionKind.BORROWING or self.metadata.is_debt

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'protocol': self.protocol,
            'kind': self.kind.value,
            'tokens': [t.to_dict() for t in self.tokens],
            'apy': self.apy,
            'value': self.value,
            'claimable': self.claimable,
            'metadata': self.metadata.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(
            position_id=data['id'],
            protocol=data['protocol'],
            kind=PositionKind(data.get('kind', 'token')),
            tokens=[TokenAmount.from_dict(t) for t in data.get('tokens', [])],
            apy=data.get('apy', 0.0),
            value=data.get('value'),
            claimable=data.get('claimable', 0.0),
            metadata=PositionMetadata.from_dict(data.get('metadata'))
        )

    def __repr__(self) -> str:
        return f"Position(id={self.id!r}, protocol={self.protocol!r}, value={self.value:.2f})"


class PositionEntry:
    """Cost basis anchor recorded the first time a position id is observed"""

    def __init__(self,
                 position_id: str,
                 entry_timestamp: float,
                 entry_value: float,
                 tokens: List[Dict[str, Any]],
                 protocol: str,
                 kind: str):
        self.position_id = position_id
        self.entry_timestamp = entry_timestamp
        self.entry_value = entry_value
        # [{symbol, balance, decimals, entry_price}]
        self.tokens = tokens
        self.protocol = protocol
        self.kind = kind

    @classmethod
    def from_position(cls, position: Position, timestamp: Optional[float] = None) -> 'PositionEntry':
        return cls(
            position_id=position.id,
            entry_timestamp=timestamp if timestamp is not None else time.time(),
            entry_value=position.value,
            tokens=[{
                'symbol': t.symbol,
                'balance': t.balance,
                'decimals': t.decimals,
                'entry_price': t.unit_price
            } for t in position.tokens],
            protocol=position.protocol,
            kind=position.kind.value
        )

    def token_entry(self, symbol: str) -> Optional[Dict[str, Any]]:
        for token in self.tokens:
            if token['symbol'] == symbol:
                return token
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_id': self.position_id,
            'entry_timestamp': self.entry_timestamp,
            'entry_value': self.entry_value,
            'tokens': self.tokens,
            'protocol': self.protocol,
            'kind': self.kind
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PositionEntry':
        return cls(
            position_id=data['position_id'],
            entry_timestamp=data['entry_timestamp'],
            entry_value=data['entry_value'],
            tokens=list(data.get('tokens', [])),
            protocol=data.get('protocol', ''),
            kind=data.get('kind', 'token')
        )


class PositionSnapshot:
    """Point-in-time valuation of one position"""

    def __init__(self,
                 position_id: str,
                 timestamp: float,
                 value: float,
                 tokens: List[Dict[str, Any]],
                 apy: float,
                 protocol: str):
        self.position_id = position_id
        self.timestamp = timestamp
        self.value = value
        # [{symbol, balance, unit_price, value}]
        self.tokens = tokens
        self.apy = apy
        self.protocol = protocol

    @classmethod
    def from_position(cls, position: Position, timestamp: float) -> 'PositionSnapshot':
        return cls(
            position_id=position.id,
            timestamp=timestamp,
            value=position.value,
            tokens=[{
                'symbol': t.symbol,
                'balance': t.balance,
                'unit_price': t.unit_price,
                'value': t.value
            } for t in position.tokens],
            apy=position.apy,
            protocol=position.protocol
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_id': self.position_id,
            'timestamp': self.timestamp,
            'value': self.value,
            'tokens': self.tokens,
            'apy': self.apy,
            'protocol': self.protocol
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PositionSnapshot':
        return cls(
            position_id=data['position_id'],
            timestamp=data['timestamp'],
            value=data.get('value', 0.0),
            tokens=list(data.get('tokens', [])),
            apy=data.get('apy', 0.0),
            protocol=data.get('protocol', '')
        )


class LedgerState:
    """Running cost basis for one asset"""

    def __init__(self,
                 symbol: str = "",
                 balance: float = 0.0,
                 total_invested: float = 0.0,
                 realized_pnl: float = 0.0):
        self.symbol = symbol
        self.balance = balance
        self.total_invested = total_invested
        self.realized_pnl = realized_pnl

    @property
    def average_cost(self) -> float:
        """Average buy price, 0 when nothing is held"""
        if self.balance > 0:
            return self.total_invested / self.balance
        return 0.0

    def unrealized_pnl(self, current_value: float) -> float:
        return current_value - self.total_invested + self.realized_pnl

    def unrealized_pnl_percent(self, current_value: float) -> float:
        if self.total_invested == 0:
            return 0.0
        return self.unrealized_pnl(current_value) / self.total_invested * 100

    def copy(self) -> 'LedgerState':
        return LedgerState(self.symbol, self.balance, self.total_invested, self.realized_pnl)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'balance': self.balance,
            'total_invested': self.total_invested,
            'realized_pnl': self.realized_pnl
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerState':
        return cls(
            symbol=data.get('symbol', ''),
            balance=data.get('balance', 0.0),
            total_invested=data.get('total_invested', 0.0),
            realized_pnl=data.get('realized_pnl', 0.0)
        )


class Transaction:
    """
    A wallet transaction as seen by the ledger.

    ``token_in`` / ``amount_in`` is the inflow leg and ``token_out`` /
    ``amount_out`` the outflow leg; a swap carries both. ``value_usd`` values
    each leg present.
    """

    def __init__(self,
                 tx_hash: str,
                 timestamp: float,
                 value_usd: float,
                 token_in: Optional[str] = None,
                 amount_in: Optional[float] = None,
                 token_out: Optional[str] = None,
                 amount_out: Optional[float] = None,
                 tx_type: str = "transfer",
                 symbol_in: Optional[str] = None,
                 symbol_out: Optional[str] = None,
                 gas_cost_usd: float = 0.0):
        self.hash = tx_hash
        self.timestamp = timestamp
        self.value_usd = float(value_usd or 0.0)
        self.token_in = token_in
        self.amount_in = float(amount_in) if amount_in is not None else None
        self.token_out = token_out
        self.amount_out = float(amount_out) if amount_out is not None else None
        self.tx_type = tx_type
        self.symbol_in = symbol_in
        self.symbol_out = symbol_out
        self.gas_cost_usd = gas_cost_usd

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hash': self.hash,
            'timestamp': self.timestamp,
            'value_usd': self.value_usd,
            'token_in': self.token_in,
            'amount_in': self.amount_in,
            'token_out': self.token_out,
            'amount_out': self.amount_out,
            'tx_type': self.tx_type,
            'symbol_in': self.symbol_in,
            'symbol_out': self.symbol_out,
            'gas_cost_usd': self.gas_cost_usd
        }
