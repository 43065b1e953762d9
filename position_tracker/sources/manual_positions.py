"""
Manual Positions
Positions entered by hand for protocols without a working adapter
(staking dashboards without an API, brand new protocols). They are kept
in the persistence port and exposed to the aggregator as an ordinary
position source priced through a PriceSource.
"""

import logging
import time
import uuid
from typing import Dict, Any, List, Optional, Callable

from position_tracker.core.models import Position, PositionKind, PositionMetadata, TokenAmount
from position_tracker.core.storage import StorageBackend
from position_tracker.sources.base import PositionSource, PriceSource

logger = logging.getLogger(__name__)

STORAGE_KEY = 'manual-positions'


class ManualPosition:
    """A position entered by the user"""

    def __init__(self,
                 position_id: str,
                 wallet_address: str,
                 protocol: str,
                 kind: PositionKind,
                 tokens: List[Dict[str, Any]],
                 description: str = "",
                 apy: float = 0.0,
                 claimable_amount: Optional[str] = None,
                 notes: str = "",
                 is_active: bool = True,
                 created_at: Optional[float] = None,
                 updated_at: Optional[float] = None):
        """
        Initialize manual position

        Args:
            position_id (str): Store-assigned id
            wallet_address (str): Owning wallet
            protocol (str): Protocol label shown to the user
            kind (PositionKind): Position kind
            tokens (List[Dict[str, Any]]): [{address, symbol, name, amount, decimals}], amount in whole tokens
            description (str): Free-form description
            apy (float): APY entered by the user
            claimable_amount (str, optional): Claimable rewards, in units of the first token
            notes (str): Free-form notes
            is_active (bool): Inactive positions are not reported
            created_at (float, optional): Creation timestamp
            updated_at (float, optional): Last update timestamp
        """
        self.id = position_id
        self.wallet_address = wallet_address
        self.protocol = protocol
        self.kind = PositionKind(kind)
        self.tokens = tokens
        self.description = description
        self.apy = apy
        self.claimable_amount = claimable_amount
        self.notes = notes
        self.is_active = is_active
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'wallet_address': self.wallet_address,
            'protocol': self.protocol,
            'kind': self.kind.value,
            'tokens': self.tokens,
            'description': self.description,
            'apy': self.apy,
            'claimable_amount': self.claimable_amount,
            'notes': self.notes,
            'is_active': self.is_active,
            'created_at': self.created_at,
            'updated_at': self.updated_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManualPosition':
        return cls(
            position_id=data['id'],
            wallet_address=data['wallet_address'],
            protocol=data['protocol'],
            kind=PositionKind(data['kind']),
            tokens=list(data.get('tokens', [])),
            description=data.get('description', ''),
            apy=data.get('apy', 0.0),
            claimable_amount=data.get('claimable_amount'),
            notes=data.get('notes', ''),
            is_active=data.get('is_active', True),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at')
        )


class ManualPositionStore:
    """CRUD store for manual positions, persisted under one storage key"""

    REQUIRED_FIELDS = ('wallet_address', 'protocol', 'kind', 'tokens')

    def __init__(self, storage: StorageBackend, clock: Callable[[], float] = time.time):
        """
        Initialize the store

        Args:
            storage (StorageBackend): Persistence port
            clock (Callable): Time source returning seconds
        """
        self.storage = storage
        self.clock = clock
        self.positions: Dict[str, ManualPosition] = {}
        self._load()

    def _load(self):
        blob = self.storage.get(STORAGE_KEY) or {}
        self.positions = {
            position_id: ManualPosition.from_dict(data)
            for position_id, data in blob.get('positions', {}).items()
        }
        if self.positions:
            logger.info(f"Loaded {len(self.positions)} manual positions")

    def _save(self):
        self.storage.set(STORAGE_KEY, {
            'positions': {pid: pos.to_dict() for pid, pos in self.positions.items()}
        })

    @staticmethod
    def _generate_id() -> str:
        return uuid.uuid4().hex

    def add_position(self, data: Dict[str, Any]) -> str:
        """
        Add a manual position

        Args:
            data (Dict[str, Any]): Position fields without id and timestamps

        Returns:
            str: New position id

        Raises:
            ValueError: If required fields are missing
        """
        missing = [name for name in self.REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise ValueError(f"Manual position is missing required fields: {', '.join(missing)}")

        now = self.clock()
        fields = dict(data)
        fields.update({'id': self._generate_id(), 'created_at': now, 'updated_at': now})
        fields.setdefault('is_active', True)

        position = ManualPosition.from_dict(fields)
        self.positions[position.id] = position
        self._save()
        return position.id

    def update_position(self, position_id: str, updates: Dict[str, Any]) -> bool:
        """
        Update fields of a manual position. Id and creation time never change.

        Args:
            position_id (str): Position id
            updates (Dict[str, Any]): Fields to overwrite

        Returns:
            bool: False if the position does not exist
        """
        position = self.positions.get(position_id)
        if position is None:
            return False

        fields = position.to_dict()
        fields.update(updates)
        fields['id'] = position.id
        fields['created_at'] = position.created_at
        fields['updated_at'] = self.clock()

        self.positions[position_id] = ManualPosition.from_dict(fields)
        self._save()
        return True

    def remove_position(self, position_id: str) -> bool:
        if self.positions.pop(position_id, None) is None:
            return False
        self._save()
        return True

    def get_position(self, position_id: str) -> Optional[ManualPosition]:
        return self.positions.get(position_id)

    def get_all_positions(self) -> List[ManualPosition]:
        return list(self.positions.values())

    def get_positions_for_wallet(self, wallet_address: str) -> List[ManualPosition]:
        """Active manual positions of a wallet (address match is case-insensitive)"""
        wallet = wallet_address.lower()
        return [
            pos for pos in self.positions.values()
            if pos.wallet_address.lower() == wallet and pos.is_active
        ]

    def export_positions(self) -> List[Dict[str, Any]]:
        return [pos.to_dict() for pos in self.positions.values()]

    def import_positions(self, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Import exported positions under fresh ids

        Args:
            items (List[Dict[str, Any]]): Exported position dictionaries

        Returns:
            Dict[str, Any]: {'success', 'imported', 'errors'}
        """
        errors = []
        imported = 0

        for item in items:
            try:
                fields = {k: v for k, v in item.items() if k not in ('id', 'created_at', 'updated_at')}
                fields['is_active'] = True
                self.add_position(fields)
                imported += 1
            except (ValueError, KeyError) as e:
                errors.append(f"Failed to import position: {str(e)}")

        return {'success': not errors, 'imported': imported, 'errors': errors}


class ManualPositionSource(PositionSource):
    """Exposes a wallet's manual positions to the aggregator"""

    source_name = "manual"

    def __init__(self, store: ManualPositionStore, price_source: PriceSource):
        """
        Initialize the source

        Args:
            store (ManualPositionStore): Manual position store
            price_source (PriceSource): Used to value token amounts
        """
        self.store = store
        self.price_source = price_source

    async def fetch_positions(self, wallet_address: str) -> List[Position]:
        positions = []

        for manual in self.store.get_positions_for_wallet(wallet_address):
            tokens = []
            for token in manual.tokens:
                price = await self.price_source.get_price(token['symbol']) or 0.0
                tokens.append(TokenAmount.from_amount(
                    symbol=token['symbol'],
                    amount=token.get('amount') or '0',
                    unit_price=price,
                    decimals=token.get('decimals', 18),
                    address=token.get('address', ''),
                    name=token.get('name', '')
                ))

            claimable = 0.0
            if manual.claimable_amount and manual.tokens:
                # Claimable is denominated in the first token
                first = manual.tokens[0]
                price = await self.price_source.get_price(first['symbol']) or 0.0
                claimable = float(manual.claimable_amount) * price

            positions.append(Position(
                position_id=f"manual-{manual.id}",
                protocol='manual',
                kind=manual.kind,
                tokens=tokens,
                apy=manual.apy or 0.0,
                claimable=claimable,
                metadata=PositionMetadata(payload={
                    'manual_position_id': manual.id,
                    'protocol': manual.protocol,
                    'description': manual.description,
                    'notes': manual.notes,
                    'created_at': manual.created_at,
                    'updated_at': manual.updated_at
                })
            ))

        return positions
