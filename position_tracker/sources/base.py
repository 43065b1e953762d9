"""
Source Interfaces
Abstract contracts for position sources (protocol adapters) and price
sources, plus the fallback-table price source used by the rest of the
tracker.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from position_tracker.core.models import Position

logger = logging.getLogger(__name__)


class PositionSource(ABC):
    """
    Abstract base class for position sources.
    Each implementation wraps one protocol adapter and must expose a stable
    ``source_name``, used to key its circuit breaker. Position ids must be
    prefixed with the source so they cannot collide across sources.
    """

    source_name = "abstract"

    @abstractmethod
    async def fetch_positions(self, wallet_address: str) -> List[Position]:
        """
        Fetch all positions held by a wallet

        Args:
            wallet_address (str): Wallet address

        Returns:
            List[Position]: Positions, possibly empty
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source_name={self.source_name!r})"


class PriceSource(ABC):
    """Abstract base class for USD price lookups by symbol"""

    @abstractmethod
    async def get_price(self, symbol: str) -> float:
        """
        Get the USD price of one whole token

        Args:
            symbol (str): Token symbol

        Returns:
            float: Price in USD (0 or negative means unknown)
        """
        pass

    async def get_prices(self, symbols: List[str]) -> Dict[str, float]:
        prices = {}
        for symbol in symbols:
            prices[symbol] = await self.get_price(symbol)
        return prices


class StaticPriceSource(PriceSource):
    """Price source answering from a fixed table"""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = {symbol.upper(): price for symbol, price in (prices or {}).items()}

    async def get_price(self, symbol: str) -> float:
        return self.prices.get(symbol.upper(), 0.0)


class FallbackPriceSource(PriceSource):
    """
    Price source that never fails: the live source is asked first and the
    deterministic fallback table answers whenever the live source errors or
    returns a non-positive price.
    """

    def __init__(self,
                 live_source: Optional[PriceSource],
                 fallback_prices: Dict[str, float],
                 default_price: float = 1.0):
        """
        Initialize the price source

        Args:
            live_source (PriceSource, optional): Live price source
            fallback_prices (Dict[str, float]): Symbol to USD fallback price
            default_price (float): Price for symbols missing from the table
        """
        self.live_source = live_source
        self.fallback_prices = {symbol.upper(): price for symbol, price in fallback_prices.items()}
        self.default_price = default_price

    def get_fallback_price(self, symbol: str) -> float:
        return self.fallback_prices.get(symbol.upper(), self.default_price)

    async def get_price(self, symbol: str) -> float:
        if self.live_source is not None:
            try:
                price = await self.live_source.get_price(symbol)
                if price and price > 0:
                    return price
            except Exception as e:
                logger.warning(f"Failed to get price for {symbol}, using fallback: {e}")
        return self.get_fallback_price(symbol)

    async def get_prices(self, symbols: List[str]) -> Dict[str, float]:
        live_prices: Dict[str, float] = {}
        if self.live_source is not None:
            try:
                live_prices = await self.live_source.get_prices(symbols)
            except Exception as e:
                logger.warning(f"Failed to get token prices, using fallbacks: {e}")

        result = {}
        for symbol in symbols:
            price = live_prices.get(symbol)
            result[symbol] = price if price and price > 0 else self.get_fallback_price(symbol)
        return result
