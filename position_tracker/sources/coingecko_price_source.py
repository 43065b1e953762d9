"""
CoinGecko Price Source
Live USD prices from the CoinGecko ``simple/price`` endpoint with a short
in-memory cache.
"""

import logging
import time
from typing import Dict, Any, List, Optional, Callable

import aiohttp

from position_tracker.sources.base import PriceSource
from position_tracker.utils.api_resilience import (
    ResilienceWrapper,
    RateLimitedError,
    ExpectedSourceError,
    SourceError,
    with_resilience
)

logger = logging.getLogger(__name__)

# Symbol to CoinGecko coin id
COINGECKO_IDS = {
    'AERO': 'aerodrome-finance',
    'ETH': 'ethereum',
    'WETH': 'weth',
    'USDC': 'usd-coin',
    'USDBC': 'usd-base-coin',
    'DAI': 'dai',
    'USDT': 'tether',
    'BTC': 'bitcoin',
    'WBTC': 'wrapped-bitcoin',
    'CBETH': 'coinbase-wrapped-staked-eth',
    'STETH': 'staked-ether',
    'RETH': 'rocket-pool-eth',
    'WELL': 'moonwell',
    'MAMO': 'mamo',
    'THE': 'thena',
    'GS': 'gammaswap',
    'MORPHO': 'morpho'
}


class CoinGeckoPriceSource(PriceSource):
    """Price source backed by the CoinGecko REST API"""

    def __init__(self,
                 base_url: str = 'https://api.coingecko.com/api/v3',
                 api_key: Optional[str] = None,
                 cache_ttl: float = 60,
                 timeout: float = 10,
                 resilience: Optional[ResilienceWrapper] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the price source

        Args:
            base_url (str): API base URL
            api_key (str, optional): Demo/pro API key
            cache_ttl (float): Seconds a fetched price stays valid
            timeout (float): Request timeout in seconds
            resilience (ResilienceWrapper, optional): Retry policy for requests
            session (aiohttp.ClientSession, optional): Shared HTTP session
            clock (Callable): Time source returning seconds
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.resilience = resilience or ResilienceWrapper()
        self.session = session
        self._owns_session = session is None
        self.clock = clock
        self._cache: Dict[str, Dict[str, float]] = {}

    @classmethod
    def from_config(cls, config_manager, resilience: Optional[ResilienceWrapper] = None) -> 'CoinGeckoPriceSource':
        return cls(
            base_url=config_manager.get('prices.base_url', 'https://api.coingecko.com/api/v3'),
            api_key=config_manager.get('prices.api_key'),
            cache_ttl=config_manager.get('prices.cache_ttl', 60),
            timeout=config_manager.get('prices.timeout', 10),
            resilience=resilience
        )

    async def ensure_session(self):
        """Ensure HTTP session exists"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True

    async def close(self):
        """Close the HTTP session if this source created it"""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def clear_cache(self):
        self._cache = {}

    @staticmethod
    def get_coin_id(symbol: str) -> Optional[str]:
        return COINGECKO_IDS.get(symbol.upper())

    async def get_price(self, symbol: str) -> float:
        prices = await self.get_prices([symbol])
        return prices.get(symbol, 0.0)

    async def get_prices(self, symbols: List[str]) -> Dict[str, float]:
        """
        Get prices for several symbols, serving fresh cache entries first

        Args:
            symbols (List[str]): Token symbols

        Returns:
            Dict[str, float]: Symbol to price for every symbol that could be priced
        """
        now = self.clock()
        result: Dict[str, float] = {}
        to_fetch: Dict[str, str] = {}

        for symbol in symbols:
            cached = self._cache.get(symbol.upper())
            if cached and now - cached['updated_at'] < self.cache_ttl:
                result[symbol] = cached['price']
                continue

            coin_id = self.get_coin_id(symbol)
            if coin_id:
                to_fetch[symbol] = coin_id
            else:
                logger.debug(f"No CoinGecko id for {symbol}")

        if to_fetch:
            data = await self._fetch_prices(sorted(set(to_fetch.values())))
            for symbol, coin_id in to_fetch.items():
                price = (data.get(coin_id) or {}).get('usd')
                if price is None:
                    continue
                price = float(price)
                self._cache[symbol.upper()] = {'price': price, 'updated_at': now}
                result[symbol] = price

        return result

    @with_resilience(fallback={})
    async def _fetch_prices(self, coin_ids: List[str]) -> Dict[str, Any]:
        return await self._request(coin_ids)

    async def _request(self, coin_ids: List[str]) -> Dict[str, Any]:
        """
        Call the simple/price endpoint

        Args:
            coin_ids (List[str]): CoinGecko coin ids

        Returns:
            Dict[str, Any]: Response body, e.g. {"ethereum": {"usd": 4500.0}}
        """
        await self.ensure_session()

        params = {'ids': ','.join(coin_ids), 'vs_currencies': 'usd'}
        headers = {}
        if self.api_key:
            headers['x-cg-demo-api-key'] = self.api_key

        async with self.session.get(f"{self.base_url}/simple/price",
                                    params=params,
                                    headers=headers) as response:
            if response.status == 429:
                raise RateLimitedError("CoinGecko rate limit", source='coingecko')
            if response.status == 404:
                raise ExpectedSourceError("CoinGecko returned 404", source='coingecko')
            if response.status != 200:
                raise SourceError(f"CoinGecko API error: {response.status}", source='coingecko')

            body = await response.json()

        if not isinstance(body, dict):
            raise ExpectedSourceError("Unexpected CoinGecko response shape", source='coingecko')
        return body
