#!/usr/bin/env python3
import asyncio
import time
from datetime import datetime, timezone
from typing import Optional, Dict, List

import aiohttp
from constants import (COINGECKO_API_BASE_URL, C_RED, C_RESET)
from strategy.models import PriceQuote

def log_error(message: str) -> None:
    """Centralized error logging."""
    print(f"{C_RED}{message}{C_RESET}")

async def api_get(url: str, session: aiohttp.ClientSession, params: Optional[Dict] = None, headers: Optional[Dict] = None, retries: int = 3, timeout: int = 10) -> Optional[Dict]:
    """Makes an async GET request with retries and timeout."""
    for attempt in range(retries):
        try:
            async with session.get(url, params=params, headers=headers, timeout=timeout) as response:
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientError as e:
            if attempt < retries - 1:
                await asyncio.sleep(2)
            else:
                log_error(f"API request failed after {retries} attempts: {e}")
                return None

class CoinGeckoClient:
    """Price feed for price-based strategy triggers."""

    def __init__(self, session: aiohttp.ClientSession, api_key: Optional[str] = None):
        self.session = session
        self.api_key = api_key
        self.headers = {'x-cg-demo-api-key': self.api_key} if self.api_key else {}
        self._last_request_time = 0.0
        self._rate_limit_delay = 6

    async def _wait_for_rate_limit(self):
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def get_price(self, coin_ids: List[str], vs_currencies: List[str]) -> Optional[Dict]:
        await self._wait_for_rate_limit()
        url = f"{COINGECKO_API_BASE_URL}/simple/price"
        params = {
            'ids': ",".join(coin_ids),
            'vs_currencies': ",".join(vs_currencies),
            'include_last_updated_at': 'true',
        }
        return await api_get(url, self.session, params=params, headers=self.headers)

    async def get_price_quotes(self, coin_ids: List[str]) -> Dict[str, PriceQuote]:
        """Returns USD quotes keyed by CoinGecko id, stamped with the feed's own update time."""
        if not coin_ids:
            return {}
        data = await self.get_price(sorted(set(coin_ids)), ['usd'])
        if not data:
            return {}

        quotes: Dict[str, PriceQuote] = {}
        for coin_id, payload in data.items():
            try:
                price = float(payload['usd'])
            except (KeyError, TypeError, ValueError):
                log_error(f"Could not parse USD price for '{coin_id}' from CoinGecko.")
                continue
            updated_at = payload.get('last_updated_at')
            timestamp = (
                datetime.fromtimestamp(updated_at, timezone.utc)
                if updated_at else datetime.now(timezone.utc)
            )
            quotes[coin_id] = PriceQuote(asset=coin_id, price=price, timestamp=timestamp)
        return quotes
