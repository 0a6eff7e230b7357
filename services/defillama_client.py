#!/usr/bin/env python3
import asyncio
from typing import Optional, Dict, List

import aiohttp
from constants import (DEFILLAMA_YIELDS_API_BASE_URL, C_RED, C_RESET)

def log_error(message: str) -> None:
    """Centralized error logging."""
    print(f"{C_RED}{message}{C_RESET}")

async def api_get(url: str, session: aiohttp.ClientSession, retries: int = 3, timeout: int = 30) -> Optional[Dict]:
    """Makes an async GET request with retries and timeout."""
    for attempt in range(retries):
        try:
            async with session.get(url, timeout=timeout) as response:
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientError as e:
            if attempt < retries - 1:
                await asyncio.sleep(2)
            else:
                log_error(f"API request failed after {retries} attempts: {e}")
                return None

class DefiLlamaClient:
    def __init__(self, session: aiohttp.ClientSession):
        self.session = session

    async def get_pools(self) -> Optional[List[Dict]]:
        """Fetches every yield pool tracked by DefiLlama."""
        url = f"{DEFILLAMA_YIELDS_API_BASE_URL}/pools"
        data = await api_get(url, self.session)
        if data and isinstance(data.get('data'), list):
            return data['data']
        log_error("Could not parse pools from DefiLlama yields API response.")
        return None
