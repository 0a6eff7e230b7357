"""Opportunity snapshot store backed by the repository and refreshed from DefiLlama."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from constants import C_BLUE, C_RED, C_RESET, DEFILLAMA_CHAIN_NAMES
from services.defillama_client import DefiLlamaClient
from storage import SQLiteRepository
from storage.models import OpportunityRecord

_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def classify_risk(pool: dict) -> str:
    """Maps DefiLlama's impermanent-loss and stablecoin flags onto low/medium/high."""
    il_free = str(pool.get('ilRisk', '')).lower() == 'no'
    if il_free and pool.get('stablecoin'):
        return 'low'
    if il_free:
        return 'medium'
    return 'high'


def parse_pool(pool: dict) -> Optional[dict]:
    """Converts a DefiLlama pool into repository upsert kwargs, or None if unusable."""
    try:
        apy = float(pool['apy'])
        chain = str(pool['chain'])
        project = str(pool['project'])
        symbol = str(pool['symbol'])
        pool_id = str(pool['pool'])
    except (KeyError, TypeError, ValueError):
        return None

    vault_candidate = pool_id.split('-')[0]
    pool_address = vault_candidate.lower() if _ADDRESS_PATTERN.match(vault_candidate) else None

    underlying = pool.get('underlyingTokens') or []
    asset_address = None
    if len(underlying) == 1 and isinstance(underlying[0], str) and _ADDRESS_PATTERN.match(underlying[0]):
        asset_address = underlying[0].lower()

    tvl = pool.get('tvlUsd')
    return {
        'protocol': project,
        'network': DEFILLAMA_CHAIN_NAMES.get(chain, chain.lower()),
        'asset': symbol.upper(),
        'apy': apy,
        'tvl': float(tvl) if tvl is not None else None,
        'risk_level': classify_risk(pool),
        'pool_address': pool_address,
        'asset_address': asset_address,
        'external_id': pool_id,
    }


class OpportunityFeed:
    """Read-only opportunity snapshots for the evaluator, with an optional refresh step."""

    def __init__(
        self,
        repository: SQLiteRepository,
        defillama_client: Optional[DefiLlamaClient] = None,
        *,
        networks: Optional[Iterable[str]] = None,
        protocols: Optional[Iterable[str]] = None,
        min_tvl: float = 0.0,
    ) -> None:
        self.repository = repository
        self.defillama_client = defillama_client
        self.networks = {name.lower() for name in networks} if networks else None
        self.protocols = {name.lower() for name in protocols} if protocols else None
        self.min_tvl = min_tvl

    async def get_snapshot(
        self,
        protocol_ids: Optional[Iterable[int]] = None,
        network_ids: Optional[Iterable[int]] = None,
    ) -> list[OpportunityRecord]:
        return await self.repository.get_snapshot(protocol_ids, network_ids)

    async def refresh(self, now: Optional[datetime] = None) -> int:
        """Pulls current pools and upserts the ones matching the configured filters."""
        if self.defillama_client is None:
            return 0
        pools = await self.defillama_client.get_pools()
        if not pools:
            print(f"{C_RED}Opportunity refresh skipped: no pool data returned.{C_RESET}")
            return 0

        refreshed_at = now or datetime.now(timezone.utc)
        stored = 0
        for pool in pools:
            parsed = parse_pool(pool)
            if parsed is None:
                continue
            if self.networks is not None and parsed['network'] not in self.networks:
                continue
            if self.protocols is not None and parsed['protocol'].lower() not in self.protocols:
                continue
            if (parsed['tvl'] or 0.0) < self.min_tvl:
                continue
            await self.repository.upsert_opportunity(refreshed_at=refreshed_at, **parsed)
            stored += 1

        print(f"{C_BLUE}Refreshed {stored} opportunities from DefiLlama.{C_RESET}")
        return stored
