import pytest

from services.defillama_client import DefiLlamaClient
from services.opportunity_feed import OpportunityFeed, classify_risk, parse_pool

from conftest import NOW

VAULT = '0x' + 'ab' * 20
USDC = '0x' + 'cd' * 20


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload
        self.status = 200

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def raise_for_status(self):
        return None

    async def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.urls = []

    def get(self, url, timeout, **kwargs):
        if not self._responses:
            raise AssertionError("No more fake responses configured")
        self.urls.append(url)
        return FakeResponse(self._responses.pop(0))


class FakeDefiLlamaClient:
    def __init__(self, pools):
        self.pools = pools

    async def get_pools(self):
        return self.pools


def make_pool(**overrides):
    pool = {
        'pool': f"{VAULT}-base",
        'chain': 'Base',
        'project': 'aave-v3',
        'symbol': 'usdc',
        'apy': 5.25,
        'tvlUsd': 12_000_000,
        'ilRisk': 'no',
        'stablecoin': True,
        'underlyingTokens': [USDC],
    }
    pool.update(overrides)
    return pool


@pytest.mark.parametrize("pool, expected", [
    ({'ilRisk': 'no', 'stablecoin': True}, 'low'),
    ({'ilRisk': 'no', 'stablecoin': False}, 'medium'),
    ({'ilRisk': 'yes', 'stablecoin': True}, 'high'),
    ({}, 'high'),
])
def test_classify_risk(pool, expected):
    assert classify_risk(pool) == expected


def test_parse_pool_extracts_addresses_and_normalises_names():
    parsed = parse_pool(make_pool())

    assert parsed == {
        'protocol': 'aave-v3',
        'network': 'base',
        'asset': 'USDC',
        'apy': 5.25,
        'tvl': 12_000_000.0,
        'risk_level': 'low',
        'pool_address': VAULT,
        'asset_address': USDC,
        'external_id': f"{VAULT}-base",
    }


def test_parse_pool_without_onchain_addresses():
    parsed = parse_pool(make_pool(pool='747c1d2a-c668-4682-b9f9-296708a3dd90', underlyingTokens=[USDC, USDC], chain='Scroll'))

    assert parsed['pool_address'] is None
    assert parsed['asset_address'] is None
    assert parsed['network'] == 'scroll'


@pytest.mark.parametrize("overrides", [{"apy": None}, {"apy": "n/a"}])
def test_parse_pool_rejects_unusable_apy(overrides):
    assert parse_pool(make_pool(**overrides)) is None


def test_parse_pool_requires_pool_id():
    pool = make_pool()
    del pool["pool"]
    assert parse_pool(pool) is None


@pytest.mark.asyncio
async def test_refresh_applies_filters_and_upserts(repository):
    pools = [
        make_pool(),
        make_pool(pool='small', tvlUsd=10_000),
        make_pool(pool='other-chain', chain='Ethereum'),
        make_pool(pool='other-project', project='compound-v3'),
        make_pool(pool='broken', apy=None),
    ]
    feed = OpportunityFeed(
        repository,
        FakeDefiLlamaClient(pools),
        networks=['Base'],
        protocols=['AAVE-V3'],
        min_tvl=1_000_000,
    )

    assert await feed.refresh(NOW) == 1
    assert await feed.refresh(NOW) == 1

    [opportunity] = await feed.get_snapshot()
    assert opportunity.external_id == f"{VAULT}-base"
    assert opportunity.refreshed_at == NOW
    assert opportunity.asset == 'USDC'
    assert opportunity.risk_level == 'low'


@pytest.mark.asyncio
async def test_refresh_without_client_or_data_is_a_noop(repository):
    assert await OpportunityFeed(repository).refresh(NOW) == 0
    assert await OpportunityFeed(repository, FakeDefiLlamaClient(None)).refresh(NOW) == 0
    assert await repository.get_snapshot() == []


@pytest.mark.asyncio
async def test_defillama_client_returns_pool_list():
    session = FakeSession([{'status': 'success', 'data': [make_pool()]}])

    pools = await DefiLlamaClient(session).get_pools()

    assert pools == [make_pool()]
    assert session.urls == ['https://yields.llama.fi/pools']


@pytest.mark.asyncio
async def test_defillama_client_rejects_malformed_payload():
    session = FakeSession([{'status': 'error'}])

    assert await DefiLlamaClient(session).get_pools() is None
