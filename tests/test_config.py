import argparse
import pytest
from config import load_config, AppConfig

ENVIRONMENT = {}


# Mock the os.environ.get to control environment variables during tests
def mock_environ_get(key, default=None):
    return ENVIRONMENT.get(key, default)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch):
    ENVIRONMENT.clear()
    monkeypatch.setattr('os.environ.get', mock_environ_get)


def make_args(**overrides):
    values = dict(
        db_path='data/yield_strategies.db',
        interval=60,
        max_workers=3,
        lease_ttl=300.0,
        freshness_bound=900.0,
        confirmation_timeout=180.0,
        pending_timeout=900.0,
        scheduler_enabled=False,
        refresh_opportunities=False,
        network=[],
        protocol=[],
        min_tvl=1_000_000.0,
        telegram_enabled=False,
        twitter_enabled=False,
        daily_summary_enabled=False,
        trade_rpc_url=None,
        trade_wallet_address=None,
        create_strategy=None,
        list_strategies=False,
        show_executions=False,
        executions_limit=20,
        strategy_id=None,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def use_args(monkeypatch, **overrides):
    monkeypatch.setattr('argparse.ArgumentParser.parse_args', lambda self: make_args(**overrides))


def test_defaults_produce_idle_config(monkeypatch):
    use_args(monkeypatch)

    config = load_config()

    assert isinstance(config, AppConfig)
    assert config.scheduler_enabled is False
    assert config.telegram_enabled is False
    assert config.max_workers == 3
    assert config.freshness_bound == 900.0
    assert config.trading_private_key is None


def test_network_and_protocol_filters_are_lowercased(monkeypatch):
    use_args(monkeypatch, network=['Base', 'ETHEREUM'], protocol=['Aave-V3'])

    config = load_config()

    assert config.networks == ['base', 'ethereum']
    assert config.protocols == ['aave-v3']


def test_scheduler_requires_rpc_url(monkeypatch):
    ENVIRONMENT['TRADING_PRIVATE_KEY'] = '0x' + '1' * 64
    use_args(monkeypatch, scheduler_enabled=True)

    with pytest.raises(SystemExit):
        load_config()


def test_scheduler_requires_private_key(monkeypatch):
    use_args(monkeypatch, scheduler_enabled=True, trade_rpc_url='http://localhost:8545')

    with pytest.raises(SystemExit):
        load_config()


def test_scheduler_enabled_with_trading_credentials(monkeypatch):
    ENVIRONMENT['TRADING_PRIVATE_KEY'] = '0x' + '1' * 64
    use_args(monkeypatch, scheduler_enabled=True, trade_rpc_url='http://localhost:8545', max_workers=5)

    config = load_config()

    assert config.scheduler_enabled is True
    assert config.trade_rpc_url == 'http://localhost:8545'
    assert config.trading_private_key == '0x' + '1' * 64
    assert config.max_workers == 5


def test_max_workers_must_be_positive(monkeypatch):
    use_args(monkeypatch, max_workers=0)

    with pytest.raises(SystemExit):
        load_config()


def test_telegram_requires_token_and_chat(monkeypatch):
    ENVIRONMENT['TELEGRAM_BOT_TOKEN'] = 'token'
    use_args(monkeypatch, telegram_enabled=True)

    with pytest.raises(SystemExit):
        load_config()

    ENVIRONMENT['TELEGRAM_CHAT_ID'] = '-100123'
    config = load_config()
    assert config.telegram_bot_token == 'token'
    assert config.telegram_chat_id == '-100123'


def test_twitter_requires_all_keys(monkeypatch):
    ENVIRONMENT.update({
        'TWITTER_API_KEY': 'key',
        'TWITTER_API_SECRET': 'secret',
        'TWITTER_ACCESS_TOKEN': 'token',
    })
    use_args(monkeypatch, twitter_enabled=True)

    with pytest.raises(SystemExit):
        load_config()

    ENVIRONMENT['TWITTER_ACCESS_TOKEN_SECRET'] = 'token-secret'
    assert load_config().twitter_enabled is True


@pytest.mark.parametrize("overrides", [
    {'lease_ttl': 185.0},
    {'lease_ttl': 120.0},
    {'confirmation_timeout': 400.0},
    {'pending_timeout': 185.0},
])
def test_timeouts_must_outlast_one_confirmation_wait(monkeypatch, overrides):
    use_args(monkeypatch, **overrides)

    with pytest.raises(SystemExit):
        load_config()


def test_lease_ttl_just_above_confirmation_wait_is_accepted(monkeypatch):
    use_args(monkeypatch, lease_ttl=185.5, pending_timeout=186.0)

    config = load_config()

    assert config.lease_ttl == 185.5
    assert config.pending_timeout == 186.0
