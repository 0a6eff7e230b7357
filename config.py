#!/usr/bin/env python3
import os
import argparse
from typing import NamedTuple
import constants

class AppConfig(NamedTuple):
    """Typed configuration object."""
    db_path: str
    interval: int
    max_workers: int
    lease_ttl: float
    freshness_bound: float
    confirmation_timeout: float
    pending_timeout: float
    scheduler_enabled: bool
    refresh_opportunities: bool
    networks: list[str]
    protocols: list[str]
    min_tvl: float
    telegram_enabled: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    daily_summary_enabled: bool
    twitter_enabled: bool
    twitter_api_key: str | None
    twitter_api_secret: str | None
    twitter_access_token: str | None
    twitter_access_token_secret: str | None
    coingecko_api_key: str | None
    trade_rpc_url: str | None
    trade_wallet_address: str | None
    trading_private_key: str | None
    create_strategy: str | None
    list_strategies: bool
    show_executions: bool
    executions_limit: int
    strategy_id: int | None


def load_config() -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Evaluate and execute automated yield strategies against live DeFi opportunities.",
        epilog="Example: ./main.py --scheduler-enabled --trade-rpc-url https://mainnet.base.org --network base"
    )
    # --- Engine Arguments ---
    parser.add_argument('--db-path', type=str, default='data/yield_strategies.db', help='SQLite database path (default: data/yield_strategies.db).')
    parser.add_argument('--interval', type=int, default=60, help='Seconds between scheduler wake-ups (default: 60).')
    parser.add_argument('--max-workers', type=int, default=constants.DEFAULT_MAX_WORKERS, help=f'Concurrent strategy workers (default: {constants.DEFAULT_MAX_WORKERS}).')
    parser.add_argument('--lease-ttl', type=float, default=constants.DEFAULT_LEASE_TTL, help=f'Seconds a strategy lease stays valid (default: {constants.DEFAULT_LEASE_TTL:g}).')
    parser.add_argument('--freshness-bound', type=float, default=constants.DEFAULT_FRESHNESS_BOUND, help=f'Max age in seconds of opportunity and price data (default: {constants.DEFAULT_FRESHNESS_BOUND:g}).')
    parser.add_argument('--confirmation-timeout', type=float, default=constants.DEFAULT_CONFIRMATION_TIMEOUT, help=f'Seconds to wait for a receipt (default: {constants.DEFAULT_CONFIRMATION_TIMEOUT:g}).')
    parser.add_argument('--pending-timeout', type=float, default=constants.DEFAULT_PENDING_TIMEOUT, help=f'Age in seconds after which pending executions are recovered (default: {constants.DEFAULT_PENDING_TIMEOUT:g}).')
    parser.add_argument('--scheduler-enabled', action='store_true', help='Run the strategy execution scheduler.')

    # --- Opportunity Feed Arguments ---
    parser.add_argument('--refresh-opportunities', action='store_true', help='Refresh opportunities from DefiLlama at every cycle.')
    parser.add_argument('--network', nargs='+', default=[], help='Only store opportunities on these networks (e.g. base ethereum).')
    parser.add_argument('--protocol', nargs='+', default=[], help='Only store opportunities from these protocols (DefiLlama project names).')
    parser.add_argument('--min-tvl', type=float, default=1_000_000.0, help='Minimum pool TVL in USD to store (default: 1000000).')

    # --- Notification Arguments ---
    parser.add_argument('--telegram-enabled', action='store_true', help='Enable the Telegram bot and notifications.')
    parser.add_argument('--twitter-enabled', action='store_true', help='Tweet successful executions.')
    parser.add_argument('--daily-summary-enabled', action='store_true', help='Send a daily execution summary to the admin chat.')

    # --- Trading Arguments ---
    parser.add_argument('--trade-rpc-url', type=str, help='RPC endpoint used to submit strategy transactions.')
    parser.add_argument('--trade-wallet-address', type=str, help='Optional wallet address; defaults to the signing key address.')

    # --- CLI Modes ---
    parser.add_argument('--create-strategy', type=str, metavar='FILE', help='Create a strategy from a JSON file and exit.')
    parser.add_argument('--list-strategies', action='store_true', help='List stored strategies and exit.')
    parser.add_argument('--show-executions', action='store_true', help='Display recent strategy executions and exit.')
    parser.add_argument('--executions-limit', type=int, default=20, help='Number of executions to display (default: 20).')
    parser.add_argument('--strategy-id', type=int, help='Filter executions by strategy id.')

    args = parser.parse_args()

    # Load from environment
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)
    coingecko_api_key = os.environ.get(constants.COINGECKO_API_KEY_ENV_VAR)
    twitter_api_key = os.environ.get(constants.TWITTER_API_KEY_ENV_VAR)
    twitter_api_secret = os.environ.get(constants.TWITTER_API_SECRET_ENV_VAR)
    twitter_access_token = os.environ.get(constants.TWITTER_ACCESS_TOKEN_ENV_VAR)
    twitter_access_token_secret = os.environ.get(constants.TWITTER_ACCESS_TOKEN_SECRET_ENV_VAR)
    trading_private_key = os.environ.get(constants.TRADING_PRIVATE_KEY_ENV_VAR)

    if args.max_workers < 1:
        print(f"{constants.C_RED}--max-workers must be at least 1.{constants.C_RESET}")
        exit(1)

    longest_step = args.confirmation_timeout + constants.CONFIRMATION_GRACE_SECONDS
    if args.lease_ttl <= longest_step:
        print(f"{constants.C_RED}--lease-ttl must be greater than --confirmation-timeout plus {constants.CONFIRMATION_GRACE_SECONDS:g}s ({longest_step:g}s).{constants.C_RESET}")
        exit(1)

    if args.pending_timeout <= longest_step:
        print(f"{constants.C_RED}--pending-timeout must be greater than --confirmation-timeout plus {constants.CONFIRMATION_GRACE_SECONDS:g}s ({longest_step:g}s).{constants.C_RESET}")
        exit(1)

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        print(f"{constants.C_RED}Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.{constants.C_RESET}")
        exit(1)

    if args.twitter_enabled and not (twitter_api_key and twitter_api_secret and twitter_access_token and twitter_access_token_secret):
        print(f"{constants.C_RED}Twitter is enabled, but one or more Twitter API environment variables are not set.{constants.C_RESET}")
        exit(1)

    if args.scheduler_enabled:
        if not args.trade_rpc_url:
            print(f"{constants.C_RED}--scheduler-enabled requires --trade-rpc-url to be specified.{constants.C_RESET}")
            exit(1)
        if not trading_private_key:
            print(f"{constants.C_RED}{constants.TRADING_PRIVATE_KEY_ENV_VAR} environment variable not set; required for --scheduler-enabled.{constants.C_RESET}")
            exit(1)

    return AppConfig(
        db_path=args.db_path,
        interval=args.interval,
        max_workers=args.max_workers,
        lease_ttl=args.lease_ttl,
        freshness_bound=args.freshness_bound,
        confirmation_timeout=args.confirmation_timeout,
        pending_timeout=args.pending_timeout,
        scheduler_enabled=args.scheduler_enabled,
        refresh_opportunities=args.refresh_opportunities,
        networks=[name.lower() for name in args.network],
        protocols=[name.lower() for name in args.protocol],
        min_tvl=args.min_tvl,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        daily_summary_enabled=args.daily_summary_enabled,
        twitter_enabled=args.twitter_enabled,
        twitter_api_key=twitter_api_key,
        twitter_api_secret=twitter_api_secret,
        twitter_access_token=twitter_access_token,
        twitter_access_token_secret=twitter_access_token_secret,
        coingecko_api_key=coingecko_api_key,
        trade_rpc_url=args.trade_rpc_url,
        trade_wallet_address=args.trade_wallet_address,
        trading_private_key=trading_private_key,
        create_strategy=args.create_strategy,
        list_strategies=args.list_strategies,
        show_executions=args.show_executions,
        executions_limit=args.executions_limit,
        strategy_id=args.strategy_id,
    )
