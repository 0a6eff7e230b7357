#!/usr/bin/env python3
import asyncio
import json
import aiohttp
import time
from datetime import datetime, time as dt_time, timezone
from telegram import BotCommand
from telegram.ext import Application, CommandHandler, ContextTypes
from telegram.error import TimedOut, TelegramError

import constants
from config import AppConfig, load_config
from bot.handlers import (
    help_command,
    status_command,
    strategies_command,
    executions_command,
    pause_command,
    resume_command,
    delete_command,
    run_command,
    opportunities_command,
    stats_command,
    subscribe_command,
    link_command,
)
from services.chain_client import Web3ChainClient
from services.coingecko_client import CoinGeckoClient
from services.defillama_client import DefiLlamaClient
from services.notifier import NotificationDispatcher
from services.opportunity_feed import OpportunityFeed
from services.twitter_client import TwitterClient
from storage import SQLiteRepository
from strategy.errors import InvalidStrategy
from strategy.evaluator import ConditionEvaluator
from strategy.executor import ActionExecutor
from strategy.scheduler import ExecutionScheduler
from reports.execution_summary import ExecutionSummaryBuilder


def build_twitter_client(config: AppConfig) -> TwitterClient | None:
    if not config.twitter_enabled:
        return None
    try:
        twitter_client = TwitterClient(config)
        print("Twitter client initialized.")
        return twitter_client
    except ValueError as e:
        print(f"Could not initialize Twitter client: {e}")
        return None


def build_scheduler(
    config: AppConfig,
    session: aiohttp.ClientSession,
    repository: SQLiteRepository,
    notifier: NotificationDispatcher,
    bot_data: dict,
) -> tuple[ExecutionScheduler, Web3ChainClient]:
    """Wires the engine components for the configured wallet."""
    chain_client = Web3ChainClient(
        rpc_url=config.trade_rpc_url,
        private_key=config.trading_private_key,
        wallet_address=config.trade_wallet_address,
    )
    opportunity_feed = OpportunityFeed(
        repository,
        DefiLlamaClient(session),
        networks=config.networks,
        protocols=config.protocols,
        min_tvl=config.min_tvl,
    )
    scheduler = ExecutionScheduler(
        repository,
        opportunity_feed,
        ConditionEvaluator(config.freshness_bound),
        ActionExecutor(chain_client, config.confirmation_timeout),
        notifier=notifier,
        price_feed=CoinGeckoClient(session, config.coingecko_api_key),
        chain_client=chain_client,
        interval=config.interval,
        max_workers=config.max_workers,
        lease_ttl=config.lease_ttl,
        pending_timeout=config.pending_timeout,
        refresh_opportunities=config.refresh_opportunities,
        bot_data=bot_data,
    )
    return scheduler, chain_client


async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    # Create and store a single, shared aiohttp session
    session = aiohttp.ClientSession(headers={'User-Agent': 'YieldStrategyBot/1.0'})
    application.bot_data['http_session'] = session

    config: AppConfig = application.bot_data['config']
    repository: SQLiteRepository = application.bot_data['repository']

    twitter_client = build_twitter_client(config)
    application.bot_data['twitter_client'] = twitter_client

    notifier = NotificationDispatcher(
        bot=application.bot,
        repository=repository,
        admin_chat_id=config.telegram_chat_id,
        twitter_client=twitter_client,
    )
    application.bot_data['notifier'] = notifier

    # Set bot commands
    commands = [
        BotCommand("status", "Check bot status"),
        BotCommand("strategies", "List strategies"),
        BotCommand("executions", "Show recent executions"),
        BotCommand("run", "Evaluate a strategy now"),
        BotCommand("pause", "Pause a strategy"),
        BotCommand("resume", "Resume a strategy"),
        BotCommand("opportunities", "Show top opportunities"),
        BotCommand("stats", "Show execution totals"),
        BotCommand("subscribe", "Toggle execution notifications"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to set Telegram bot commands ({exc})."
            f" Continuing startup without updating commands.{constants.C_RESET}"
        )

    # Prepare daily summary builder & schedule
    if config.daily_summary_enabled:
        application.bot_data['execution_summary_builder'] = ExecutionSummaryBuilder(repository=repository)
        if application.job_queue:
            application.job_queue.run_daily(
                run_execution_summary,
                time=dt_time(hour=8, minute=0, tzinfo=timezone.utc),
                name="execution-daily-summary",
            )
        else:
            print(f"{constants.C_YELLOW}Daily summary enabled but the job queue is unavailable; skipping schedule.{constants.C_RESET}")

    # Start scheduler task if enabled
    if config.scheduler_enabled:
        try:
            scheduler, chain_client = build_scheduler(config, session, repository, notifier, application.bot_data)
        except Exception as exc:
            print(f"{constants.C_RED}Failed to initialise strategy scheduler: {exc}{constants.C_RESET}")
            exit(1)
        application.bot_data['scheduler'] = scheduler
        application.bot_data['chain_client'] = chain_client
        application.bot_data['scheduler_task'] = asyncio.create_task(scheduler.start())
        print("Strategy scheduler started.")


async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    scheduler_task = application.bot_data.get('scheduler_task')
    if scheduler_task:
        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)
    session = application.bot_data.get('http_session')
    if session:
        await session.close()
    chain_client = application.bot_data.get('chain_client')
    if chain_client:
        await chain_client.close()
    repository = application.bot_data.get('repository')
    if repository:
        await repository.close()


async def run_execution_summary(context: ContextTypes.DEFAULT_TYPE) -> None:
    application = context.application
    config = application.bot_data.get('config')
    builder: ExecutionSummaryBuilder | None = application.bot_data.get('execution_summary_builder')
    if not builder or not config:
        return

    try:
        result = await builder.build()
    except Exception as exc:
        print(f"{constants.C_RED}Daily summary generation failed: {exc}{constants.C_RESET}")
        return

    if not result.has_content:
        print("Daily summary skipped: no strategy executions in the last 24h.")
        return

    try:
        await application.bot.send_message(
            chat_id=config.telegram_chat_id,
            text=result.message_text,
            parse_mode='HTML',
        )
        print(f"{constants.C_GREEN}Daily execution summary sent at {datetime.now(timezone.utc).isoformat()}{constants.C_RESET}")
    except TelegramError as exc:
        print(f"{constants.C_RED}Failed to send daily summary: {exc}{constants.C_RESET}")


async def run_headless(config: AppConfig, repository: SQLiteRepository) -> None:
    """Runs the scheduler without Telegram; notifications are only tweeted when enabled."""
    bot_data: dict = {'config': config, 'start_time': time.time()}
    async with aiohttp.ClientSession(headers={'User-Agent': 'YieldStrategyBot/1.0'}) as session:
        notifier = NotificationDispatcher(repository=repository, twitter_client=build_twitter_client(config))
        scheduler, chain_client = build_scheduler(config, session, repository, notifier, bot_data)
        try:
            await scheduler.start()
        finally:
            await chain_client.close()
            await repository.close()


async def create_strategy_from_file(repository: SQLiteRepository, path: str) -> None:
    try:
        with open(path, encoding='utf-8') as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"{constants.C_RED}Could not read strategy file {path}: {exc}{constants.C_RESET}")
        exit(1)

    try:
        strategy = await repository.create_strategy(payload)
    except InvalidStrategy as exc:
        print(f"{constants.C_RED}Invalid strategy: {exc}{constants.C_RESET}")
        exit(1)
    print(f"{constants.C_GREEN}Created strategy #{strategy.id} '{strategy.name}' ({strategy.trigger_type}).{constants.C_RESET}")


async def _run_cli(config: AppConfig, repository: SQLiteRepository) -> None:
    try:
        if config.create_strategy:
            await create_strategy_from_file(repository, config.create_strategy)
        elif config.list_strategies:
            _print_strategies(await repository.list_strategies())
        elif config.show_executions:
            records = await repository.fetch_executions(strategy_id=config.strategy_id, limit=config.executions_limit)
            _print_executions(records, config.executions_limit, config.strategy_id)
    finally:
        await repository.close()


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    repository = SQLiteRepository(config.db_path)

    if config.create_strategy or config.list_strategies or config.show_executions:
        asyncio.run(_run_cli(config, repository))
        return

    if not config.telegram_enabled or not config.telegram_bot_token:
        print("Telegram is not configured. The application will run in headless mode.")
        if not config.scheduler_enabled:
            print(f"{constants.C_YELLOW}Nothing to run: pass --scheduler-enabled or --telegram-enabled.{constants.C_RESET}")
            asyncio.run(repository.close())
            return
        try:
            asyncio.run(run_headless(config, repository))
        except KeyboardInterrupt:
            print("Shutting down.")
        return

    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    # Store config and other shared data
    application.bot_data['config'] = config
    application.bot_data['start_time'] = time.time()
    application.bot_data['repository'] = repository
    application.bot_data['scheduler'] = None

    # Register command handlers
    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("strategies", strategies_command))
    application.add_handler(CommandHandler("executions", executions_command))
    application.add_handler(CommandHandler("run", run_command))
    application.add_handler(CommandHandler("pause", pause_command))
    application.add_handler(CommandHandler("resume", resume_command))
    application.add_handler(CommandHandler("delete", delete_command))
    application.add_handler(CommandHandler("opportunities", opportunities_command))
    application.add_handler(CommandHandler("stats", stats_command))
    application.add_handler(CommandHandler("subscribe", subscribe_command))
    application.add_handler(CommandHandler("link", link_command))

    application.run_polling()


def _format_table(headers: list[str], rows: list[list[str]]) -> None:
    widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _format_line(row: list[str]) -> str:
        return "  ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(row))

    print(_format_line(headers))
    print("  ".join('-' * w for w in widths))
    for row in rows:
        print(_format_line(row))


def _print_strategies(strategies: list) -> None:
    heading = f"{len(strategies)} strategies"
    print(heading)
    print("=" * len(heading))
    if not strategies:
        print("No strategies found.")
        return

    headers = ["ID", "Name", "Status", "Trigger", "Interval", "Next Run (UTC)", "Runs", "Invested", "Returned", "Position"]
    rows = []
    for strategy in strategies:
        next_run = strategy.next_scheduled_execution
        rows.append([
            str(strategy.id),
            strategy.name,
            strategy.status,
            strategy.trigger_type,
            strategy.execution_interval,
            next_run.strftime("%Y-%m-%d %H:%M:%S") if next_run else "now",
            str(strategy.total_executions),
            f"{strategy.total_invested:g}",
            f"{strategy.total_return:g}",
            str(strategy.current_opportunity_id) if strategy.current_opportunity_id else "-",
        ])
    _format_table(headers, rows)


def _print_executions(records: list, limit: int, strategy_id: int | None) -> None:
    heading = f"Showing up to {limit} executions"
    if strategy_id is not None:
        heading += f" (strategy={strategy_id})"
    print(heading)
    print("=" * len(heading))

    if not records:
        print("No executions found.")
        return

    headers = ["Time (UTC)", "Strategy", "Action", "Status", "Amount", "Gas Fee", "Tx", "Error", "Reconcile"]

    def _format_row(record) -> list[str]:
        tx = record.transaction_hash or "-"
        return [
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(record.strategy_id),
            record.action_type,
            record.status,
            f"{record.amount:g}" if record.amount is not None else "-",
            f"{record.gas_fee:.6f}" if record.gas_fee is not None else "-",
            f"{tx[:10]}…" if len(tx) > 10 else tx,
            record.error_message or "-",
            "Yes" if record.needs_reconciliation else "No",
        ]

    _format_table(headers, [_format_row(rec) for rec in records])


if __name__ == "__main__":
    main()
