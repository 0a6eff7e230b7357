# bot/handlers.py
import html
import time
from typing import Optional

from telegram import Update
from telegram.ext import ContextTypes

from constants import EXECUTION_INTERVALS, STRATEGY_ACTIVE, STRATEGY_PAUSED
from storage import SQLiteRepository
from strategy.errors import RepositoryUnavailable

# --- Helpers ---

def _parse_id(context: ContextTypes.DEFAULT_TYPE) -> Optional[int]:
    if not context.args:
        return None
    try:
        return int(context.args[0])
    except ValueError:
        return None


def _is_admin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    config = context.application.bot_data.get('config')
    return bool(config and config.telegram_chat_id and str(update.effective_chat.id) == str(config.telegram_chat_id))


async def _linked_user_id(update: Update, repository: SQLiteRepository) -> Optional[int]:
    subscriber = await repository.get_subscriber(update.effective_chat.id)
    return subscriber.user_id if subscriber else None


async def _load_managed_strategy(update: Update, context: ContextTypes.DEFAULT_TYPE, usage: str):
    """Returns the strategy named in the command if this chat may manage it."""
    strategy_id = _parse_id(context)
    if strategy_id is None:
        await update.message.reply_text(f"Usage: {usage}")
        return None

    repository: SQLiteRepository = context.application.bot_data['repository']
    strategy = await repository.get_strategy(strategy_id)
    if strategy is None:
        await update.message.reply_text(f"Strategy {strategy_id} not found.")
        return None

    if not _is_admin(update, context):
        user_id = await _linked_user_id(update, repository)
        if user_id is None or user_id != strategy.user_id:
            await update.message.reply_text("You can only manage your own strategies.")
            return None
    return strategy


def _format_strategy_line(strategy) -> str:
    next_run = strategy.next_scheduled_execution.strftime('%Y-%m-%d %H:%M') if strategy.next_scheduled_execution else 'now'
    return (
        f"<b>#{strategy.id} {html.escape(strategy.name)}</b> [{strategy.status}]\n"
        f"   {strategy.trigger_type}, {strategy.execution_interval}, next: <code>{next_run}</code>\n"
        f"   runs: {strategy.total_executions} | in: {strategy.total_invested:g} | out: {strategy.total_return:g}"
    )

# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    help_text = """
    <b>Welcome to the Yield Strategy Bot!</b>

    This bot runs your automated yield strategies and reports every execution.

    <b><u>Available Commands:</u></b>
    /status - Get bot status and last scheduler cycle
    /strategies - List strategies
    /executions [id] - Show recent executions
    /run &lt;id&gt; - Evaluate a strategy now
    /pause &lt;id&gt; - Pause a strategy
    /resume &lt;id&gt; - Resume a paused strategy
    /delete &lt;id&gt; - Delete a strategy
    /opportunities - Show the best current opportunities
    /stats - Show execution totals
    /subscribe - Toggle execution notifications for this chat
    /link &lt;user_id&gt; [chat_id] - Link a chat to a strategy owner (admin)
    /help - Show this help message
    """
    await update.message.reply_html(help_text)

async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Checks and reports the bot's operational status and scheduler state."""
    config = context.application.bot_data.get('config')
    scheduler = context.application.bot_data.get('scheduler')
    scheduler_task = context.application.bot_data.get('scheduler_task')
    start_time = context.application.bot_data.get('start_time', 0)

    # Calculate uptime
    uptime_seconds = time.time() - start_time
    uptime_str = time.strftime('%H:%M:%S', time.gmtime(uptime_seconds))

    # Determine scheduler status
    if config and config.scheduler_enabled:
        if scheduler_task and not scheduler_task.done():
            scheduler_status = "✅ Running"
        elif scheduler_task and scheduler_task.done():
            if not scheduler_task.cancelled() and scheduler_task.exception():
                scheduler_status = "❌ Stopped with error"
            else:
                scheduler_status = "⏹️ Stopped"
        else:
            scheduler_status = "⚠️ Enabled but not running"
    else:
        scheduler_status = "🚫 Disabled"

    status_text = (
        f"<b>🤖 Bot Status</b>\n"
        f"Uptime: <code>{uptime_str}</code>\n\n"
        f"<b>⏱ Scheduler</b>\n"
        f"Status: {scheduler_status}\n"
    )

    if config and config.scheduler_enabled:
        last_cycle = context.application.bot_data.get('last_cycle_time', 'Never')
        due_last = context.application.bot_data.get('due_last_cycle', 'N/A')
        last_error = context.application.bot_data.get('last_error')

        status_text += f"Last Cycle: <code>{last_cycle}</code>\n"
        status_text += f"Due Last Cycle: <code>{due_last}</code>\n"
        if scheduler is not None:
            status_text += f"Queued: <code>{scheduler.queue_size}</code>\n"
            busy = {sid: state for sid, state in scheduler.states.items() if state != 'idle'}
            if busy:
                states = ", ".join(f"#{sid} {state}" for sid, state in sorted(busy.items()))
                status_text += f"In Flight: <code>{states}</code>\n"
        if last_error:
            status_text += f"Last Error: <pre>{html.escape(str(last_error))}</pre>\n"

    await update.message.reply_html(status_text)

async def strategies_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists strategies; the admin chat sees all of them, other chats see their linked user's."""
    repository: SQLiteRepository = context.application.bot_data['repository']
    try:
        if _is_admin(update, context):
            strategies = await repository.list_strategies()
        else:
            user_id = await _linked_user_id(update, repository)
            if user_id is None:
                await update.message.reply_text("This chat is not linked to a user. Use /link <user_id> first.")
                return
            strategies = await repository.list_strategies(user_id=user_id)
    except RepositoryUnavailable as e:
        print(f"Error in /strategies command: {e}")
        await update.message.reply_text("Strategy storage is unavailable right now.")
        return

    if not strategies:
        await update.message.reply_text("No strategies found.")
        return

    lines = ["<b>📋 Strategies</b>\n"] + [_format_strategy_line(s) for s in strategies]
    await update.message.reply_html("\n".join(lines))

async def executions_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows the most recent executions, optionally for one strategy."""
    repository: SQLiteRepository = context.application.bot_data['repository']
    strategy_id = _parse_id(context)
    executions = await repository.fetch_executions(strategy_id=strategy_id, limit=10)
    if not executions:
        await update.message.reply_text("No executions recorded yet.")
        return

    status_icons = {'success': '✅', 'failed': '❌', 'pending': '⏳'}
    lines = ["<b>🧾 Recent Executions</b>\n"]
    for execution in executions:
        when = execution.created_at.strftime('%m-%d %H:%M')
        line = f"{status_icons.get(execution.status, '•')} #{execution.strategy_id} {execution.action_type} <code>{when}</code>"
        if execution.amount is not None:
            line += f" amount {execution.amount:g}"
        if execution.error_message:
            line += f" ({html.escape(execution.error_message)})"
        if execution.needs_reconciliation:
            line += " ⚠️ reconcile"
        lines.append(line)
    await update.message.reply_html("\n".join(lines))

async def pause_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    strategy = await _load_managed_strategy(update, context, "/pause <strategy_id>")
    if strategy is None:
        return
    repository: SQLiteRepository = context.application.bot_data['repository']
    await repository.set_strategy_status(strategy.id, STRATEGY_PAUSED)
    await update.message.reply_text(f"Strategy {strategy.id} paused.")

async def resume_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    strategy = await _load_managed_strategy(update, context, "/resume <strategy_id>")
    if strategy is None:
        return
    repository: SQLiteRepository = context.application.bot_data['repository']
    await repository.set_strategy_status(strategy.id, STRATEGY_ACTIVE)
    await update.message.reply_text(f"Strategy {strategy.id} resumed.")

async def delete_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    strategy = await _load_managed_strategy(update, context, "/delete <strategy_id>")
    if strategy is None:
        return
    repository: SQLiteRepository = context.application.bot_data['repository']
    await repository.delete_strategy(strategy.id)
    await update.message.reply_text(f"Strategy {strategy.id} deleted.")

async def run_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Queues a strategy for immediate evaluation."""
    strategy = await _load_managed_strategy(update, context, "/run <strategy_id>")
    if strategy is None:
        return
    scheduler = context.application.bot_data.get('scheduler')
    if scheduler is None:
        await update.message.reply_text("The scheduler is not running.")
        return
    if strategy.status != STRATEGY_ACTIVE:
        await update.message.reply_text(f"Strategy {strategy.id} is {strategy.status}; resume it first.")
        return
    if scheduler.trigger(strategy.id):
        await update.message.reply_text(f"Strategy {strategy.id} queued for evaluation.")
    else:
        await update.message.reply_text(f"Strategy {strategy.id} is already queued.")

async def opportunities_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows the highest-APY opportunities currently stored."""
    repository: SQLiteRepository = context.application.bot_data['repository']
    opportunities = await repository.fetch_top_opportunities(5)
    if not opportunities:
        await update.message.reply_text("No opportunities stored yet.")
        return

    lines = ["<b>💰 Top Opportunities</b>\n"]
    for idx, opp in enumerate(opportunities, start=1):
        tvl = f"${opp.tvl / 1_000_000:.1f}M" if opp.tvl else "n/a"
        lines.append(
            f"{idx}. <b>{html.escape(opp.protocol)} {html.escape(opp.asset)}</b> ({html.escape(opp.network)})\n"
            f"   - APY: {opp.apy:.2f}% | TVL: {tvl} | Risk: {opp.risk_level}"
        )
    await update.message.reply_html("\n".join(lines))

async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Reports strategy and execution totals."""
    repository: SQLiteRepository = context.application.bot_data['repository']
    strategies = await repository.list_strategies()
    active = sum(1 for s in strategies if s.status == STRATEGY_ACTIVE)
    total_runs = sum(s.total_executions for s in strategies)
    invested = sum(s.total_invested for s in strategies)
    returned = sum(s.total_return for s in strategies)
    intervals = ", ".join(
        f"{name}: {sum(1 for s in strategies if s.execution_interval == name)}" for name in EXECUTION_INTERVALS
    )

    await update.message.reply_html(
        f"<b>📊 Strategy Stats</b>\n"
        f"Strategies: <code>{len(strategies)}</code> (active: {active})\n"
        f"Intervals: <code>{intervals}</code>\n"
        f"Executions: <code>{total_runs}</code>\n"
        f"Total Invested: <code>{invested:g}</code>\n"
        f"Total Returned: <code>{returned:g}</code>"
    )

async def subscribe_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Toggles execution notifications for this chat."""
    repository: SQLiteRepository = context.application.bot_data['repository']
    username = update.effective_user.username if update.effective_user else None
    await repository.upsert_subscriber(update.effective_chat.id, username)
    subscribed = await repository.toggle_subscription(update.effective_chat.id)
    if subscribed:
        await update.message.reply_text("Subscribed to strategy execution notifications.")
    else:
        await update.message.reply_text("Unsubscribed from strategy execution notifications.")

async def link_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Links a chat to a strategy owner so their executions are delivered there. Admin only."""
    if not _is_admin(update, context):
        await update.message.reply_text("Only the admin chat can link chats to strategy owners.")
        return
    try:
        user_id = int(context.args[0])
        chat_id = int(context.args[1]) if len(context.args) > 1 else update.effective_chat.id
    except (IndexError, TypeError, ValueError):
        await update.message.reply_text("Usage: /link <user_id> [chat_id]")
        return
    repository: SQLiteRepository = context.application.bot_data['repository']
    username = update.effective_user.username if update.effective_user and chat_id == update.effective_chat.id else None
    await repository.upsert_subscriber(chat_id, username)
    await repository.link_subscriber(chat_id, user_id)
    await update.message.reply_text(f"Chat {chat_id} now receives notifications for user {user_id}.")
