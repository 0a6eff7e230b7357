#!/usr/bin/env python3
import asyncio
import html
from typing import List, Optional

from telegram.error import TelegramError

from constants import C_GREEN, C_RED, C_RESET, C_YELLOW, REASON_CONFIRMATION_TIMEOUT
from strategy.models import ExecutionResult


def format_execution_message(strategy, result: ExecutionResult, action_type: Optional[str] = None, opportunity=None) -> str:
    """Builds the HTML Telegram message for one execution outcome."""
    name = html.escape(strategy.name)
    action_label = html.escape(action_type or 'execution')
    target = ""
    if opportunity is not None:
        target = (
            f"\n<b>Opportunity:</b> {html.escape(opportunity.protocol)} {html.escape(opportunity.asset)}"
            f" on {html.escape(opportunity.network)} ({opportunity.apy:.2f}% APY)"
        )

    if result.succeeded:
        lines = [
            f"✅ <b>{name}</b>: {action_label} confirmed",
            f"<b>Amount:</b> {result.amount:g}" if result.amount is not None else None,
            f"<b>Gas fee:</b> {result.gas_fee:.6f}" if result.gas_fee is not None else None,
            f"<b>Tx:</b> <code>{html.escape(result.transaction_hash or '-')}</code>",
        ]
    elif result.needs_reconciliation:
        headline = "no confirmation received" if result.error_message == REASON_CONFIRMATION_TIMEOUT else "outcome unknown"
        lines = [
            f"⚠️ <b>{name}</b>: {action_label} {headline}",
            f"<b>Tx:</b> <code>{html.escape(result.transaction_hash or '-')}</code>",
            "This execution needs manual reconciliation. Check the transaction before re-running the strategy.",
        ]
    else:
        lines = [
            f"❌ <b>{name}</b>: {action_label} failed",
            f"<b>Reason:</b> {html.escape(result.error_message or 'unknown')}",
        ]
    return "\n".join(line for line in lines if line) + target


def format_execution_tweet(strategy, result: ExecutionResult, action_type: Optional[str], opportunity) -> str:
    if opportunity is None:
        return f"Strategy '{strategy.name}' completed a {action_type or 'scheduled'} execution."
    return (
        f"Strategy '{strategy.name}' executed a {action_type} into {opportunity.protocol} "
        f"{opportunity.asset} on {opportunity.network} at {opportunity.apy:.2f}% APY."
    )


class NotificationDispatcher:
    """Sends execution outcomes to Telegram subscribers and, optionally, Twitter.

    Delivery failures are printed and dropped; a notification never changes
    what was recorded for an execution.
    """

    def __init__(self, bot=None, repository=None, admin_chat_id: Optional[str] = None, twitter_client=None):
        self.bot = bot
        self.repository = repository
        self.admin_chat_id = admin_chat_id
        self.twitter_client = twitter_client

    async def notify(self, user_id: Optional[int], strategy, result: ExecutionResult, *, action_type: Optional[str] = None, opportunity=None) -> None:
        try:
            await self._send_telegram(user_id, strategy, result, action_type, opportunity)
        except Exception as e:
            print(f"{C_RED}Error sending Telegram notification for strategy {strategy.id}: {e}{C_RESET}")

        if result.succeeded and self.twitter_client is not None:
            try:
                tweet = format_execution_tweet(strategy, result, action_type, opportunity)
                print(f"{C_GREEN}Posting tweet: {tweet}{C_RESET}")
                await asyncio.to_thread(self.twitter_client.post_tweet, tweet)
            except Exception as e:
                print(f"{C_RED}Error during Twitter processing: {e}{C_RESET}")

    async def _recipients(self, user_id: Optional[int]) -> List[str]:
        chat_ids: List[str] = []
        if user_id is not None and self.repository is not None:
            subscribers = await self.repository.list_subscribers(user_id=user_id)
            chat_ids = [str(sub.telegram_id) for sub in subscribers if sub.subscribed]
        if not chat_ids and self.admin_chat_id:
            chat_ids = [str(self.admin_chat_id)]
        return chat_ids

    async def _send_telegram(self, user_id, strategy, result, action_type, opportunity) -> None:
        if self.bot is None:
            return
        chat_ids = await self._recipients(user_id)
        if not chat_ids:
            print(f"{C_YELLOW}No Telegram recipients for strategy {strategy.id}; notification dropped.{C_RESET}")
            return

        message = format_execution_message(strategy, result, action_type, opportunity)
        for chat_id in chat_ids:
            try:
                await self.bot.send_message(chat_id=chat_id, text=message, parse_mode='HTML')
            except TelegramError as e:
                print(f"{C_RED}Telegram delivery to {chat_id} failed: {e}{C_RESET}")
