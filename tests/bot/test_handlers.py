from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from bot.handlers import link_command, pause_command, run_command, status_command, subscribe_command

ADMIN_CHAT = -100


def make_update(chat_id=ADMIN_CHAT, username='operator'):
    message = MagicMock()
    message.reply_text = AsyncMock()
    message.reply_html = AsyncMock()
    return SimpleNamespace(
        message=message,
        effective_chat=SimpleNamespace(id=chat_id),
        effective_user=SimpleNamespace(username=username),
    )


def make_context(repository, args=None, **bot_data):
    config = SimpleNamespace(telegram_chat_id=str(ADMIN_CHAT), scheduler_enabled=True)
    data = {'config': config, 'repository': repository, 'start_time': 0}
    data.update(bot_data)
    return SimpleNamespace(application=SimpleNamespace(bot_data=data), args=args or [])


def replied(update):
    calls = update.message.reply_text.await_args_list + update.message.reply_html.await_args_list
    return " ".join(call.args[0] for call in calls)


async def create_strategy(repository, user_id=7):
    return await repository.create_strategy({
        'name': 'Stable yield',
        'trigger_type': 'apy-based',
        'conditions': {'min_apy': 4},
        'actions': [{'type': 'deposit', 'asset': 'USDC', 'amount': 100}],
        'target_protocols': [1],
        'target_networks': [1],
        'user_id': user_id,
    })


@pytest.mark.asyncio
async def test_admin_can_pause_any_strategy(repository):
    strategy = await create_strategy(repository)
    update = make_update()

    await pause_command(update, make_context(repository, [str(strategy.id)]))

    assert (await repository.get_strategy(strategy.id)).status == 'paused'
    assert 'paused' in replied(update)


@pytest.mark.asyncio
async def test_unlinked_chat_cannot_manage_strategy(repository):
    strategy = await create_strategy(repository)
    update = make_update(chat_id=555)

    await pause_command(update, make_context(repository, [str(strategy.id)]))

    assert (await repository.get_strategy(strategy.id)).status == 'active'
    assert 'only manage your own' in replied(update)


@pytest.mark.asyncio
async def test_linked_owner_chat_can_manage_strategy(repository):
    strategy = await create_strategy(repository, user_id=7)
    await link_command(make_update(), make_context(repository, ['7', '555']))
    update = make_update(chat_id=555)

    await pause_command(update, make_context(repository, [str(strategy.id)]))

    assert (await repository.get_strategy(strategy.id)).status == 'paused'


@pytest.mark.asyncio
async def test_only_admin_can_link(repository):
    update = make_update(chat_id=555)

    await link_command(update, make_context(repository, ['7']))

    assert await repository.get_subscriber(555) is None
    assert 'Only the admin chat' in replied(update)


@pytest.mark.asyncio
async def test_run_command_triggers_scheduler(repository):
    strategy = await create_strategy(repository)
    scheduler = MagicMock()
    scheduler.trigger.return_value = True
    update = make_update()

    await run_command(update, make_context(repository, [str(strategy.id)], scheduler=scheduler))

    scheduler.trigger.assert_called_once_with(strategy.id)
    assert 'queued' in replied(update)


@pytest.mark.asyncio
async def test_run_command_rejects_paused_strategy(repository):
    strategy = await create_strategy(repository)
    await repository.set_strategy_status(strategy.id, 'paused')
    scheduler = MagicMock()
    update = make_update()

    await run_command(update, make_context(repository, [str(strategy.id)], scheduler=scheduler))

    scheduler.trigger.assert_not_called()
    assert 'resume it first' in replied(update)


@pytest.mark.asyncio
async def test_subscribe_toggles(repository):
    update = make_update(chat_id=555)

    await subscribe_command(update, make_context(repository))
    await subscribe_command(update, make_context(repository))

    assert 'Subscribed' in update.message.reply_text.await_args_list[0].args[0]
    assert 'Unsubscribed' in update.message.reply_text.await_args_list[1].args[0]
    assert (await repository.get_subscriber(555)).subscribed is False


@pytest.mark.asyncio
async def test_status_reports_scheduler_state(repository):
    scheduler = SimpleNamespace(queue_size=2, states={1: 'firing', 2: 'idle'})
    task = MagicMock()
    task.done.return_value = False
    update = make_update()

    await status_command(update, make_context(
        repository,
        scheduler=scheduler,
        scheduler_task=task,
        last_cycle_time='2026-01-05 12:00:00 UTC',
        due_last_cycle=3,
        last_error='database is locked',
    ))

    text = replied(update)
    assert '✅ Running' in text
    assert 'Queued: <code>2</code>' in text
    assert '#1 firing' in text
    assert '#2' not in text
    assert 'database is locked' in text
