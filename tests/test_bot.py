"""Tests for the chat commands, pending input store and Telegram poller."""

import json
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import httpx
import pytest

from door_manager.bot.commands import NOT_REGISTERED, CommandHandler, format_expiry
from door_manager.bot.sessions import PendingInputStore
from door_manager.bot.telegram import TelegramPoller

from conftest import Clock

DENVER = ZoneInfo("America/Denver")


@pytest.fixture
def pending() -> PendingInputStore:
    return PendingInputStore(ttl_seconds=300)


@pytest.fixture
def handler(manager, pending) -> CommandHandler:
    return CommandHandler(manager, pending, DENVER)


def test_format_expiry():
    value = datetime(2026, 10, 18, 3, 0, tzinfo=DENVER)
    assert format_expiry(value) == "Sun, Oct 18, 3:00 AM"
    assert format_expiry(value, with_date=False) == "3:00 AM"
    assert format_expiry(datetime(2026, 10, 18, 15, 5), with_date=False) == "3:05 PM"


# Pending input store


async def test_pending_input_expires_after_ttl():
    clock = Clock(datetime(2026, 10, 17, 20, 0, tzinfo=timezone.utc))
    store = PendingInputStore(ttl_seconds=300, clock=clock)
    await store.begin(1, 10, "new_code")

    clock.advance(seconds=299)
    assert (await store.get(1)).member_id == 10

    clock.advance(seconds=2)
    assert await store.get(1) is None
    assert len(store) == 0


async def test_pending_input_clear():
    store = PendingInputStore()
    await store.begin(1, 10, "new_code")
    await store.clear(1)
    assert await store.get(1) is None


# Commands


async def test_unregistered_user(handler):
    reply = await handler.handle(1, "stranger", "/start")
    assert "is not registered" in reply.text
    assert "@stranger" in reply.text

    assert (await handler.handle(1, "stranger", "/daypass")).text == NOT_REGISTERED
    assert (await handler.handle(1, None, "/mycode")).text == NOT_REGISTERED


async def test_disabled_member_is_treated_as_unregistered(handler, manager, make_daypass_member):
    member, _ = await make_daypass_member(telegram_username="@dana_day")
    await manager.update_member(member["id"], disabled=True)
    assert (await handler.handle(1, "dana_day", "/daypass")).text == NOT_REGISTERED


async def test_unknown_command_and_plain_text_are_ignored(handler):
    assert await handler.handle(1, "someone", "/launch") is None
    assert await handler.handle(1, "someone", "hello") is None
    assert await handler.handle(1, "someone", "   ") is None


async def test_start_lists_commands_by_member_class(handler, make_member, make_daypass_member):
    await make_daypass_member(telegram_username="@dana_day")
    await make_member(name="Fiona", member_type="full", telegram_username="@fiona_full")

    day = await handler.handle(1, "dana_day", "/start")
    assert "Day Pass Member" in day.text
    assert "/daypass" in day.text

    full = await handler.handle(2, "fiona_full", "/start@RegenHubBot")
    assert "Full Member" in full.text
    assert "/newcode" in full.text


async def test_help_shows_cutoff(handler, make_daypass_member):
    await make_daypass_member(telegram_username="@dana_day")
    reply = await handler.handle(1, "dana_day", "/help")
    assert "valid until 3:00 AM" in reply.text


async def test_daypass_issues_then_repeats_code(handler, gateway, make_daypass_member):
    await make_daypass_member(telegram_username="@dana_day", allowed_uses=2)

    reply = await handler.handle(1, "dana_day", "/daypass")
    assert reply.markdown
    assert "Here's your door code for today!" in reply.text
    assert f"*{gateway.codes[125]}*" in reply.text
    assert "Valid until: Sun, Oct 18, 3:00 AM" in reply.text
    assert "Day passes remaining: 1" in reply.text

    again = await handler.handle(1, "dana_day", "/daypass")
    assert "You already have an active code for today!" in again.text
    assert f"*{gateway.codes[125]}*" in again.text
    assert "Valid until: 3:00 AM" in again.text


async def test_daypass_without_passes(handler, make_member):
    await make_member(telegram_username="@dana_day")
    reply = await handler.handle(1, "dana_day", "/daypass")
    assert "don't have any day passes remaining" in reply.text


async def test_daypass_gateway_failure(handler, gateway, make_daypass_member):
    await make_daypass_member(telegram_username="@dana_day")
    gateway.fail_set = True
    reply = await handler.handle(1, "dana_day", "/daypass")
    assert "error generating your code" in reply.text


async def test_daypass_for_full_member(handler, make_member):
    await make_member(name="Fiona", member_type="full", telegram_username="@fiona_full")
    reply = await handler.handle(1, "fiona_full", "/daypass")
    assert "use /mycode" in reply.text


async def test_mycode(handler, manager, make_daypass_member):
    await manager.create_member(
        name="Fiona", member_type="full", pin_code="4321", pin_code_slot=3,
        telegram_username="@fiona_full",
    )
    reply = await handler.handle(1, "fiona_full", "/mycode")
    assert "*4321*" in reply.text
    assert "Slot: 3" in reply.text

    await make_daypass_member(telegram_username="@dana_day")
    reply = await handler.handle(2, "dana_day", "/mycode")
    assert "Full Members only" in reply.text


async def test_newcode_with_chosen_code(handler, manager, gateway, pending):
    member = await manager.create_member(
        name="Fiona", member_type="full", pin_code="4321", pin_code_slot=3,
        telegram_username="@fiona_full",
    )

    prompt = await handler.handle(7, "fiona_full", "/newcode")
    assert "Let's set your new door code!" in prompt.text

    invalid = await handler.handle(7, "fiona_full", "12")
    assert "Invalid input" in invalid.text
    assert (await pending.get(7)) is not None

    done = await handler.handle(7, "fiona_full", "8642")
    assert "*8642*" in done.text
    assert gateway.codes[3] == "8642"
    assert (await manager.get_member_record(member["id"])).pin_code == "8642"
    assert await pending.get(7) is None


async def test_newcode_random_and_cancel(handler, manager, gateway):
    await manager.create_member(
        name="Fiona", member_type="full", pin_code_slot=3, telegram_username="@fiona_full",
    )

    await handler.handle(7, "fiona_full", "/newcode")
    assert (await handler.handle(7, "fiona_full", "CANCEL")).text == "Code change cancelled."
    assert await handler.handle(7, "fiona_full", "1234") is None

    await handler.handle(7, "fiona_full", "/newcode")
    reply = await handler.handle(7, "fiona_full", "random")
    assert len(gateway.codes[3]) == 6
    assert f"*{gateway.codes[3]}*" in reply.text


async def test_newcode_requires_slot(handler, make_member):
    await make_member(name="Fiona", member_type="full", telegram_username="@fiona_full")
    reply = await handler.handle(7, "fiona_full", "/newcode")
    assert "don't have a door slot assigned" in reply.text


async def test_newcode_gateway_failure(handler, manager, gateway, pending):
    await manager.create_member(
        name="Fiona", member_type="full", pin_code="4321", pin_code_slot=3,
        telegram_username="@fiona_full",
    )
    await handler.handle(7, "fiona_full", "/newcode")
    gateway.fail_set = True

    reply = await handler.handle(7, "fiona_full", "8642")

    assert "error updating your code" in reply.text
    assert gateway.codes[3] == "4321"
    assert await pending.get(7) is None


# Telegram poller


class FakeBotApi:
    def __init__(self, updates):
        self.updates = updates
        self.sent = []
        self.get_updates_payloads = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        payload = json.loads(request.content)
        if method == "getUpdates":
            self.get_updates_payloads.append(payload)
            updates, self.updates = self.updates, []
            return httpx.Response(200, json={"ok": True, "result": updates})
        if method == "sendMessage":
            self.sent.append(payload)
            return httpx.Response(200, json={"ok": True, "result": {}})
        return httpx.Response(404, json={"ok": False, "description": "Not Found"})


async def test_poll_once_answers_messages_and_advances_offset(handler, make_daypass_member):
    await make_daypass_member(telegram_username="@dana_day")
    api = FakeBotApi([
        {
            "update_id": 41,
            "message": {"chat": {"id": 99}, "from": {"username": "dana_day"}, "text": "/daypass"},
        },
        {"update_id": 42, "edited_message": {"chat": {"id": 99}}},
        {
            "update_id": 43,
            "message": {"chat": {"id": 99}, "from": {"username": "dana_day"}, "text": "thanks"},
        },
    ])
    poller = TelegramPoller("123:abc", handler, poll_timeout=0, transport=httpx.MockTransport(api))

    assert await poller.poll_once() == 3
    assert len(api.sent) == 1
    assert api.sent[0]["chat_id"] == 99
    assert api.sent[0]["parse_mode"] == "Markdown"
    assert "Here's your door code for today!" in api.sent[0]["text"]

    assert await poller.poll_once() == 0
    assert "offset" not in api.get_updates_payloads[0]
    assert api.get_updates_payloads[1]["offset"] == 44
    await poller.close()


async def test_poll_once_raises_when_api_rejects(handler):
    def reject(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": False, "description": "Unauthorized"})

    poller = TelegramPoller("bad", handler, transport=httpx.MockTransport(reject))
    with pytest.raises(RuntimeError, match="Unauthorized"):
        await poller.poll_once()
    await poller.close()


async def test_start_and_stop(handler):
    api = FakeBotApi([])
    poller = TelegramPoller("123:abc", handler, poll_timeout=0, transport=httpx.MockTransport(api))
    await poller.start()
    await poller.stop()
    assert poller._task.done()
