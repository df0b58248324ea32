"""Chat commands for members: view, change and request door codes."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from door_manager.bot.sessions import PendingInputStore
from door_manager.config import CHAT_PIN_PATTERN
from door_manager.core.codes import generate_pin_code
from door_manager.core.errors import (
    DoorManagerError,
    GatewayError,
    NoValidPassError,
    NotRegisteredError,
    SlotsExhaustedError,
)
from door_manager.core.manager import DoorManager
from door_manager.db.models import FullMember, Member

logger = logging.getLogger(__name__)

NEW_CODE_ACTION = "new_code"

NOT_REGISTERED = "You're not registered. Please contact an admin."


@dataclass
class Reply:
    """A message to send back to the chat."""

    text: str
    markdown: bool = False


def format_expiry(value: datetime, with_date: bool = True) -> str:
    """Format a local expiry time, e.g. "Sun, Oct 18, 3:00 AM"."""
    hour = value.hour % 12 or 12
    clock = f"{hour}:{value:%M} {value:%p}"
    if not with_date:
        return clock
    return f"{value:%a, %b} {value.day}, {clock}"


class CommandHandler:
    """Maps incoming chat messages to replies.

    Transport-agnostic: the Telegram poller feeds it (chat id, username, text)
    and sends whatever it returns.
    """

    def __init__(
        self,
        manager: DoorManager,
        pending: PendingInputStore,
        timezone: ZoneInfo,
    ):
        self._manager = manager
        self._pending = pending
        self._timezone = timezone
        self._commands = {
            "/start": self._handle_start,
            "/help": self._handle_help,
            "/mycode": self._handle_my_code,
            "/newcode": self._handle_new_code,
            "/daypass": self._handle_day_pass,
        }

    async def handle(
        self, chat_id: int, username: Optional[str], text: Optional[str]
    ) -> Optional[Reply]:
        """Handle one message. Returns None when there is nothing to say."""
        text = (text or "").strip()
        if not text:
            return None

        if text.startswith("/"):
            # "/daypass@RegenHubBot extra" -> "/daypass"
            command = text.split()[0].split("@")[0].lower()
            handler = self._commands.get(command)
            if handler is None:
                return None
            member = await self._manager.find_member_by_telegram(username)
            if member is not None and member.disabled:
                member = None
            return await handler(chat_id, username, member)

        return await self._handle_pending_input(chat_id, text)

    async def _handle_start(
        self, chat_id: int, username: Optional[str], member: Optional[Member]
    ) -> Reply:
        if member is None:
            return Reply(
                "Welcome to the RegenHub Door Manager!\n\n"
                f"Your Telegram username (@{(username or 'unknown').lstrip('@')}) "
                "is not registered in our system.\n\n"
                "Please contact an admin to get set up."
            )

        lines = [f"Welcome back, {member.name}!", ""]
        if member.is_full_member:
            lines += [
                "You are a Full Member.",
                "",
                "Available commands:",
                "/mycode - View your current door code",
                "/newcode - Set a new door code",
                "/help - Show this help message",
            ]
        else:
            lines += [
                "You are a Day Pass Member.",
                "",
                "Available commands:",
                "/daypass - Request a door code for today",
                "/help - Show this help message",
            ]
        return Reply("\n".join(lines))

    async def _handle_help(
        self, chat_id: int, username: Optional[str], member: Optional[Member]
    ) -> Reply:
        if member is None:
            return Reply(
                "You're not registered in our system.\n"
                "Please contact an admin to get set up."
            )

        lines = ["RegenHub Door Manager Help", ""]
        if member.is_full_member:
            lines += [
                "As a Full Member, you have:",
                "- A permanent door code that works anytime",
                "- The ability to change your code whenever you want",
                "",
                "Commands:",
                "/mycode - View your current door code",
                "/newcode - Set a new door code (pick your own or auto-generate)",
            ]
        else:
            cutoff = format_expiry(
                datetime(2000, 1, 1, self._manager.settings.expiry_hour), with_date=False
            )
            lines += [
                "As a Day Pass Member, you have:",
                "- A set number of day passes",
                f"- Each pass gives you a door code valid until {cutoff}",
                "",
                "Commands:",
                "/daypass - Request a door code for today",
            ]
        return Reply("\n".join(lines))

    async def _handle_my_code(
        self, chat_id: int, username: Optional[str], member: Optional[Member]
    ) -> Reply:
        if member is None:
            return Reply(NOT_REGISTERED)
        if not isinstance(member, FullMember):
            return Reply(
                "This command is for Full Members only.\n"
                "Use /daypass to get a temporary code."
            )
        if not member.pin_code:
            return Reply("You don't have a door code set yet.\nUse /newcode to set one.")
        return Reply(
            f"Your current door code is:\n\n🔑 *{member.pin_code}*\n\n"
            f"Slot: {member.pin_code_slot}",
            markdown=True,
        )

    async def _handle_new_code(
        self, chat_id: int, username: Optional[str], member: Optional[Member]
    ) -> Reply:
        if member is None:
            return Reply(NOT_REGISTERED)
        if not isinstance(member, FullMember):
            return Reply(
                "This command is for Full Members only.\n"
                "Use /daypass to get a temporary code."
            )
        if member.pin_code_slot is None:
            return Reply(
                "You don't have a door slot assigned yet.\n"
                "Please contact an admin to set up your account."
            )

        await self._pending.begin(chat_id, member.id, NEW_CODE_ACTION)
        return Reply(
            "Let's set your new door code!\n\n"
            "Please send me:\n"
            "- A 4-6 digit code of your choice, OR\n"
            '- Type "random" to auto-generate one\n\n'
            'Type "cancel" to abort.'
        )

    async def _handle_day_pass(
        self, chat_id: int, username: Optional[str], member: Optional[Member]
    ) -> Reply:
        if member is None:
            return Reply(NOT_REGISTERED)
        if member.is_full_member:
            return Reply(
                "This command is for Day Pass Members.\n"
                "As a Full Member, use /mycode to see your permanent code."
            )

        try:
            issued = await self._manager.issue_day_code(member.id)
        except NotRegisteredError:
            return Reply(NOT_REGISTERED)
        except NoValidPassError:
            return Reply(
                "You don't have any day passes remaining.\n\n"
                "Please contact an admin to purchase more passes."
            )
        except SlotsExhaustedError:
            return Reply(
                "Sorry, all door code slots are currently in use.\n"
                "Please try again later or contact an admin."
            )
        except DoorManagerError as e:
            logger.error("Failed to create day code for member %d: %s", member.id, e)
            return Reply(
                "Sorry, there was an error generating your code.\n"
                "Please try again or contact an admin."
            )

        expires = issued.expires_at.astimezone(self._timezone)
        if not issued.is_new:
            return Reply(
                "You already have an active code for today!\n\n"
                f"🔑 *{issued.code}*\n\n"
                f"Valid until: {format_expiry(expires, with_date=False)}\n\n"
                "Enter this code on the door keypad to unlock.",
                markdown=True,
            )
        return Reply(
            "Here's your door code for today!\n\n"
            f"🔑 *{issued.code}*\n\n"
            f"Valid until: {format_expiry(expires)}\n\n"
            f"Day passes remaining: {issued.remaining_uses}\n\n"
            "Enter this code on the door keypad to unlock.",
            markdown=True,
        )

    async def _handle_pending_input(self, chat_id: int, text: str) -> Optional[Reply]:
        pending = await self._pending.get(chat_id)
        if pending is None:
            return None

        if text.lower() == "cancel":
            await self._pending.clear(chat_id)
            return Reply("Code change cancelled.")

        if text.lower() == "random":
            new_code = generate_pin_code()
        elif CHAT_PIN_PATTERN.match(text):
            new_code = text
        else:
            return Reply(
                "Invalid input. Please send:\n"
                "- A 4-6 digit code, OR\n"
                '- "random" to auto-generate, OR\n'
                '- "cancel" to abort'
            )

        member = await self._manager.get_member_record(pending.member_id)
        if member is None:
            await self._pending.clear(chat_id)
            return Reply("Error: User not found.")

        try:
            await self._manager.set_permanent_code(member.id, new_code)
        except GatewayError as e:
            logger.error("Failed to update code for member %d: %s", member.id, e)
            await self._pending.clear(chat_id)
            return Reply(
                "Sorry, there was an error updating your code.\n"
                "Please try again or contact an admin."
            )
        except DoorManagerError as e:
            await self._pending.clear(chat_id)
            return Reply(f"Sorry, your code could not be updated: {e.message}")

        await self._pending.clear(chat_id)
        return Reply(
            f"Your door code has been updated!\n\n🔑 *{new_code}*\n\n"
            "This code is now active on the door.",
            markdown=True,
        )
