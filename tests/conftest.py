from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from ledger.bot.commands import CommandProcessor
from ledger.config import Settings
from ledger.db.repository import LedgerRepository
from ledger.models.schemas import InboundMessage, MentionSpan

IST = ZoneInfo("Asia/Kolkata")
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=IST)


class FakeSender:
    def __init__(self):
        self.sent: list[tuple] = []

    async def send(self, chat_id, text, reply_to=None):
        self.sent.append((chat_id, text, reply_to))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        telegram_chat_id="-100123",
        cron_secret="s3cret",
        timezone="Asia/Kolkata",
        storage_retry_backoff=0,
    )


@pytest.fixture
def repo(tmp_path):
    return LedgerRepository(str(tmp_path / "ledger.json"), retry_backoff=0)


@pytest.fixture
def processor(repo, settings):
    return CommandProcessor(repo, settings, clock=lambda: NOW)


@pytest.fixture
def fake_sender():
    return FakeSender()


_message_ids = iter(range(1000, 100000))

USERS = {
    "alice": (1, "Alice"),
    "bob": (2, "Bob"),
    "carol": (3, "Carol"),
}


def make_message(
    text: str,
    user: str = "alice",
    mentions: list[MentionSpan] | None = None,
    reply_to: int | None = None,
    message_id: int | None = None,
) -> InboundMessage:
    sender_id, first_name = USERS[user]
    return InboundMessage(
        chat_id=-100123,
        message_id=message_id or next(_message_ids),
        text=text,
        sender_id=sender_id,
        sender_first_name=first_name,
        sender_username=user,
        mentions=mentions or [],
        reply_to_message_id=reply_to,
    )


def mention(text: str, handle: str) -> MentionSpan:
    offset = text.index(f"@{handle}")
    return MentionSpan(offset=offset, length=len(handle) + 1, text=f"@{handle}")
