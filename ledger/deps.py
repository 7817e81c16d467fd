from functools import lru_cache

from fastapi import Request

from ledger.bot.commands import CommandProcessor
from ledger.bot.delivery import MessageSender
from ledger.config import get_settings
from ledger.db.repository import LedgerRepository


@lru_cache
def get_repo() -> LedgerRepository:
    settings = get_settings()
    return LedgerRepository(
        settings.db_path,
        write_retries=settings.storage_write_retries,
        retry_backoff=settings.storage_retry_backoff,
    )


@lru_cache
def get_processor() -> CommandProcessor:
    return CommandProcessor(get_repo(), get_settings())


def get_sender(request: Request) -> MessageSender | None:
    return getattr(request.app.state, "sender", None)
