from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger
from telegram import Update

from ledger.bot.delivery import MessageSender
from ledger.bot.formatters import format_digest
from ledger.config import Settings, get_settings
from ledger.db.repository import LedgerRepository
from ledger.deps import get_repo, get_sender
from ledger.models.schemas import (
    DigestResponse,
    ExpenseRecord,
    ParseRequest,
    ParseResponse,
    SettlementReport,
)
from ledger.parsing.expense_parser import parse_expense
from ledger.services.digest import build_daily_digest
from ledger.services.settlement import compute_settlement

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/parse", response_model=ParseResponse)
def parse_message(request: ParseRequest):
    logger.info("Parsing message: {}", request.message)
    return ParseResponse(parsed=parse_expense(request.message))


@router.get("/expenses/{expense_id}", response_model=list[ExpenseRecord])
def get_expense(expense_id: int, repo: LedgerRepository = Depends(get_repo)):
    records = repo.get_expenses(expense_id)
    if not records:
        raise HTTPException(status_code=404, detail="Expense not found")
    return records


@router.get("/settlement", response_model=SettlementReport)
def get_settlement(repo: LedgerRepository = Depends(get_repo)):
    ledger = repo.load()
    return compute_settlement(
        ledger.expenses, ledger.roster(), ledger.settlement.last_settled_date
    )


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
):
    if settings.webhook_secret and x_telegram_bot_api_secret_token != settings.webhook_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")

    bot_app = getattr(request.app.state, "bot", None)
    if bot_app is None:
        raise HTTPException(status_code=503, detail="Bot is not running")

    update = Update.de_json(await request.json(), bot_app.bot)
    await bot_app.process_update(update)
    return {"ok": True}


@router.api_route("/cron/daily-summary", methods=["GET", "POST"], response_model=DigestResponse)
async def daily_summary(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
    repo: LedgerRepository = Depends(get_repo),
    sender: MessageSender | None = Depends(get_sender),
):
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not settings.telegram_chat_id:
        raise HTTPException(status_code=500, detail="TELEGRAM_CHAT_ID not configured")
    if sender is None:
        raise HTTPException(status_code=503, detail="Bot is not running")

    now = datetime.now(timezone.utc)
    try:
        digest = build_daily_digest(repo.load(), now, ZoneInfo(settings.timezone))
        await sender.send(settings.telegram_chat_id, format_digest(digest, settings.currency_symbol))
    except Exception as e:
        logger.exception("Daily summary failed")
        raise HTTPException(status_code=500, detail="Daily summary failed") from e

    logger.info("Daily summary sent to {}", settings.telegram_chat_id)
    return DigestResponse(success=True, message="Daily summary sent", timestamp=now)
