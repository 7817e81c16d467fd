import html
import re

from loguru import logger
from telegram import Bot, Message, ReplyParameters
from telegram.constants import ParseMode
from telegram.error import TelegramError

TAG_RE = re.compile(r"<[^>]+>")


def to_plain_text(text: str) -> str:
    return html.unescape(TAG_RE.sub("", text))


class MessageSender:
    """Sends HTML replies, falling back once to plain text without threading."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(
        self, chat_id: int | str, text: str, reply_to: int | None = None
    ) -> Message | None:
        reply_parameters = (
            ReplyParameters(message_id=reply_to, allow_sending_without_reply=True)
            if reply_to
            else None
        )
        try:
            return await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_parameters=reply_parameters,
            )
        except TelegramError as e:
            logger.warning("Sending to {} failed ({}), retrying as plain text", chat_id, e)

        try:
            return await self.bot.send_message(chat_id=chat_id, text=to_plain_text(text))
        except TelegramError as e:
            logger.error("Fallback message to {} also failed: {}", chat_id, e)
            return None
