from loguru import logger
from telegram import Message, MessageEntity, Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from ledger.bot.delivery import MessageSender
from ledger.config import get_settings
from ledger.deps import get_processor
from ledger.models.schemas import InboundMessage, MentionSpan

settings = get_settings()

FAILURE_TEXT = "⚠️ Something went wrong. Please try again."


def inbound_from_message(message: Message) -> InboundMessage:
    """Flatten a Telegram message into what the command processor needs."""
    mentions = []
    entities = message.parse_entities([MessageEntity.MENTION, MessageEntity.TEXT_MENTION])
    for entity, text in entities.items():
        user = entity.user
        mentions.append(
            MentionSpan(
                offset=entity.offset,
                length=entity.length,
                text=text,
                user_id=user.id if user else None,
                display_name=user.first_name if user else None,
            )
        )
    mentions.sort(key=lambda m: m.offset)

    sender = message.from_user
    reply = message.reply_to_message
    return InboundMessage(
        chat_id=message.chat_id,
        message_id=message.message_id,
        text=message.text or "",
        sender_id=sender.id,
        sender_first_name=sender.first_name,
        sender_username=sender.username,
        mentions=mentions,
        reply_to_message_id=reply.message_id if reply else None,
    )


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Single entry point for commands and expense messages."""
    message = update.effective_message
    if message is None or not message.text or message.from_user is None:
        return

    sender: MessageSender = context.bot_data["sender"]
    try:
        reply = get_processor().handle(inbound_from_message(message))
    except Exception:
        logger.exception("Failed to handle message {} in chat {}", message.message_id, message.chat_id)
        await sender.send(message.chat_id, FAILURE_TEXT)
        return

    if reply is not None:
        await sender.send(message.chat_id, reply.text, reply.reply_to)


def build_bot_app() -> Application:
    """Build the Telegram application; webhook mode runs without an updater."""
    builder = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .connect_timeout(settings.request_timeout)
        .read_timeout(settings.request_timeout)
        .write_timeout(settings.request_timeout)
    )
    if settings.bot_mode == "webhook":
        builder = builder.updater(None)
    app = builder.build()

    app.bot_data["sender"] = MessageSender(app.bot)
    app.add_handler(MessageHandler(filters.TEXT, handle_text))
    return app
