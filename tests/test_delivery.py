from unittest.mock import AsyncMock

from telegram.constants import ParseMode
from telegram.error import TelegramError

from ledger.bot.delivery import MessageSender, to_plain_text


def test_to_plain_text():
    assert to_plain_text("<b>Total:</b> 5 &lt; 6 &amp; <i>done</i>") == "Total: 5 < 6 & done"


async def test_sends_html_reply():
    bot = AsyncMock()
    bot.send_message.return_value = "sent"

    assert await MessageSender(bot).send(-100, "<b>hi</b>", reply_to=7) == "sent"
    kwargs = bot.send_message.await_args.kwargs
    assert kwargs["parse_mode"] == ParseMode.HTML
    assert kwargs["reply_parameters"].message_id == 7
    assert kwargs["reply_parameters"].allow_sending_without_reply


async def test_no_reply_parameters_without_reply_to():
    bot = AsyncMock()
    await MessageSender(bot).send(-100, "hi")
    assert bot.send_message.await_args.kwargs["reply_parameters"] is None


async def test_falls_back_to_plain_text_without_threading():
    bot = AsyncMock()
    bot.send_message.side_effect = [TelegramError("can't parse entities"), "plain"]

    assert await MessageSender(bot).send(-100, "<b>a &amp; b</b>", reply_to=7) == "plain"
    fallback = bot.send_message.await_args_list[1].kwargs
    assert fallback == {"chat_id": -100, "text": "a & b"}


async def test_gives_up_after_fallback_fails():
    bot = AsyncMock()
    bot.send_message.side_effect = TelegramError("chat not found")

    assert await MessageSender(bot).send(-100, "hi") is None
    assert bot.send_message.await_count == 2
