"""
Telegram transport.

Feeds every private text message (and /start with its deep-link payload)
into ConversationEngine.handle and delivers what comes back through the
NotificationService, whose sender is bound to this application's bot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from config import Config
from utils.exception_handler import safe_telegram_handler
from utils.helpers import utc_now

logger = logging.getLogger(__name__)

ENGINE_KEY = "conversation_engine"
NOTIFIER_KEY = "notification_service"

# Telegram rejects longer messages
MAX_MESSAGE_LENGTH = 4096


@dataclass
class TransportState:
    """Connection status shown on the status page"""
    ready: bool = False
    pairing_artifact: Optional[str] = None
    bot_username: Optional[str] = None
    connected_at: Optional[datetime] = None

    def mark_ready(self, bot_username: str):
        self.ready = True
        self.bot_username = bot_username
        self.pairing_artifact = f"https://t.me/{bot_username}"
        self.connected_at = utc_now()

    def mark_stopped(self):
        self.ready = False


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on line boundaries so no chunk exceeds the Telegram limit"""
    if len(text) <= limit:
        return [text]

    chunks = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def make_sender(bot):
    """NotificationService sender bound to a telegram Bot"""

    async def send(chat_id: str, text: str):
        for chunk in split_message(text):
            await bot.send_message(chat_id=chat_id, text=chunk)

    return send


async def _relay(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.effective_message
    chat = update.effective_chat
    if message is None or chat is None or message.text is None:
        return

    engine = context.application.bot_data[ENGINE_KEY]
    notifier = context.application.bot_data[NOTIFIER_KEY]
    outbound = await engine.handle(str(chat.id), message.text)
    await notifier.dispatch(outbound)


@safe_telegram_handler
async def handle_start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/start [REF<code>] - the engine reads the payload itself"""
    await _relay(update, context)


@safe_telegram_handler
async def handle_text_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _relay(update, context)


def register_conversation_handlers(application) -> None:
    """Register the two entry points with the Telegram application"""
    application.add_handler(
        CommandHandler("start", handle_start_command, filters=filters.ChatType.PRIVATE)
    )
    application.add_handler(
        MessageHandler(filters.ChatType.PRIVATE & filters.TEXT & ~filters.COMMAND, handle_text_message)
    )
    logger.info("Registered conversation handlers")


def build_application(engine, notifier, token: Optional[str] = None) -> Application:
    token = token or Config.BOT_TOKEN
    if not token:
        raise ValueError("BOT_TOKEN not configured")

    application = Application.builder().token(token).build()
    application.bot_data[ENGINE_KEY] = engine
    application.bot_data[NOTIFIER_KEY] = notifier
    register_conversation_handlers(application)
    notifier.set_sender(make_sender(application.bot))
    logger.info("✅ Telegram application created")
    return application


async def announce_online(application: Application, state: TransportState, notifier, system_config) -> bool:
    """Mark the transport ready and tell the super admin (when bound to a chat)"""
    me = await application.bot.get_me()
    state.mark_ready(me.username)
    logger.info(f"✅ TRANSPORT: Connected as @{me.username} ({state.pairing_artifact})")

    delivered = False
    message = notifier.user_message(
        system_config.super_admin,
        f"🚀 {Config.BRAND} is now online!\n"
        f"Admin referral code: {system_config.admin_referral_code}",
    )
    if message is not None:
        delivered = await notifier.send(message.chat_id, message.text)
    return delivered
