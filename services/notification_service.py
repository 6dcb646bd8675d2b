"""
Notification Service
Outbound message value type and delivery to users and admins.
Delivery failures are logged and never raised: a chat that cannot be reached
must not roll back or abort the ledger operation that produced the message.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

Sender = Callable[[str, str], Awaitable[None]]


@dataclass(frozen=True)
class OutboundMessage:
    chat_id: str
    text: str


class NotificationService:
    """Resolves phones to bound chats and delivers through the transport sender"""

    def __init__(self, sender: Optional[Sender], ledger):
        self.sender = sender
        self.ledger = ledger

    def set_sender(self, sender: Sender):
        self.sender = sender

    async def send(self, chat_id: str, text: str) -> bool:
        if not chat_id:
            return False
        if self.sender is None:
            logger.warning(f"📭 NOTIFY: No transport attached, dropping message to {chat_id}")
            return False
        try:
            await self.sender(chat_id, text)
            return True
        except Exception as e:
            logger.error(f"❌ NOTIFY: Delivery to {chat_id} failed: {type(e).__name__}: {e}")
            return False

    async def dispatch(self, messages: Iterable[OutboundMessage]) -> int:
        delivered = 0
        for message in messages:
            if await self.send(message.chat_id, message.text):
                delivered += 1
        return delivered

    def admin_messages(self, text: str, exclude_chat: Optional[str] = None) -> List[OutboundMessage]:
        """One message per admin that currently has a bound chat"""
        admins = sorted(self.ledger.system_config.admins)
        chats = self.ledger.chat_ids_for(admins)
        missing = [phone for phone in admins if phone not in chats]
        if missing:
            logger.debug(f"NOTIFY: Admins without a bound chat: {', '.join(missing)}")
        messages = [
            OutboundMessage(chat_id=chats[phone], text=text)
            for phone in admins
            if phone in chats and chats[phone] != exclude_chat
        ]
        logger.info(f"🔔 ADMIN_NOTIFY: {text.splitlines()[0] if text else ''} -> {len(messages)} admin(s)")
        return messages

    def user_message(self, phone: str, text: str) -> Optional[OutboundMessage]:
        chat_id = self.ledger.chat_ids_for([phone]).get(phone)
        if chat_id is None:
            logger.info(f"📭 NOTIFY: {phone} has no bound chat, message not delivered")
            return None
        return OutboundMessage(chat_id=chat_id, text=text)

    async def notify_admins(self, text: str) -> int:
        return await self.dispatch(self.admin_messages(text))

    async def notify_user(self, phone: str, text: str) -> bool:
        message = self.user_message(phone, text)
        if message is None:
            return False
        return await self.send(message.chat_id, message.text)
