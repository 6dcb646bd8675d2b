"""Per-message context handed to every conversation state handler"""

from dataclasses import dataclass, field
from typing import List, Optional

from models import User
from services.notification_service import OutboundMessage
from services.session_store import ConversationSession
from utils.messages import money


@dataclass
class EngineServices:
    ledger: object
    notifier: object
    payment_provider: Optional[object] = None
    deposit_poller: Optional[object] = None

    @property
    def system_config(self):
        return self.ledger.system_config


@dataclass
class FlowContext:
    chat_id: str
    text: str
    session: ConversationSession
    user: Optional[User]
    services: EngineServices
    outbound: List[OutboundMessage] = field(default_factory=list)

    @property
    def ledger(self):
        return self.services.ledger

    @property
    def config(self):
        return self.services.system_config

    @property
    def lowered(self) -> str:
        return self.text.lower()

    def reply(self, text: str):
        self.outbound.append(OutboundMessage(chat_id=self.chat_id, text=text))

    def send(self, chat_id: str, text: str):
        self.outbound.append(OutboundMessage(chat_id=chat_id, text=text))

    def notify_user(self, phone: str, text: str):
        message = self.services.notifier.user_message(phone, text)
        if message is not None:
            self.outbound.append(message)

    def notify_admins(self, text: str):
        self.outbound.extend(self.services.notifier.admin_messages(text))

    def money(self, amount) -> str:
        return money(amount, self.config.currency_label)
