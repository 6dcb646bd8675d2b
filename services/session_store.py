"""
Conversation session storage.

Sessions are keyed by chat identity, not by user: a chat may be talking to
the bot before it has registered or logged in. They live only in memory;
a restart sends everybody back through login.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional

from utils.helpers import utc_now

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = timedelta(minutes=1)


class State:
    """FSM node names"""
    START = "start"
    AWAITING_FIRST_NAME = "awaiting_first_name"
    AWAITING_SECOND_NAME = "awaiting_second_name"
    AWAITING_REFERRAL_CODE = "awaiting_referral_code"
    AWAITING_PHONE = "awaiting_phone"
    AWAITING_WITHDRAWAL_PIN = "awaiting_withdrawal_pin"
    AWAITING_SECURITY_PIN = "awaiting_security_pin"
    LOGIN_PHONE = "login_phone"
    LOGIN_PIN = "login_pin"
    FORGOT_PIN = "forgot_pin"
    MENU = "menu"
    INVEST = "invest"
    CONFIRM_INVESTMENT = "confirm_investment"
    CHECK_BALANCE_MENU = "check_balance_menu"
    WITHDRAW = "withdraw"
    WITHDRAW_AMOUNT = "withdraw_amount"
    WITHDRAW_MPESA = "withdraw_mpesa"
    WITHDRAW_PIN = "withdraw_pin"
    DEPOSIT = "deposit"
    CHOOSE_DEPOSIT_METHOD = "choose_deposit_method"
    AUTO_DEPOSIT_AMOUNT = "auto_deposit_amount"
    AUTO_DEPOSIT_PHONE = "auto_deposit_phone"
    MANUAL_DEPOSIT_AMOUNT = "manual_deposit_amount"
    CHANGE_PIN = "change_pin"
    NEW_PIN = "new_pin"
    REFERRAL_LINK = "referral_link"
    WITHDRAWAL_STATUS = "withdrawal_status"
    VIEW_REFERRALS = "view_referrals"

    REGISTRATION = (
        AWAITING_FIRST_NAME,
        AWAITING_SECOND_NAME,
        AWAITING_REFERRAL_CODE,
        AWAITING_PHONE,
        AWAITING_WITHDRAWAL_PIN,
        AWAITING_SECURITY_PIN,
    )


@dataclass
class ConversationSession:
    """Current FSM node plus the fields of the form being filled"""

    chat_id: str
    state: str = State.START

    # Registration
    first_name: Optional[str] = None
    second_name: Optional[str] = None
    referred_by: Optional[str] = None
    phone: Optional[str] = None
    withdrawal_pin: Optional[str] = None
    pending_referral_code: Optional[str] = None

    # Login
    login_phone: Optional[str] = None
    authenticated_phone: Optional[str] = None

    # Investment
    invest_amount: Optional[Decimal] = None

    # Withdrawal
    withdraw_source: Optional[str] = None
    withdraw_amount: Optional[Decimal] = None
    payout_number: Optional[str] = None
    wrong_pin_count: int = 0

    # Deposit
    deposit_method: Optional[str] = None
    deposit_amount: Optional[Decimal] = None

    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_authenticated(self) -> bool:
        return self.authenticated_phone is not None

    def clear_form(self):
        """Drop every in-progress field, keeping identity"""
        self.first_name = None
        self.second_name = None
        self.referred_by = None
        self.phone = None
        self.withdrawal_pin = None
        self.login_phone = None
        self.invest_amount = None
        self.withdraw_source = None
        self.withdraw_amount = None
        self.payout_number = None
        self.wrong_pin_count = 0
        self.deposit_method = None
        self.deposit_amount = None

    def go(self, state: str):
        self.state = state

    def to_menu(self):
        self.clear_form()
        self.state = State.MENU


class SessionStore(ABC):
    """get/put/delete by chat identity"""

    @abstractmethod
    def get(self, chat_id: str) -> Optional[ConversationSession]:
        ...

    @abstractmethod
    def put(self, session: ConversationSession):
        ...

    @abstractmethod
    def delete(self, chat_id: str):
        ...


class InMemorySessionStore(SessionStore):
    """Process-local store; idle sessions expire on read and in a periodic sweep on write"""

    def __init__(self, ttl_minutes: int = 1440, clock: Callable[[], datetime] = utc_now):
        self._sessions: Dict[str, ConversationSession] = {}
        self.ttl = timedelta(minutes=ttl_minutes)
        self.clock = clock
        self._last_sweep: Optional[datetime] = None

    def get(self, chat_id: str) -> Optional[ConversationSession]:
        session = self._sessions.get(chat_id)
        if session is None:
            return None
        if self.clock() - session.updated_at > self.ttl:
            logger.info(f"⏰ SESSION: Expired idle session for chat {chat_id}")
            self._sessions.pop(chat_id, None)
            return None
        return session

    def put(self, session: ConversationSession):
        now = self.clock()
        session.updated_at = now
        self._sessions[session.chat_id] = session
        if self._last_sweep is None or now - self._last_sweep >= SWEEP_INTERVAL:
            self._sweep(now)

    def _sweep(self, now: datetime):
        """Drop every session idle longer than the TTL"""
        expired = [chat_id for chat_id, s in self._sessions.items() if now - s.updated_at > self.ttl]
        for chat_id in expired:
            del self._sessions[chat_id]
        self._last_sweep = now
        if expired:
            logger.info(f"⏰ SESSION: Swept {len(expired)} idle session(s)")

    def delete(self, chat_id: str):
        self._sessions.pop(chat_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
