"""
Shared fixtures for the investment bot test suite.

Every test gets a fresh in-memory SQLite database built from the real
models, a controllable clock, a recording transport (AsyncMock sender) and
a fake STK-push provider, wired into the real ConversationEngine. Helpers
drive registration and login through the actual FSM so flow tests start
from the same state a real user would.
"""

import os

# Must be set before config/database are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUPER_ADMIN_PHONE", "0700000001")
os.environ.setdefault("ADMIN_REFERRAL_CODE", "ADMIN-TEST1")

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from database import build_engine, build_session_factory, create_tables
from handlers.admin_commands import AdminCommandProcessor
from handlers.router import ConversationEngine
from services.deposit_poller import DepositPoller
from services.ledger_service import LedgerService
from services.notification_service import NotificationService, OutboundMessage
from services.payhero_service import (
    STATUS_SUCCESS, PaymentStatusResult, PushPaymentResult,
)
from services.session_store import InMemorySessionStore
from services.system_config import SystemConfig

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

SUPER_ADMIN_PHONE = "0700000001"
ADMIN_CHAT = "chat-admin"
ADMIN_CODE = "ADMIN-TEST1"
DEPOSIT_INSTRUCTIONS = "Send money to M-Pesa 0700000000 (Name: Test Till)"
WITHDRAWAL_INSTRUCTIONS = "Your withdrawal will be processed within 24 hours."

WITHDRAWAL_PIN = "1234"
SECURITY_PIN = "5678"


class FakeClock:
    """Callable clock the tests move forward explicitly"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakePaymentProvider:
    """STK push provider double: pushes succeed, polls report SUCCESS"""

    def __init__(self):
        self.initiate_push = AsyncMock(return_value=PushPaymentResult(reference="PUSH-REF-1"))
        self.poll_status = AsyncMock(
            return_value=PaymentStatusResult(status=STATUS_SUCCESS, provider_reference="QWE123RTY")
        )


# ----------------------------------------------------------------------
# Infrastructure
# ----------------------------------------------------------------------

@pytest.fixture
def db_engine():
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0))


@pytest.fixture
def system_config():
    return SystemConfig(
        deposit_instructions=DEPOSIT_INSTRUCTIONS,
        withdrawal_instructions=WITHDRAWAL_INSTRUCTIONS,
        super_admin=SUPER_ADMIN_PHONE,
        admins={SUPER_ADMIN_PHONE},
        admin_referral_code=ADMIN_CODE,
    )


@pytest.fixture
def ledger(session_factory, system_config, clock):
    return LedgerService(session_factory, system_config, clock=clock)


@pytest.fixture
def sender():
    return AsyncMock()


@pytest.fixture
def notifier(sender, ledger):
    return NotificationService(sender, ledger)


@pytest.fixture
def session_store(clock):
    return InMemorySessionStore(ttl_minutes=60, clock=clock)


@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest.fixture
def deposit_poller(payment_provider, ledger, notifier):
    return DepositPoller(payment_provider, ledger, notifier, interval_seconds=0, max_attempts=4)


@pytest.fixture
def admin_processor(ledger, notifier, session_factory):
    return AdminCommandProcessor(ledger, notifier, session_factory)


@pytest.fixture
def engine(ledger, session_store, notifier, admin_processor, payment_provider, deposit_poller):
    return ConversationEngine(
        ledger,
        session_store,
        notifier,
        admin_processor=admin_processor,
        payment_provider=payment_provider,
        deposit_poller=deposit_poller,
    )


@pytest_asyncio.fixture
async def admin_chat(engine):
    """Super admin registered and bound to ADMIN_CHAT"""
    await register_via_chat(engine, ADMIN_CHAT, "Super", "Admin", SUPER_ADMIN_PHONE)
    return ADMIN_CHAT


# ----------------------------------------------------------------------
# Conversation helpers
# ----------------------------------------------------------------------

def texts_for(outbound: List[OutboundMessage], chat_id: str) -> List[str]:
    return [message.text for message in outbound if message.chat_id == chat_id]


def last_reply(outbound: List[OutboundMessage], chat_id: str) -> str:
    replies = texts_for(outbound, chat_id)
    assert replies, f"no reply to {chat_id} in {outbound}"
    return replies[-1]


async def converse(engine, chat_id: str, *lines: str) -> List[OutboundMessage]:
    """Send lines in order; returns the outbound of the last one"""
    outbound = []
    for line in lines:
        outbound = await engine.handle(chat_id, line)
    return outbound


async def register_via_chat(
    engine,
    chat_id: str,
    first_name: str,
    second_name: str,
    phone: str,
    referral_code: str = ADMIN_CODE,
    withdrawal_pin: str = WITHDRAWAL_PIN,
    security_pin: str = SECURITY_PIN,
) -> List[OutboundMessage]:
    return await converse(
        engine, chat_id,
        "register", first_name, second_name, referral_code, phone, withdrawal_pin, security_pin,
    )


async def login_via_chat(engine, chat_id: str, phone: str, security_pin: str = SECURITY_PIN) -> List[OutboundMessage]:
    return await converse(engine, chat_id, "login", phone, security_pin)


def fund(ledger, phone: str, amount) -> Decimal:
    """Credit a balance the way production does: manual deposit + approval"""
    deposit = ledger.create_manual_deposit(phone, Decimal(str(amount)))
    ledger.approve_deposit(deposit.deposit_id)
    return ledger.require_user(phone).account_balance


async def drain_pollers(poller: DepositPoller, max_ticks: int = 200):
    for _ in range(max_ticks):
        if not poller.active_references():
            return
        await asyncio.sleep(0)
    raise AssertionError(f"deposit polls still running: {poller.active_references()}")


def sent_texts(sender: AsyncMock, chat_id: Optional[str] = None) -> List[str]:
    """Texts delivered through the transport mock, optionally for one chat"""
    return [
        call.args[1]
        for call in sender.await_args_list
        if chat_id is None or call.args[0] == chat_id
    ]
