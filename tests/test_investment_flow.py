"""Investment flow through the chat engine: amount, PIN confirmation, referral bonus"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from models import Investment
from services.session_store import State
from utils import messages
from conftest import (
    ADMIN_CHAT, SECURITY_PIN, WITHDRAWAL_PIN,
    converse, fund, last_reply, register_via_chat, texts_for,
)

PHONE = "0712345678"


@pytest.mark.asyncio
async def test_successful_investment_debits_balance(engine, ledger, admin_chat):
    await register_via_chat(engine, "c1", "Jane", "Doe", PHONE)
    fund(ledger, PHONE, 5000)

    outbound = await converse(engine, "c1", "1", "2000")
    assert "Confirm investment of Ksh 2000" in last_reply(outbound, "c1")
    assert engine.sessions.get("c1").state == State.CONFIRM_INVESTMENT

    outbound = await engine.handle("c1", WITHDRAWAL_PIN)

    reply = last_reply(outbound, "c1")
    assert reply.startswith("✅ Investment confirmed!")
    assert "Expected Earnings (@10%): Ksh 200" in reply
    assert "Matures in 60 minutes" in reply
    assert any("Investment Alert" in text for text in texts_for(outbound, ADMIN_CHAT))

    user = ledger.require_user(PHONE)
    assert user.account_balance == Decimal("3000.00")
    [investment] = ledger.investments_for(PHONE)
    assert investment.amount == Decimal("2000.00")
    assert investment.expected_return == Decimal("200.00")
    assert investment.status == "active"
    assert engine.sessions.get("c1").state == State.MENU


@pytest.mark.asyncio
async def test_security_pin_does_not_confirm_an_investment(engine, ledger):
    await register_via_chat(engine, "c1", "Jane", "Doe", PHONE)
    fund(ledger, PHONE, 5000)

    outbound = await converse(engine, "c1", "1", "2000", SECURITY_PIN)

    assert last_reply(outbound, "c1") == messages.INCORRECT_PIN_RETRY
    assert engine.sessions.get("c1").state == State.CONFIRM_INVESTMENT
    assert ledger.require_user(PHONE).account_balance == Decimal("5000.00")
    assert ledger.investments_for(PHONE) == []

    outbound = await engine.handle("c1", WITHDRAWAL_PIN)
    assert "Investment confirmed" in last_reply(outbound, "c1")


@pytest.mark.asyncio
async def test_failed_commit_leaves_the_ledger_untouched(engine, ledger, admin_chat, monkeypatch):
    await register_via_chat(engine, "c1", "Jane", "Doe", PHONE)
    fund(ledger, PHONE, 5000)
    await converse(engine, "c1", "1", "2000")

    original_commit = Session.commit

    def commit_failing_on_investments(self):
        if any(isinstance(obj, Investment) for obj in self.identity_map.values()):
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        return original_commit(self)

    monkeypatch.setattr(Session, "commit", commit_failing_on_investments)

    outbound = await engine.handle("c1", WITHDRAWAL_PIN)

    assert texts_for(outbound, "c1") == [messages.GENERIC_FAILURE]
    assert texts_for(outbound, ADMIN_CHAT) == []
    assert engine.sessions.get("c1").state == State.MENU

    monkeypatch.undo()
    assert ledger.require_user(PHONE).account_balance == Decimal("5000.00")
    assert ledger.investments_for(PHONE) == []


@pytest.mark.asyncio
async def test_insufficient_balance_returns_to_menu(engine, ledger):
    await register_via_chat(engine, "c1", "Jane", "Doe", PHONE)
    fund(ledger, PHONE, 500)

    outbound = await converse(engine, "c1", "1", "2000")

    assert "Insufficient funds (Ksh 500)" in last_reply(outbound, "c1")
    assert engine.sessions.get("c1").state == State.MENU
    assert ledger.investments_for(PHONE) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["999", "150001", "abc", "-2000"])
async def test_amount_outside_bounds_reprompts(engine, ledger, amount):
    await register_via_chat(engine, "c1", "Jane", "Doe", PHONE)
    fund(ledger, PHONE, 200000)

    outbound = await converse(engine, "c1", "1", amount)

    assert last_reply(outbound, "c1") == "❌ Enter an amount between Ksh 1000 and Ksh 150000."
    assert engine.sessions.get("c1").state == State.INVEST


@pytest.mark.asyncio
async def test_cancel_at_confirmation(engine, ledger):
    await register_via_chat(engine, "c1", "Jane", "Doe", PHONE)
    fund(ledger, PHONE, 5000)

    outbound = await converse(engine, "c1", "1", "2000", "0")

    assert last_reply(outbound, "c1") == messages.CANCELLED
    assert engine.sessions.get("c1").state == State.MENU
    assert ledger.require_user(PHONE).account_balance == Decimal("5000.00")


class TestReferralBonus:

    @pytest.mark.asyncio
    async def test_first_investment_pays_the_referrer(self, engine, ledger):
        await register_via_chat(engine, "c1", "Rita", "Ref", "0722000111")
        code = ledger.require_user("0722000111").referral_code
        await register_via_chat(engine, "c2", "Ben", "Bee", PHONE, referral_code=code)
        fund(ledger, PHONE, 5000)

        outbound = await converse(engine, "c2", "1", "1000", WITHDRAWAL_PIN)

        assert texts_for(outbound, "c1") == [
            "🎉 Hi Rita, you earned a bonus of Ksh 50 because Ben invested!"
        ]
        assert ledger.require_user("0722000111").referral_earnings == Decimal("50.00")

        # Referrals screen on the referrer's side
        outbound = await engine.handle("c1", "8")
        assert "1. Ben Bee" in last_reply(outbound, "c1")

    @pytest.mark.asyncio
    async def test_later_investments_pay_no_further_bonus(self, engine, ledger):
        await register_via_chat(engine, "c1", "Rita", "Ref", "0722000111")
        code = ledger.require_user("0722000111").referral_code
        await register_via_chat(engine, "c2", "Ben", "Bee", PHONE, referral_code=code)
        fund(ledger, PHONE, 5000)

        await converse(engine, "c2", "1", "1000", WITHDRAWAL_PIN)
        outbound = await converse(engine, "c2", "1", "2000", WITHDRAWAL_PIN)

        assert texts_for(outbound, "c1") == []
        assert ledger.require_user("0722000111").referral_earnings == Decimal("50.00")
        assert len(ledger.referrals_for("0722000111")) == 1

    @pytest.mark.asyncio
    async def test_admin_code_referral_pays_nobody(self, engine, ledger, admin_chat):
        await register_via_chat(engine, "c2", "Ben", "Bee", PHONE)
        fund(ledger, PHONE, 5000)

        await converse(engine, "c2", "1", "1000", WITHDRAWAL_PIN)

        assert ledger.list_referrals() == []
        assert ledger.require_user(PHONE).account_balance == Decimal("4000.00")
