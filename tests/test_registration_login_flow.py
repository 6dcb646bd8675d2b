"""
Registration, login, deep-link referral, new-device alert and the global
keywords, driven through ConversationEngine.handle.
"""

import asyncio

import pytest

from handlers.menu import referral_link
from services.session_store import State
from utils import messages
from conftest import (
    ADMIN_CHAT, ADMIN_CODE, SECURITY_PIN, WITHDRAWAL_PIN,
    converse, last_reply, login_via_chat, register_via_chat, texts_for,
)


def state_of(engine, chat_id):
    return engine.sessions.get(chat_id).state


class TestFirstContact:

    @pytest.mark.asyncio
    async def test_messages_from_one_chat_run_in_order_and_free_their_lock(self, engine):
        first, second = await asyncio.gather(
            engine.handle("c1", "register"),
            engine.handle("c1", "Jane"),
        )

        assert last_reply(first, "c1") == "👋 Let's register! Enter your first name:"
        assert last_reply(second, "c1") == "✨ Great, Jane! Now, enter your second name:"
        assert state_of(engine, "c1") == State.AWAITING_SECOND_NAME
        assert engine._chat_locks == {}
        assert engine._chat_lock_users == {}

    @pytest.mark.asyncio
    async def test_unknown_chat_gets_register_or_login_hint(self, engine):
        outbound = await engine.handle("c1", "hello")
        assert last_reply(outbound, "c1") == messages.FIRST_CONTACT

        outbound = await engine.handle("c1", "what?")
        assert messages.NOT_REGISTERED in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.START

    @pytest.mark.asyncio
    async def test_main_menu_requires_login(self, engine):
        await engine.handle("c1", "hello")
        outbound = await engine.handle("c1", "00")
        assert last_reply(outbound, "c1") == messages.LOGIN_REQUIRED


class TestRegistration:

    @pytest.mark.asyncio
    async def test_full_registration_binds_chat_and_alerts_admin(self, engine, ledger, admin_chat):
        outbound = await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")

        reply = last_reply(outbound, "c1")
        assert "Registration successful, Jane!" in reply
        assert "Main Menu" in reply

        user = ledger.require_user("0712345678")
        assert user.chat_id == "c1"
        assert user.referred_by == ADMIN_CODE
        assert user.referral_code in reply
        assert state_of(engine, "c1") == State.MENU

        admin_texts = texts_for(outbound, ADMIN_CHAT)
        assert len(admin_texts) == 1
        assert "New Registration" in admin_texts[0]
        assert "0712345678" in admin_texts[0]

    @pytest.mark.asyncio
    async def test_invalid_inputs_reprompt_in_place(self, engine, ledger):
        await converse(engine, "c1", "register", "Jane", "Doe")

        outbound = await engine.handle("c1", "FY'S-NOPE0")
        assert "Referral code not found" in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.AWAITING_REFERRAL_CODE

        await engine.handle("c1", ADMIN_CODE.lower())
        outbound = await engine.handle("c1", "0812345678")
        assert "Invalid phone format" in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.AWAITING_PHONE

        await engine.handle("c1", "0712345678")
        outbound = await engine.handle("c1", "12ab")
        assert "valid 4-digit PIN" in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.AWAITING_WITHDRAWAL_PIN

        await engine.handle("c1", WITHDRAWAL_PIN)
        outbound = await engine.handle("c1", "12345")
        assert "Invalid PIN" in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.AWAITING_SECURITY_PIN
        assert not ledger.phone_exists("0712345678")

        await engine.handle("c1", SECURITY_PIN)
        assert ledger.phone_exists("0712345678")

    @pytest.mark.asyncio
    async def test_user_referral_code_is_accepted(self, engine, ledger):
        await register_via_chat(engine, "c1", "Rita", "Ref", "0722000111")
        code = ledger.require_user("0722000111").referral_code

        await register_via_chat(engine, "c2", "Ben", "Bee", "0712345678", referral_code=code.lower())

        assert ledger.require_user("0712345678").referred_by == code

    @pytest.mark.asyncio
    async def test_contact_support_opens_ticket(self, engine, admin_chat):
        outbound = await converse(engine, "c1", "register", "Jane", "Doe", "contact support")

        assert "support ticket has been created" in last_reply(outbound, "c1")
        assert any("Support Ticket" in text for text in texts_for(outbound, ADMIN_CHAT))
        assert state_of(engine, "c1") == State.START

    @pytest.mark.asyncio
    async def test_duplicate_phone_redirects_to_login(self, engine, ledger):
        await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")

        outbound = await converse(engine, "c2", "register", "Jane", "Again", ADMIN_CODE, "0712345678")

        assert "already registered" in last_reply(outbound, "c2")
        assert state_of(engine, "c2") == State.LOGIN_PHONE

        outbound = await converse(engine, "c2", "0712345678", SECURITY_PIN)
        assert "Welcome back, Jane" in last_reply(outbound, "c2")
        assert ledger.require_user("0712345678").chat_id == "c2"

    @pytest.mark.asyncio
    async def test_cancel_during_registration(self, engine, ledger):
        outbound = await converse(engine, "c1", "register", "Jane", "0")

        assert "Operation cancelled" in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.START
        assert ledger.list_users() == []


class TestDeepLinkReferral:

    @pytest.mark.asyncio
    async def test_start_payload_is_applied_after_second_name(self, engine, ledger):
        await register_via_chat(engine, "c1", "Rita", "Ref", "0722000111")
        code = ledger.require_user("0722000111").referral_code
        payload = referral_link(code).split("start=", 1)[1]

        outbound = await engine.handle("c2", f"/start {payload}")
        assert code in last_reply(outbound, "c2")

        outbound = await converse(engine, "c2", "register", "Ben", "Bee")
        assert f"Referral code {code} applied" in last_reply(outbound, "c2")
        assert state_of(engine, "c2") == State.AWAITING_PHONE

        await converse(engine, "c2", "0712345678", WITHDRAWAL_PIN, SECURITY_PIN)
        assert ledger.require_user("0712345678").referred_by == code

    @pytest.mark.asyncio
    async def test_unknown_payload_falls_back_to_asking(self, engine):
        await engine.handle("c2", "/start REFFYS-NOPE0")
        outbound = await converse(engine, "c2", "register", "Ben", "Bee")

        assert "Enter your referral code" in last_reply(outbound, "c2")
        assert state_of(engine, "c2") == State.AWAITING_REFERRAL_CODE

    @pytest.mark.asyncio
    async def test_start_for_logged_in_user_shows_menu(self, engine):
        await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")
        outbound = await engine.handle("c1", "/start")
        assert "Main Menu" in last_reply(outbound, "c1")


class TestLogin:

    @pytest.mark.asyncio
    async def test_login_requires_the_security_pin(self, engine, ledger):
        await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")

        outbound = await converse(engine, "c2", "login", "0712345678", WITHDRAWAL_PIN)
        assert last_reply(outbound, "c2") == "❌ Incorrect PIN. Try again."
        assert state_of(engine, "c2") == State.LOGIN_PIN
        assert ledger.require_user("0712345678").chat_id == "c1"

        outbound = await engine.handle("c2", SECURITY_PIN)
        assert "Welcome back, Jane" in last_reply(outbound, "c2")

    @pytest.mark.asyncio
    async def test_login_from_new_device_alerts_previous_chat(self, engine):
        await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")

        outbound = await login_via_chat(engine, "c2", "0712345678")

        assert texts_for(outbound, "c1") == [messages.NEW_DEVICE_ALERT]
        assert state_of(engine, "c2") == State.MENU

        # The old chat is logged out underneath its session
        outbound = await engine.handle("c1", "2")
        assert "session has ended" in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.START

    @pytest.mark.asyncio
    async def test_relogin_on_same_chat_sends_no_alert(self, engine):
        await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")

        outbound = await login_via_chat(engine, "c1", "0712345678")

        assert texts_for(outbound, "c1") == [last_reply(outbound, "c1")]
        assert messages.NEW_DEVICE_ALERT not in texts_for(outbound, "c1")

    @pytest.mark.asyncio
    async def test_unknown_phone(self, engine):
        outbound = await converse(engine, "c1", "login", "0799999999")
        assert "No account found" in last_reply(outbound, "c1")
        assert state_of(engine, "c1") == State.START

    @pytest.mark.asyncio
    async def test_block_alerts_admins(self, engine, admin_chat):
        await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")

        outbound = await engine.handle("c1", "block")

        assert "access blocked" in last_reply(outbound, "c1")
        alerts = texts_for(outbound, ADMIN_CHAT)
        assert len(alerts) == 1 and "Security Alert" in alerts[0]

    @pytest.mark.asyncio
    async def test_forgot_pin_opens_ticket(self, engine, admin_chat):
        outbound = await converse(engine, "c1", "forgot pin", "0712345678")

        assert "support ticket has been created" in last_reply(outbound, "c1")
        assert any("Forgot PIN" in text for text in texts_for(outbound, ADMIN_CHAT))
        assert state_of(engine, "c1") == State.START


class TestBannedUser:

    @pytest.mark.asyncio
    async def test_banned_user_only_sees_the_ban(self, engine, ledger):
        await register_via_chat(engine, "c1", "Jane", "Doe", "0712345678")
        ledger.ban_user("0712345678", "Fraudulent deposits")

        for text in ("1", "00", "login", "register"):
            outbound = await engine.handle("c1", text)
            reply = last_reply(outbound, "c1")
            assert "You are banned" in reply
            assert "Fraudulent deposits" in reply

        ledger.unban_user("0712345678")
        outbound = await engine.handle("c1", "00")
        assert "Main Menu" in last_reply(outbound, "c1")
