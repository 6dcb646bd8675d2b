"""
Conversation Router - the FSM engine behind every inbound text message.

For each message: resolve the chat's session and bound user, apply the
global keywords and interrupts, gate admins and banned users, then dispatch
on session.state through one state -> handler table. Messages from the same
chat are handled strictly one at a time.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from config import Config
from handlers import balance, deposit, investment, login, menu, pin_change, registration, withdrawal
from handlers.admin_commands import AdminCommandProcessor
from handlers.context import EngineServices, FlowContext
from services.notification_service import OutboundMessage
from services.session_store import ConversationSession, SessionStore, State
from utils import messages
from utils.exception_handler import AuthorizationError, NotFoundError, PersistenceError, ValidationError
from utils.helpers import referral_code_from_payload

logger = logging.getLogger(__name__)

USER_STATE_HANDLERS = {
    **menu.STATE_HANDLERS,
    **balance.STATE_HANDLERS,
    **investment.STATE_HANDLERS,
    **withdrawal.STATE_HANDLERS,
    **deposit.STATE_HANDLERS,
    **pin_change.STATE_HANDLERS,
}

# Reachable without a bound account
GUEST_STATE_HANDLERS = {
    **registration.STATE_HANDLERS,
    **login.STATE_HANDLERS,
}

GUEST_STATES = {State.START, *GUEST_STATE_HANDLERS}


class ConversationEngine:
    """handle(chat_id, text) -> replies and notifications to deliver"""

    def __init__(
        self,
        ledger,
        session_store: SessionStore,
        notifier,
        admin_processor: Optional[AdminCommandProcessor] = None,
        payment_provider=None,
        deposit_poller=None,
    ):
        self.ledger = ledger
        self.sessions = session_store
        self.notifier = notifier
        self.admin_processor = admin_processor or AdminCommandProcessor(ledger, notifier)
        self.services = EngineServices(
            ledger=ledger,
            notifier=notifier,
            payment_provider=payment_provider,
            deposit_poller=deposit_poller,
        )
        self._chat_locks: Dict[str, asyncio.Lock] = {}
        self._chat_lock_users: Dict[str, int] = {}

    @property
    def system_config(self):
        return self.ledger.system_config

    def _lock_for(self, chat_id: str) -> asyncio.Lock:
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[chat_id] = lock
        self._chat_lock_users[chat_id] = self._chat_lock_users.get(chat_id, 0) + 1
        return lock

    def _release_lock(self, chat_id: str):
        # Dropped once no message from this chat holds or awaits it
        remaining = self._chat_lock_users.get(chat_id, 1) - 1
        if remaining > 0:
            self._chat_lock_users[chat_id] = remaining
            return
        self._chat_lock_users.pop(chat_id, None)
        self._chat_locks.pop(chat_id, None)

    async def handle(self, chat_id: str, raw_text: str) -> List[OutboundMessage]:
        lock = self._lock_for(chat_id)
        try:
            async with lock:
                return await self._handle_locked(chat_id, raw_text)
        finally:
            self._release_lock(chat_id)

    async def _handle_locked(self, chat_id: str, raw_text: str) -> List[OutboundMessage]:
        text = (raw_text or "").strip()
        existing = self.sessions.get(chat_id)
        session = existing or ConversationSession(chat_id=chat_id)
        user = self.ledger.find_by_chat(chat_id)
        ctx = FlowContext(chat_id=chat_id, text=text, session=session, user=user, services=self.services)

        try:
            await self._route(ctx, is_new=existing is None)
        except (ValidationError, NotFoundError, AuthorizationError) as e:
            ctx.reply(f"❌ {e.message}")
        except PersistenceError as e:
            logger.error(f"❌ ROUTER: Persistence failure in state {session.state} for chat {chat_id}: {e}")
            ctx.reply(messages.GENERIC_FAILURE)
            if session.is_authenticated:
                session.to_menu()
            else:
                session.clear_form()
                session.go(State.START)

        self.sessions.put(session)
        return ctx.outbound

    async def _route(self, ctx: FlowContext, is_new: bool):
        session = ctx.session
        lowered = ctx.lowered

        # The account may have moved to another chat since this session authenticated
        session.authenticated_phone = ctx.user.phone if ctx.user else None

        if ctx.user is not None and ctx.user.banned:
            ctx.reply(messages.banned(ctx.user.banned_reason))
            return

        if lowered.startswith("/start"):
            await self._handle_start_command(ctx)
            return

        if lowered == "login":
            await login.begin_login(ctx)
            return
        if lowered == "block":
            await login.handle_block(ctx)
            return
        if lowered == "forgot pin":
            await login.begin_forgot_pin(ctx)
            return

        if ctx.user is None and is_new and lowered != "register":
            session.go(State.START)
            ctx.reply(messages.FIRST_CONTACT)
            return

        if ctx.text == "00":
            if ctx.user is None:
                ctx.reply(messages.LOGIN_REQUIRED)
                return
            await menu.show_main_menu(ctx)
            return

        if ctx.text == "0":
            self._cancel(ctx)
            return

        if ctx.user is not None and self._is_admin_command(ctx):
            response = self.admin_processor.handle(ctx.user.phone, ctx.text)
            ctx.reply(response.reply)
            ctx.outbound.extend(response.notifications)
            return

        if ctx.user is not None:
            await self._dispatch_user(ctx)
        else:
            await self._dispatch_guest(ctx)

    async def _dispatch_user(self, ctx: FlowContext):
        session = ctx.session
        if session.state in (State.START, *registration.STATE_HANDLERS):
            session.to_menu()

        handler = USER_STATE_HANDLERS.get(session.state) or GUEST_STATE_HANDLERS.get(session.state)
        if handler is None:
            logger.warning(f"⚠️ ROUTER: Unrecognized state {session.state!r} for chat {ctx.chat_id}")
            session.to_menu()
            ctx.reply(f"😕 Unrecognized state. {messages.BACK_TO_MENU}")
            return
        await handler(ctx)

    async def _dispatch_guest(self, ctx: FlowContext):
        session = ctx.session
        if session.state not in GUEST_STATES:
            # Logged out underneath us (login from another device)
            session.clear_form()
            session.go(State.START)
            ctx.reply(f"🔒 Your session has ended. {messages.NOT_REGISTERED}")
            return

        if session.state == State.START:
            if ctx.lowered == "register":
                await registration.begin_registration(ctx)
            else:
                ctx.reply(f"❓ {messages.NOT_REGISTERED}")
            return

        await GUEST_STATE_HANDLERS[session.state](ctx)

    def _cancel(self, ctx: FlowContext):
        session = ctx.session
        if ctx.user is not None:
            session.to_menu()
            ctx.reply(messages.CANCELLED)
            return
        session.clear_form()
        session.go(State.START)
        ctx.reply(f"🔙 Operation cancelled. {messages.NOT_REGISTERED}")

    def _is_admin_command(self, ctx: FlowContext) -> bool:
        first = ctx.lowered.split(maxsplit=1)[0] if ctx.text else ""
        return first == "admin" and self.system_config.is_admin(ctx.user.phone)

    async def _handle_start_command(self, ctx: FlowContext):
        """Telegram /start, optionally carrying a REF<code> deep-link payload"""
        parts = ctx.text.split(maxsplit=1)
        payload = parts[1] if len(parts) > 1 else ""
        code = referral_code_from_payload(payload)

        if ctx.user is not None:
            await menu.show_main_menu(ctx)
            return

        session = ctx.session
        if session.state not in GUEST_STATES:
            session.clear_form()
            session.go(State.START)
        if code:
            session.pending_referral_code = code
            ctx.reply(
                f"👋 Welcome to {Config.BRAND}!\n"
                f"Referral code {code} will be applied when you register.\n"
                f"{messages.NOT_REGISTERED}"
            )
        else:
            ctx.reply(f"👋 Welcome to {Config.BRAND}!\n{messages.NOT_REGISTERED}")
