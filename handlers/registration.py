"""
Registration flow: first name -> second name -> referral code -> phone ->
withdrawal PIN -> security PIN -> account created, chat bound, main menu.
"""

import logging

from handlers.context import FlowContext
from services.ledger_service import DuplicateAccountError
from services.session_store import State
from utils import messages
from utils.exception_handler import ValidationError
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)

CONTACT_SUPPORT = "contact support"


async def begin_registration(ctx: FlowContext):
    ctx.session.clear_form()
    ctx.session.go(State.AWAITING_FIRST_NAME)
    ctx.reply("👋 Let's register! Enter your first name:")


async def handle_first_name(ctx: FlowContext):
    try:
        ctx.session.first_name = InputValidator.validate_name(ctx.text)
    except ValidationError as e:
        ctx.reply(f"❌ {e.message}. Enter your first name:")
        return
    ctx.session.go(State.AWAITING_SECOND_NAME)
    ctx.reply(f"✨ Great, {ctx.session.first_name}! Now, enter your second name:")


async def handle_second_name(ctx: FlowContext):
    session = ctx.session
    try:
        session.second_name = InputValidator.validate_name(ctx.text)
    except ValidationError as e:
        ctx.reply(f"❌ {e.message}. Enter your second name:")
        return

    # A referral code carried in by a deep link is applied without asking
    if session.pending_referral_code:
        code = ctx.ledger.resolve_referral_code(session.pending_referral_code)
        session.pending_referral_code = None
        if code:
            session.referred_by = code
            session.go(State.AWAITING_PHONE)
            ctx.reply(
                f"🙏 Thanks, {session.first_name} {session.second_name}!\n"
                f"👍 Referral code {code} applied! Now, enter your phone number (e.g., 07XXXXXXXX):"
            )
            return

    session.go(State.AWAITING_REFERRAL_CODE)
    ctx.reply(
        f"🙏 Thanks, {session.first_name} {session.second_name}!\n"
        'Enter your referral code (or type "contact support" if you don\'t have one):'
    )


async def handle_referral_code(ctx: FlowContext):
    if ctx.lowered == CONTACT_SUPPORT:
        ctx.reply("📞 A support ticket has been created. Our team will contact you shortly.")
        ctx.notify_admins(f"⚠️ Support Ticket: Chat {ctx.chat_id} requested a referral code.")
        ctx.session.clear_form()
        ctx.session.go(State.START)
        return

    if not ctx.text:
        ctx.reply("❌ A referral code is required. Contact support for one.")
        return

    code = ctx.ledger.resolve_referral_code(ctx.text)
    if code is None:
        ctx.reply('⚠️ Referral code not found. Enter a valid code or type "contact support".')
        return

    ctx.session.referred_by = code
    ctx.session.go(State.AWAITING_PHONE)
    ctx.reply("👍 Referral accepted! Now, enter your phone number (e.g., 07XXXXXXXX):")


async def handle_phone(ctx: FlowContext):
    try:
        phone = InputValidator.validate_phone(ctx.text)
    except ValidationError:
        ctx.reply("❌ Invalid phone format. Must start with 07 or 01 and be 10 digits. Re-enter phone number.")
        return

    if ctx.ledger.phone_exists(phone):
        redirect_to_login(ctx)
        return

    ctx.session.phone = phone
    ctx.session.go(State.AWAITING_WITHDRAWAL_PIN)
    ctx.reply("🔒 Create a 4-digit PIN for withdrawals:")


async def handle_withdrawal_pin(ctx: FlowContext):
    try:
        ctx.session.withdrawal_pin = InputValidator.validate_pin(ctx.text)
    except ValidationError:
        ctx.reply("❌ Enter a valid 4-digit PIN.")
        return
    ctx.session.go(State.AWAITING_SECURITY_PIN)
    ctx.reply("Almost done! Create a 4-digit security PIN (for login):")


async def handle_security_pin(ctx: FlowContext):
    session = ctx.session
    try:
        security_pin = InputValidator.validate_pin(ctx.text)
    except ValidationError:
        ctx.reply("❌ Invalid PIN! Enter a valid 4-digit security PIN.")
        return

    try:
        user = ctx.ledger.create_user(
            first_name=session.first_name,
            second_name=session.second_name,
            phone=session.phone,
            withdrawal_pin=session.withdrawal_pin,
            security_pin=security_pin,
            referred_by=session.referred_by,
            chat_id=ctx.chat_id,
        )
    except DuplicateAccountError:
        redirect_to_login(ctx)
        return

    session.to_menu()
    session.authenticated_phone = user.phone
    ctx.reply(
        f"✅ Registration successful, {user.first_name}!\n"
        f"Your referral code is: {user.referral_code}\n"
        "Welcome aboard! 🚀\n\n"
        f"{messages.main_menu_text()}"
    )
    ctx.notify_admins(
        "🆕 New Registration:\n"
        f"User: {messages.user_label(user)}\n"
        f"Referred by: {user.referred_by or 'N/A'}"
    )


def redirect_to_login(ctx: FlowContext):
    """Duplicate phone: abandon registration and start the login flow"""
    ctx.session.clear_form()
    ctx.session.go(State.LOGIN_PHONE)
    ctx.reply(
        "😮 This number is already registered. Let's log you in instead.\n"
        "🔑 Enter your registered phone number:"
    )


STATE_HANDLERS = {
    State.AWAITING_FIRST_NAME: handle_first_name,
    State.AWAITING_SECOND_NAME: handle_second_name,
    State.AWAITING_REFERRAL_CODE: handle_referral_code,
    State.AWAITING_PHONE: handle_phone,
    State.AWAITING_WITHDRAWAL_PIN: handle_withdrawal_pin,
    State.AWAITING_SECURITY_PIN: handle_security_pin,
}
