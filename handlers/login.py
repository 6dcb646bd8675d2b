"""
Login, device-block and forgot-PIN flows.

Login moves the account to the current chat (last login wins); the chat it
was bound to before gets a new-device alert.
"""

import logging

from handlers.context import FlowContext
from services.session_store import State
from utils import messages
from utils.exception_handler import AuthorizationError, NotFoundError, ValidationError
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)


async def begin_login(ctx: FlowContext):
    ctx.session.clear_form()
    ctx.session.go(State.LOGIN_PHONE)
    ctx.reply("🔑 Enter your registered phone number:")


async def handle_login_phone(ctx: FlowContext):
    try:
        phone = InputValidator.validate_phone(ctx.text)
    except ValidationError:
        ctx.reply("❌ Invalid phone format. Must start with 07 or 01 and be 10 digits. Re-enter phone number.")
        return

    if not ctx.ledger.phone_exists(phone):
        ctx.reply('❌ No account found. Type "register" to create an account.')
        ctx.session.clear_form()
        ctx.session.go(State.START)
        return

    ctx.session.login_phone = phone
    ctx.session.go(State.LOGIN_PIN)
    ctx.reply("🔑 Enter your security PIN:")


async def handle_login_pin(ctx: FlowContext):
    session = ctx.session
    try:
        result = ctx.ledger.authenticate(session.login_phone, ctx.text, ctx.chat_id)
    except AuthorizationError:
        logger.info(f"🔑 LOGIN: Wrong PIN for {session.login_phone} from chat {ctx.chat_id}")
        ctx.reply("❌ Incorrect PIN. Try again.")
        return
    except NotFoundError:
        ctx.reply('❌ No account found. Type "register" to create an account.')
        session.clear_form()
        session.go(State.START)
        return

    user = result.user
    if result.previous_chat_id:
        ctx.send(result.previous_chat_id, messages.NEW_DEVICE_ALERT)

    session.to_menu()
    session.authenticated_phone = user.phone
    ctx.reply(
        f"😊 Welcome back, {user.first_name}! You are now logged in.\n"
        '🔔 If this wasn\'t you, type "block".\n\n'
        f"{messages.main_menu_text()}"
    )


async def handle_block(ctx: FlowContext):
    """Owner reports a device they did not authorise"""
    ctx.reply("🚫 New device access blocked. Contact support immediately.")
    who = messages.user_label(ctx.user) if ctx.user else f"Chat {ctx.chat_id}"
    ctx.notify_admins(f"🚨 Security Alert: {who} reported unauthorised device access.")


async def begin_forgot_pin(ctx: FlowContext):
    ctx.session.clear_form()
    ctx.session.go(State.FORGOT_PIN)
    ctx.reply("😥 Enter your registered phone number for PIN reset:")


async def handle_forgot_pin(ctx: FlowContext):
    try:
        phone = InputValidator.validate_phone(ctx.text)
    except ValidationError:
        ctx.reply("❌ Invalid phone format. Re-enter your registered phone number.")
        return

    ctx.reply("🙏 Thank you. A support ticket has been created. Please wait for assistance.")
    ctx.notify_admins(f"⚠️ Forgot PIN: User with phone {phone} requested PIN reset.")
    if ctx.session.is_authenticated:
        ctx.session.to_menu()
    else:
        ctx.session.clear_form()
        ctx.session.go(State.START)


STATE_HANDLERS = {
    State.LOGIN_PHONE: handle_login_phone,
    State.LOGIN_PIN: handle_login_pin,
    State.FORGOT_PIN: handle_forgot_pin,
}
