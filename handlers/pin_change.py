"""Withdrawal PIN change: current PIN -> new PIN"""

import logging

from handlers.context import FlowContext
from services.session_store import State
from utils import messages
from utils.exception_handler import ValidationError
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)


async def begin_pin_change(ctx: FlowContext):
    ctx.session.go(State.CHANGE_PIN)
    ctx.reply("🔑 Enter your current 4-digit withdrawal PIN to change it:")


async def handle_current_pin(ctx: FlowContext):
    if not ctx.ledger.verify_withdrawal_pin(ctx.user.phone, ctx.text):
        ctx.reply('❌ Incorrect current PIN. Try again or type "0" to cancel.')
        return
    ctx.session.go(State.NEW_PIN)
    ctx.reply("🔑 Enter your new 4-digit PIN:")


async def handle_new_pin(ctx: FlowContext):
    try:
        new_pin = InputValidator.validate_pin(ctx.text)
    except ValidationError:
        ctx.reply("❌ Invalid PIN. Enter a valid 4-digit PIN.")
        return

    ctx.ledger.set_pin(ctx.user.phone, new_pin)
    ctx.reply(f"✅ PIN changed successfully!\n{messages.BACK_TO_MENU}")
    ctx.session.to_menu()


STATE_HANDLERS = {
    State.CHANGE_PIN: handle_current_pin,
    State.NEW_PIN: handle_new_pin,
}
