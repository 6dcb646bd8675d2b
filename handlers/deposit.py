"""
Deposit flow.

Manual: amount -> deposit recorded under review, admins alerted.
Automatic: amount -> payer phone -> STK push -> background status poll.
The handler returns to the menu as soon as the push is accepted; the
poller reports the outcome later. Any provider failure falls back to the
manual deposit instructions and records nothing.
"""

import logging

from handlers.context import FlowContext
from models import DepositMethod
from services.session_store import State
from utils import messages
from utils.exception_handler import ExternalServiceError, ValidationError
from utils.helpers import format_timestamp
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)


async def begin_deposit(ctx: FlowContext):
    ctx.session.go(State.CHOOSE_DEPOSIT_METHOD)
    ctx.reply(messages.DEPOSIT_MENU)


async def handle_choose_method(ctx: FlowContext):
    if ctx.text == "1":
        ctx.session.deposit_method = DepositMethod.AUTOMATIC.value
        ctx.session.go(State.AUTO_DEPOSIT_AMOUNT)
        ctx.reply("💵 Please enter the deposit amount for automatic deposit:")
    elif ctx.text == "2":
        ctx.session.deposit_method = DepositMethod.MANUAL.value
        ctx.session.go(State.MANUAL_DEPOSIT_AMOUNT)
        ctx.reply("💵 Please enter the deposit amount:")
    else:
        ctx.reply("❓ Please reply with 1 for automatic deposit or 2 for manual deposit instructions.")


async def handle_auto_amount(ctx: FlowContext):
    try:
        ctx.session.deposit_amount = InputValidator.validate_positive_amount(ctx.text, ctx.config.max_deposit)
    except ValidationError as e:
        ctx.reply(f"❌ {e.message}.")
        return
    ctx.session.go(State.AUTO_DEPOSIT_PHONE)
    ctx.reply("📱 Please enter the phone number for STK push (must start with 07 or 01 and be 10 digits):")


def _manual_fallback(ctx: FlowContext, headline: str):
    ctx.reply(f"{headline}\n{ctx.config.deposit_instructions}\n{messages.BACK_TO_MENU}")
    ctx.session.to_menu()


async def handle_auto_phone(ctx: FlowContext):
    session = ctx.session
    try:
        payer_phone = InputValidator.validate_phone(ctx.text)
    except ValidationError:
        ctx.reply("❌ Invalid phone format. Please re-enter a valid 10-digit phone number starting with 07 or 01.")
        return

    provider = ctx.services.payment_provider
    poller = ctx.services.deposit_poller
    if provider is None or poller is None:
        _manual_fallback(ctx, "⚠️ Automatic deposit is not available right now. Please use manual deposit.")
        return

    amount = session.deposit_amount
    try:
        push = await provider.initiate_push(amount, payer_phone, customer_name=ctx.user.full_name)
    except ExternalServiceError as e:
        logger.warning(f"⚠️ DEPOSIT: STK push for {ctx.user.phone} failed: {e.message}")
        _manual_fallback(ctx, "❌ Automatic deposit request failed. Please try manual deposit.")
        return

    poller.start_polling(ctx.user.phone, amount, push.reference, payer_phone)
    ctx.reply(
        "🚀 STK push request sent! Enter your M-Pesa PIN on your phone to complete the payment.\n"
        "We'll notify you as soon as the transaction is confirmed.\n"
        f"{messages.BACK_TO_MENU}"
    )
    session.to_menu()


async def handle_manual_amount(ctx: FlowContext):
    try:
        amount = InputValidator.validate_positive_amount(ctx.text, ctx.config.max_deposit)
    except ValidationError as e:
        ctx.reply(f"❌ {e.message}.")
        return

    deposit = ctx.ledger.create_manual_deposit(ctx.user.phone, amount)
    ctx.reply(
        "💵 Deposit Request Received!\n"
        f"Deposit ID: {deposit.deposit_id}\n"
        f"Amount: {ctx.money(deposit.amount)}\n"
        "Please follow these instructions:\n"
        f"{ctx.config.deposit_instructions}\n"
        "Status: Under review\n"
        f"Requested at: {format_timestamp(deposit.created_at)}\n"
        f"{messages.BACK_TO_MENU}"
    )
    ctx.notify_admins(
        "🔔 Manual Deposit Request:\n"
        f"User: {messages.user_label(ctx.user)}\n"
        f"Amount: {ctx.money(deposit.amount)}\n"
        f"Deposit ID: {deposit.deposit_id}"
    )
    ctx.session.to_menu()


STATE_HANDLERS = {
    State.DEPOSIT: begin_deposit,
    State.CHOOSE_DEPOSIT_METHOD: handle_choose_method,
    State.AUTO_DEPOSIT_AMOUNT: handle_auto_amount,
    State.AUTO_DEPOSIT_PHONE: handle_auto_phone,
    State.MANUAL_DEPOSIT_AMOUNT: handle_manual_amount,
}
