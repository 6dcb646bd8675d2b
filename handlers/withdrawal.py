"""
Withdrawal flow: source -> amount -> payout number -> withdrawal PIN.

The PIN step allows one retry. A second consecutive wrong PIN cancels the
request and alerts the admins; the counter resets each time the PIN step
is entered afresh.
"""

import logging

from handlers.context import FlowContext
from models import WithdrawalSource
from services.session_store import State
from utils import messages
from utils.exception_handler import InsufficientFundsError, ValidationError
from utils.helpers import format_timestamp
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)

MAX_WRONG_PIN_ATTEMPTS = 2

SOURCE_OPTIONS = {
    "1": WithdrawalSource.REFERRAL_EARNINGS,
    "2": WithdrawalSource.ACCOUNT_BALANCE,
}


async def begin_withdrawal(ctx: FlowContext):
    ctx.session.go(State.WITHDRAW)
    ctx.reply(messages.WITHDRAW_MENU)


async def handle_withdraw_source(ctx: FlowContext):
    source = SOURCE_OPTIONS.get(ctx.text)
    if source is None:
        ctx.reply("❓ Reply with 1 for Referral Earnings or 2 for Investment Earnings.")
        return

    cfg = ctx.config
    ctx.session.withdraw_source = source.value
    ctx.session.go(State.WITHDRAW_AMOUNT)
    ctx.reply(
        f"💸 Enter the withdrawal amount (min: {ctx.money(cfg.min_withdrawal)}, "
        f"max: {ctx.money(cfg.max_withdrawal)}):"
    )


async def handle_withdraw_amount(ctx: FlowContext):
    cfg = ctx.config
    try:
        amount = InputValidator.validate_amount(ctx.text, cfg.min_withdrawal, cfg.max_withdrawal)
    except ValidationError:
        ctx.reply(
            f"❌ Enter an amount between {ctx.money(cfg.min_withdrawal)} and {ctx.money(cfg.max_withdrawal)}."
        )
        return

    source = WithdrawalSource(ctx.session.withdraw_source)
    try:
        amount = ctx.ledger.check_withdrawal_amount(ctx.user.phone, source, amount)
    except InsufficientFundsError as e:
        ctx.reply(f"⚠️ {e.message}. {messages.BACK_TO_MENU}")
        ctx.session.to_menu()
        return

    ctx.session.withdraw_amount = amount
    ctx.session.go(State.WITHDRAW_MPESA)
    ctx.reply("📱 Enter your MPESA number (must start with 07 or 01, 10 digits):")


async def handle_withdraw_mpesa(ctx: FlowContext):
    try:
        ctx.session.payout_number = InputValidator.validate_phone(ctx.text)
    except ValidationError:
        ctx.reply("❌ Invalid MPESA number format. Re-enter a valid 10-digit number.")
        return

    ctx.session.wrong_pin_count = 0
    ctx.session.go(State.WITHDRAW_PIN)
    ctx.reply("🔒 Enter your withdrawal PIN:")


async def handle_withdraw_pin(ctx: FlowContext):
    session = ctx.session
    user = ctx.user

    if not ctx.ledger.verify_withdrawal_pin(user.phone, ctx.text):
        session.wrong_pin_count += 1
        if session.wrong_pin_count >= MAX_WRONG_PIN_ATTEMPTS:
            logger.warning(f"🚨 WITHDRAWAL: {user.phone} entered a wrong withdrawal PIN twice, request cancelled")
            ctx.reply("❌ Incorrect PIN twice. Your withdrawal request was cancelled and an alert has been sent to admin.")
            ctx.notify_admins(
                "⚠️ Withdrawal PIN Alert:\n"
                f"User: {messages.user_label(user)} entered incorrect PIN twice."
            )
            session.to_menu()
        else:
            ctx.reply("❌ Incorrect PIN. Try again:")
        return

    source = WithdrawalSource(session.withdraw_source)
    try:
        result = ctx.ledger.request_withdrawal(user.phone, source, session.withdraw_amount, session.payout_number)
    except (InsufficientFundsError, ValidationError) as e:
        ctx.reply(f"⚠️ {e.message}. {messages.BACK_TO_MENU}")
        session.to_menu()
        return

    wd = result.withdrawal
    ctx.reply(
        "💸 Withdrawal Request Received!\n"
        f"ID: {wd.withdrawal_id}\n"
        f"Amount: {ctx.money(wd.amount)}\n"
        f"MPESA: {wd.payout_number}\n"
        f"Date: {format_timestamp(wd.created_at)}\n"
        f"{ctx.config.withdrawal_instructions}\n"
        "Pending admin approval.\n"
        f"{messages.BACK_TO_MENU}"
    )
    ctx.notify_admins(
        "🔔 Withdrawal Request:\n"
        f"User: {messages.user_label(user)}\n"
        f"Amount: {ctx.money(wd.amount)}\n"
        f"Source: {wd.source.replace('_', ' ')}\n"
        f"MPESA: {wd.payout_number}\n"
        f"ID: {wd.withdrawal_id}"
    )
    session.to_menu()


STATE_HANDLERS = {
    State.WITHDRAW: handle_withdraw_source,
    State.WITHDRAW_AMOUNT: handle_withdraw_amount,
    State.WITHDRAW_MPESA: handle_withdraw_mpesa,
    State.WITHDRAW_PIN: handle_withdraw_pin,
}
