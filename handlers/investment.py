"""Investment flow: amount -> withdrawal-PIN confirmation -> ledger debit"""

import logging

from handlers.context import FlowContext
from services.session_store import State
from utils import messages
from utils.exception_handler import InsufficientFundsError, ValidationError
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)


async def begin_investment(ctx: FlowContext):
    cfg = ctx.config
    ctx.session.go(State.INVEST)
    ctx.reply(
        f"💰 Enter the investment amount (min: {ctx.money(cfg.min_investment)}, "
        f"max: {ctx.money(cfg.max_investment)}):"
    )


async def handle_invest_amount(ctx: FlowContext):
    cfg = ctx.config
    try:
        amount = InputValidator.validate_amount(ctx.text, cfg.min_investment, cfg.max_investment)
    except ValidationError:
        ctx.reply(
            f"❌ Enter an amount between {ctx.money(cfg.min_investment)} and {ctx.money(cfg.max_investment)}."
        )
        return

    if ctx.user.account_balance < amount:
        ctx.reply(
            f"⚠️ Insufficient funds ({ctx.money(ctx.user.account_balance)}). Deposit funds. {messages.BACK_TO_MENU}"
        )
        ctx.session.to_menu()
        return

    ctx.session.invest_amount = amount
    ctx.session.go(State.CONFIRM_INVESTMENT)
    ctx.reply(f"🔒 Confirm investment of {ctx.money(amount)} by entering your 4-digit withdrawal PIN:")


async def handle_confirm_investment(ctx: FlowContext):
    session = ctx.session
    cfg = ctx.config

    # Investments are confirmed with the withdrawal PIN, never the login PIN
    if not ctx.ledger.verify_withdrawal_pin(ctx.user.phone, ctx.text):
        ctx.reply(messages.INCORRECT_PIN_RETRY)
        return

    try:
        result = ctx.ledger.invest(ctx.user.phone, session.invest_amount)
    except (InsufficientFundsError, ValidationError) as e:
        ctx.reply(f"⚠️ {e.message}. {messages.BACK_TO_MENU}")
        session.to_menu()
        return

    investment = result.investment
    user = result.user
    ctx.reply(
        "✅ Investment confirmed!\n"
        f"Invested: {ctx.money(investment.amount)}\n"
        f"Expected Earnings (@{cfg.earning_percentage}%): {ctx.money(investment.expected_return)}\n"
        f"Matures in {cfg.investment_duration_minutes} minutes.\n"
        f"{messages.BACK_TO_MENU}"
    )

    if result.referrer is not None:
        ctx.notify_user(
            result.referrer.phone,
            f"🎉 Hi {result.referrer.first_name}, you earned a bonus of {ctx.money(result.referral_bonus)} "
            f"because {user.first_name} invested!",
        )

    ctx.notify_admins(
        "🔔 Investment Alert:\n"
        f"User: {messages.user_label(user)}\n"
        f"Invested: {ctx.money(investment.amount)}"
    )
    session.to_menu()


STATE_HANDLERS = {
    State.INVEST: handle_invest_amount,
    State.CONFIRM_INVESTMENT: handle_confirm_investment,
}
