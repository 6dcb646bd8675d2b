"""Balance inquiry sub-menu"""

import logging

from handlers.context import FlowContext
from services.session_store import State
from utils import messages

logger = logging.getLogger(__name__)


async def begin_balance_menu(ctx: FlowContext):
    ctx.session.go(State.CHECK_BALANCE_MENU)
    ctx.reply(messages.BALANCE_MENU)


async def handle_balance_menu(ctx: FlowContext):
    user = ctx.user
    currency = ctx.config.currency_label
    choice = ctx.text

    if choice == "1":
        ctx.reply(f"💳 Account Balance: {ctx.money(user.account_balance)}\n{messages.BACK_TO_MENU}")
    elif choice == "2":
        ctx.reply(f"🎉 Referral Earnings: {ctx.money(user.referral_earnings)}\n{messages.BACK_TO_MENU}")
    elif choice == "3":
        investments = ctx.ledger.investments_for(user.phone)
        if not investments:
            ctx.reply(f"📄 No investments yet.\n{messages.BACK_TO_MENU}")
        else:
            lines = "\n".join(messages.investment_line(i, inv, currency) for i, inv in enumerate(investments, 1))
            ctx.reply(f"📊 Investment History:\n{lines}\n{messages.BACK_TO_MENU}")
    elif choice == "4":
        deposits = ctx.ledger.deposits_for(user.phone)
        if not deposits:
            ctx.reply(f"📄 No deposits yet.\n{messages.BACK_TO_MENU}")
        else:
            lines = "\n".join(messages.deposit_line(i, dep, currency) for i, dep in enumerate(deposits, 1))
            ctx.reply(f"📋 Deposit Statuses:\n{lines}\n{messages.BACK_TO_MENU}")
    else:
        ctx.reply("❓ Reply with 1, 2, 3, or 4.")
        return

    ctx.session.to_menu()


STATE_HANDLERS = {
    State.CHECK_BALANCE_MENU: handle_balance_menu,
}
