"""Main menu dispatch and the one-shot menu screens (referral link, withdrawal status, referrals)"""

import logging
from urllib.parse import quote

from config import Config
from handlers.balance import begin_balance_menu
from handlers.context import FlowContext
from handlers.deposit import begin_deposit
from handlers.investment import begin_investment
from handlers.pin_change import begin_pin_change
from handlers.withdrawal import begin_withdrawal
from services.session_store import State
from utils import messages
from utils.helpers import referral_start_payload

logger = logging.getLogger(__name__)


def referral_link(referral_code: str, bot_username: str = None) -> str:
    username = bot_username or Config.BOT_USERNAME
    return f"https://t.me/{username}?start={quote(referral_start_payload(referral_code))}"


async def show_main_menu(ctx: FlowContext):
    ctx.session.to_menu()
    ctx.reply(f"🏠 Main Menu:\n{messages.main_menu_text()}")


async def show_referral_link(ctx: FlowContext):
    ctx.session.go(State.REFERRAL_LINK)
    link = referral_link(ctx.user.referral_code)
    ctx.reply(
        f"🔗 Your Referral Link:\n{link}\n"
        f"Your referral code: {ctx.user.referral_code}\n"
        f"Share with friends!\n{messages.BACK_TO_MENU}"
    )
    ctx.session.to_menu()


async def show_withdrawal_status(ctx: FlowContext):
    ctx.session.go(State.WITHDRAWAL_STATUS)
    withdrawals = ctx.ledger.withdrawals_for(ctx.user.phone)
    if not withdrawals:
        ctx.reply(f"📄 No withdrawal requests yet.\n{messages.BACK_TO_MENU}")
    else:
        lines = "\n".join(
            messages.withdrawal_line(i, wd, ctx.config.currency_label) for i, wd in enumerate(withdrawals, 1)
        )
        ctx.reply(f"📋 Withdrawal Requests:\n{lines}\n{messages.BACK_TO_MENU}")
    ctx.session.to_menu()


async def show_referrals(ctx: FlowContext):
    ctx.session.go(State.VIEW_REFERRALS)
    referrals = ctx.ledger.referrals_for(ctx.user.phone)
    if not referrals:
        ctx.reply(f"📄 You haven't referred anyone.\n{messages.BACK_TO_MENU}")
    else:
        lines = "\n".join(
            f"{i}. {ref.referee.full_name if ref.referee else ref.referee_phone}"
            for i, ref in enumerate(referrals, 1)
        )
        ctx.reply(f"📋 Your Referrals:\n{lines}\n{messages.BACK_TO_MENU}")
    ctx.session.to_menu()


MENU_OPTIONS = {
    "1": begin_investment,
    "2": begin_balance_menu,
    "3": begin_withdrawal,
    "4": begin_deposit,
    "5": begin_pin_change,
    "6": show_referral_link,
    "7": show_withdrawal_status,
    "8": show_referrals,
}


async def handle_menu_selection(ctx: FlowContext):
    action = MENU_OPTIONS.get(ctx.text)
    if action is None:
        ctx.reply(messages.UNKNOWN_OPTION)
        return
    await action(ctx)


STATE_HANDLERS = {
    State.MENU: handle_menu_selection,
    # One-shot screens return to the menu immediately
    State.REFERRAL_LINK: handle_menu_selection,
    State.WITHDRAWAL_STATUS: handle_menu_selection,
    State.VIEW_REFERRALS: handle_menu_selection,
}
