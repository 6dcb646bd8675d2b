"""User-facing message templates"""

from config import Config
from utils.helpers import format_timestamp
from utils.input_validation import format_money

BACK_TO_MENU = 'Type "00" for the Main Menu.'


def money(amount, currency: str = None) -> str:
    return f"{currency or Config.CURRENCY_LABEL} {format_money(amount)}"


def main_menu_text(brand: str = None) -> str:
    return (
        f"🌟 {brand or Config.BRAND} Main Menu 🌟\n"
        "1. Invest 💰\n"
        "2. Check Balance 🔍\n"
        "3. Withdraw Earnings 💸\n"
        "4. Deposit Funds 💵\n"
        "5. Change PIN 🔑\n"
        "6. My Referral Link 🔗\n"
        "7. View Withdrawal Status 📋\n"
        "8. View My Referrals 👥\n"
        'Type the option number (or "00" to show this menu).'
    )


BALANCE_MENU = (
    "🔍 Balance Options:\n"
    "1. View Account Balance\n"
    "2. View Referral Earnings\n"
    "3. View Investment History\n"
    "4. View All Deposit Statuses\n"
    "Reply with 1, 2, 3, or 4."
)

WITHDRAW_MENU = (
    "💸 Withdrawal Options:\n"
    "1️⃣ Withdraw Referral Earnings\n"
    "2️⃣ Withdraw Investment Earnings (Account Balance)"
)

DEPOSIT_MENU = (
    "💵 How would you like to deposit?\n"
    "Reply with:\n"
    "1️⃣ Automatic deposit (STK push)\n"
    "2️⃣ Manual deposit instructions"
)

NOT_REGISTERED = 'Type "register" to begin or "login" if you have an account.'
FIRST_CONTACT = f'❓ You are not registered or logged in. {NOT_REGISTERED}'
GENERIC_FAILURE = "⚠️ Something went wrong while saving your request. Please try again."
CANCELLED = f"🔙 Operation cancelled. {BACK_TO_MENU}"
UNKNOWN_OPTION = "❓ Unrecognized option. Enter a valid option number."
LOGIN_REQUIRED = f'🔒 Please log in first. {NOT_REGISTERED}'
INCORRECT_PIN_RETRY = '❌ Incorrect PIN. Try again or type "0" to cancel.'
NEW_DEVICE_ALERT = '🔔 Alert: Your account was accessed from a new device. If not you, type "block".'


def banned(reason: str, brand: str = None) -> str:
    return (
        f"💔 You are banned from {brand or Config.BRAND}.\n"
        f"Reason: {reason or 'Not specified'}\n"
        "Contact support if you believe this is an error."
    )


def user_label(user) -> str:
    return f"{user.first_name} {user.second_name} (Phone: {user.phone})"


def investment_line(index: int, investment, currency: str = None) -> str:
    line = (
        f"{index}. Amount: {money(investment.amount, currency)}, "
        f"Expected Return: {money(investment.expected_return, currency)}, "
        f"Date: {format_timestamp(investment.created_at)}, Status: {investment.status}"
    )
    if investment.matured_at:
        line += f", Matured: {format_timestamp(investment.matured_at)}"
    return line


def deposit_line(index: int, deposit, currency: str = None) -> str:
    line = (
        f"{index}. ID: {deposit.deposit_id}, Amount: {money(deposit.amount, currency)}, "
        f"Date: {format_timestamp(deposit.created_at)}, Status: {deposit.status.replace('_', ' ')}"
    )
    if deposit.rejection_reason:
        line += f" (Reason: {deposit.rejection_reason})"
    return line


def withdrawal_line(index: int, withdrawal, currency: str = None) -> str:
    line = (
        f"{index}. ID: {withdrawal.withdrawal_id}, Amount: {money(withdrawal.amount, currency)}, "
        f"MPESA: {withdrawal.payout_number}, Date: {format_timestamp(withdrawal.created_at)}, "
        f"Status: {withdrawal.status}"
    )
    if withdrawal.rejection_reason:
        line += f" (Reason: {withdrawal.rejection_reason})"
    return line
