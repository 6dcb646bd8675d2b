"""
Admin Command Processor

Parses `admin <verb> <args...>` lines from an admin's chat and applies them
directly to the ledger or the runtime settings. Every command produces one
reply for the admin, plus notifications for the users it affected.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional

from services.notification_service import OutboundMessage
from utils import messages
from utils.exception_handler import AuthorizationError, NotFoundError, ValidationError
from utils.helpers import format_timestamp
from utils.input_validation import InputValidator, to_international

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "⚙️ ADMIN COMMANDS:\n"
    "1. admin cmd – Show this list\n"
    "2. admin view users\n"
    "3. admin view investments\n"
    "4. admin view deposits\n"
    "5. admin view referrals\n"
    "6. admin view withdrawals\n"
    "7. admin approve deposit <DEP-ID>\n"
    "8. admin reject deposit <DEP-ID> <Reason>\n"
    "9. admin approve withdrawal <WD-ID>\n"
    "10. admin reject withdrawal <WD-ID> <Reason>\n"
    "11. admin ban user <phone> <Reason>\n"
    "12. admin unban <phone>\n"
    "13. admin resetpin <phone> <new_pin> [withdrawal|login]\n"
    "14. admin setearn <percentage>\n"
    "15. admin setreferral <percentage>\n"
    "16. admin setduration <minutes>\n"
    "17. admin setmininvestment <amount>\n"
    "18. admin setmaxinvestment <amount>\n"
    "19. admin setminwithdrawal <amount>\n"
    "20. admin setmaxwithdrawal <amount>\n"
    "21. admin setdeposit <instructions>\n"
    "22. admin setwithdrawal <instructions>\n"
    "23. admin addadmin <phone>\n"
    "24. admin removeadmin <phone>\n"
    "25. admin bulk <message>"
)

UNKNOWN_COMMAND = '❓ Unknown admin command. Type "admin cmd" to see all commands.'


@dataclass
class AdminResponse:
    reply: str
    notifications: List[OutboundMessage] = field(default_factory=list)


class CommandLine:
    """Whitespace-split command with access to the untouched free-text tail"""

    def __init__(self, raw: str):
        self.raw = raw.strip()
        self.tokens = self.raw.split()

    def arg(self, index: int) -> str:
        if index >= len(self.tokens):
            raise ValidationError("Missing argument")
        return self.tokens[index]

    def lower(self, index: int) -> str:
        return self.tokens[index].lower() if index < len(self.tokens) else ""

    def rest(self, index: int) -> str:
        """Everything from token `index` on, original spacing and line breaks kept"""
        parts = self.raw.split(None, index)
        return parts[index].strip() if len(parts) > index else ""


class AdminCommandProcessor:
    """Admin command surface over the ledger and SystemConfig"""

    def __init__(self, ledger, notifier, session_factory=None):
        self.ledger = ledger
        self.notifier = notifier
        self.session_factory = session_factory
        self._commands: Dict[str, Callable[[str, CommandLine], AdminResponse]] = {
            "cmd": self._help,
            "help": self._help,
            "view": self._view,
            "approve": self._approve,
            "reject": self._reject,
            "ban": self._ban,
            "unban": self._unban,
            "resetpin": self._reset_pin,
            "setearn": self._set_earn,
            "setreferral": self._set_referral,
            "setduration": self._set_duration,
            "setmininvestment": self._set_bound("min_investment", "Minimum investment"),
            "setmaxinvestment": self._set_bound("max_investment", "Maximum investment"),
            "setminwithdrawal": self._set_bound("min_withdrawal", "Minimum withdrawal"),
            "setmaxwithdrawal": self._set_bound("max_withdrawal", "Maximum withdrawal"),
            "setdeposit": self._set_deposit_instructions,
            "setwithdrawal": self._set_withdrawal_instructions,
            "addadmin": self._add_admin,
            "removeadmin": self._remove_admin,
            "bulk": self._bulk,
        }

    @property
    def config(self):
        return self.ledger.system_config

    def handle(self, admin_phone: Optional[str], command_line: str) -> AdminResponse:
        """Run one admin command; errors come back as the reply text"""
        if not self.config.is_admin(admin_phone):
            logger.warning(f"🚫 ADMIN: Rejected command from non-admin {admin_phone}")
            return AdminResponse("🚫 You are not authorized to run admin commands.")

        line = CommandLine(command_line)
        verb = line.lower(1)
        handler = self._commands.get(verb)
        if handler is None:
            return AdminResponse(UNKNOWN_COMMAND)

        logger.info(f"⚙️ ADMIN: {admin_phone} -> {' '.join(line.tokens[1:3])}")
        try:
            return handler(admin_phone, line)
        except (ValidationError, NotFoundError, AuthorizationError) as e:
            return AdminResponse(f"❌ {e.message}")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _help(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        return AdminResponse(HELP_TEXT)

    def _view(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        target = line.lower(2)
        renderers = {
            "users": self._view_users,
            "investments": self._view_investments,
            "deposits": self._view_deposits,
            "referrals": self._view_referrals,
            "withdrawals": self._view_withdrawals,
        }
        renderer = renderers.get(target)
        if renderer is None:
            return AdminResponse("❓ Usage: admin view users|investments|deposits|referrals|withdrawals")
        return AdminResponse(renderer())

    def _view_users(self) -> str:
        users = self.ledger.list_users()
        if not users:
            return "📄 No registered users."
        currency = self.config.currency_label
        lines = []
        for i, user in enumerate(users, 1):
            line = (
                f"{i}. {user.full_name} ({user.phone}, {to_international(user.phone)})\n"
                f"   Balance: {messages.money(user.account_balance, currency)} | "
                f"Referral: {messages.money(user.referral_earnings, currency)}\n"
                f"   Investments: {len(user.investments)} | Deposits: {len(user.deposits)} | "
                f"Withdrawals: {len(user.withdrawals)} | Referrals: {len(user.referrals)}\n"
                f"   Code: {user.referral_code} | Referred by: {user.referred_by or 'N/A'}"
            )
            if user.banned:
                line += f"\n   🚫 Banned: {user.banned_reason}"
            lines.append(line)
        return "👥 Users:\n" + "\n".join(lines)

    def _view_investments(self) -> str:
        investments = self.ledger.list_investments()
        if not investments:
            return "📄 No investments."
        currency = self.config.currency_label
        return "📊 Investments:\n" + "\n".join(
            f"{messages.investment_line(i, inv, currency)} | User: {inv.user_phone}"
            for i, inv in enumerate(investments, 1)
        )

    def _view_deposits(self) -> str:
        deposits = self.ledger.list_deposits()
        if not deposits:
            return "📄 No deposits."
        currency = self.config.currency_label
        return "💵 Deposits:\n" + "\n".join(
            f"{messages.deposit_line(i, dep, currency)} | {dep.method} | User: {dep.user_phone}"
            for i, dep in enumerate(deposits, 1)
        )

    def _view_withdrawals(self) -> str:
        withdrawals = self.ledger.list_withdrawals()
        if not withdrawals:
            return "📄 No withdrawals."
        currency = self.config.currency_label
        return "💸 Withdrawals:\n" + "\n".join(
            f"{messages.withdrawal_line(i, wd, currency)} | {wd.source} | User: {wd.user_phone}"
            for i, wd in enumerate(withdrawals, 1)
        )

    def _view_referrals(self) -> str:
        referrals = self.ledger.list_referrals()
        if not referrals:
            return "📄 No referrals."
        currency = self.config.currency_label
        return "👥 Referrals:\n" + "\n".join(
            f"{i}. {ref.referrer.full_name} ({ref.referrer_phone}) referred "
            f"{ref.referee.full_name} ({ref.referee_phone}) | "
            f"Bonus: {messages.money(ref.bonus_amount, currency)} | {format_timestamp(ref.created_at)}"
            for i, ref in enumerate(referrals, 1)
        )

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def _approve(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        kind = line.lower(2)
        record_id = line.arg(3)
        currency = self.config.currency_label

        if kind == "deposit":
            result = self.ledger.approve_deposit(record_id)
            dep = result.deposit
            if not result.changed:
                return AdminResponse(f"ℹ️ Deposit {dep.deposit_id} is already {dep.status.replace('_', ' ')}.")
            notice = self.notifier.user_message(
                result.user.phone,
                f"✅ Your deposit {dep.deposit_id} of {messages.money(dep.amount, currency)} has been approved.\n"
                f"Your account has been credited. New balance: "
                f"{messages.money(result.user.account_balance, currency)}",
            )
            return AdminResponse(
                f"✅ Deposit {dep.deposit_id} approved. {result.user.phone} credited "
                f"{messages.money(dep.amount, currency)}.",
                [notice] if notice else [],
            )

        if kind == "withdrawal":
            result = self.ledger.approve_withdrawal(record_id)
            wd = result.withdrawal
            if not result.changed:
                return AdminResponse(f"ℹ️ Withdrawal {wd.withdrawal_id} is already {wd.status}.")
            notice = self.notifier.user_message(
                result.user.phone,
                f"✅ Your withdrawal {wd.withdrawal_id} of {messages.money(wd.amount, currency)} "
                f"to {wd.payout_number} has been approved.",
            )
            return AdminResponse(
                f"✅ Withdrawal {wd.withdrawal_id} approved.",
                [notice] if notice else [],
            )

        return AdminResponse("❓ Usage: admin approve deposit|withdrawal <ID>")

    def _reject(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        kind = line.lower(2)
        record_id = line.arg(3)
        reason = line.rest(4)
        if not reason:
            raise ValidationError("A rejection reason is required")
        currency = self.config.currency_label

        if kind == "deposit":
            result = self.ledger.reject_deposit(record_id, reason)
            dep = result.deposit
            if not result.changed:
                return AdminResponse(f"ℹ️ Deposit {dep.deposit_id} is already {dep.status.replace('_', ' ')}.")
            notice = self.notifier.user_message(
                result.user.phone,
                f"❌ Your deposit {dep.deposit_id} of {messages.money(dep.amount, currency)} was rejected.\n"
                f"Reason: {reason}",
            )
            return AdminResponse(f"❌ Deposit {dep.deposit_id} rejected.", [notice] if notice else [])

        if kind == "withdrawal":
            result = self.ledger.reject_withdrawal(record_id, reason)
            wd = result.withdrawal
            if not result.changed:
                return AdminResponse(f"ℹ️ Withdrawal {wd.withdrawal_id} is already {wd.status}.")
            refund_note = (
                f"\n{messages.money(result.refunded, currency)} has been returned to your "
                f"{wd.source.replace('_', ' ')}."
                if result.refunded else ""
            )
            notice = self.notifier.user_message(
                result.user.phone,
                f"❌ Your withdrawal {wd.withdrawal_id} of {messages.money(wd.amount, currency)} was rejected.\n"
                f"Reason: {reason}{refund_note}",
            )
            reply = f"❌ Withdrawal {wd.withdrawal_id} rejected."
            if result.refunded:
                reply += f" Refunded {messages.money(result.refunded, currency)}."
            return AdminResponse(reply, [notice] if notice else [])

        return AdminResponse("❓ Usage: admin reject deposit|withdrawal <ID> <Reason>")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _ban(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        # "ban user <phone> <reason>"; "ban <phone> <reason>" is accepted too
        offset = 3 if line.lower(2) == "user" else 2
        phone = InputValidator.validate_phone(line.arg(offset))
        reason = line.rest(offset + 1)
        if not reason:
            raise ValidationError("A ban reason is required")

        user = self.ledger.ban_user(phone, reason)
        notice = self.notifier.user_message(user.phone, messages.banned(reason))
        return AdminResponse(f"🚫 {user.full_name} ({phone}) banned. Reason: {reason}", [notice] if notice else [])

    def _unban(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        phone = InputValidator.validate_phone(line.arg(2))
        user = self.ledger.unban_user(phone)
        notice = self.notifier.user_message(user.phone, "✅ Your account has been reinstated. Type \"00\" for the Main Menu.")
        return AdminResponse(f"✅ {user.full_name} ({phone}) unbanned.", [notice] if notice else [])

    def _reset_pin(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        phone = InputValidator.validate_phone(line.arg(2))
        new_pin = InputValidator.validate_pin(line.arg(3))
        kind = line.lower(4) or "withdrawal"
        if kind not in ("withdrawal", "login"):
            raise ValidationError("PIN type must be withdrawal or login")

        user = self.ledger.set_pin(phone, new_pin, kind)
        notice = self.notifier.user_message(
            user.phone, f"🔑 Your {kind} PIN has been reset by support. Use your new PIN from now on."
        )
        return AdminResponse(f"🔑 {kind.capitalize()} PIN for {phone} has been reset.", [notice] if notice else [])

    def _add_admin(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        self._require_super_admin(admin_phone)
        phone = InputValidator.validate_phone(line.arg(2))
        if not self.config.add_admin(phone):
            return AdminResponse(f"ℹ️ {phone} is already an admin.")
        self.config.save(self.session_factory, "admins")
        notice = self.notifier.user_message(phone, '🛡️ You have been made an admin. Type "admin cmd" for commands.')
        return AdminResponse(f"✅ {phone} added as admin.", [notice] if notice else [])

    def _remove_admin(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        self._require_super_admin(admin_phone)
        phone = InputValidator.validate_phone(line.arg(2))
        if not self.config.remove_admin(phone):
            return AdminResponse(f"ℹ️ {phone} is not an admin.")
        self.config.save(self.session_factory, "admins")
        return AdminResponse(f"✅ {phone} removed from admins.")

    def _require_super_admin(self, admin_phone: str):
        if not self.config.is_super_admin(admin_phone):
            raise AuthorizationError("Only the super admin can manage admins")

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @staticmethod
    def _decimal(raw: str) -> Decimal:
        try:
            value = Decimal(raw.replace(",", ""))
        except InvalidOperation:
            raise ValidationError(f"{raw} is not a number")
        if not value.is_finite():
            raise ValidationError(f"{raw} is not a number")
        return value

    def _set_earn(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        value = self._decimal(line.arg(2))
        self.config.set_percentage("earning_percentage", value)
        self.config.save(self.session_factory, "earning_percentage")
        return AdminResponse(f"✅ Earning percentage set to {value}%.")

    def _set_referral(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        value = self._decimal(line.arg(2))
        self.config.set_percentage("referral_percentage", value)
        self.config.save(self.session_factory, "referral_percentage")
        return AdminResponse(f"✅ Referral percentage set to {value}%.")

    def _set_duration(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        raw = line.arg(2)
        if not raw.isdigit():
            raise ValidationError("Duration must be a whole number of minutes")
        self.config.set_duration(int(raw))
        self.config.save(self.session_factory, "investment_duration_minutes")
        return AdminResponse(f"✅ Investment duration set to {int(raw)} minutes.")

    def _set_bound(self, name: str, label: str):
        def handler(admin_phone: str, line: CommandLine) -> AdminResponse:
            value = self._decimal(line.arg(2))
            self.config.set_bound(name, value)
            self.config.save(self.session_factory, name)
            return AdminResponse(f"✅ {label} set to {messages.money(value, self.config.currency_label)}.")
        return handler

    def _set_deposit_instructions(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        text = line.rest(2)
        if not text:
            raise ValidationError("Instructions cannot be empty")
        self.config.deposit_instructions = text
        self.config.save(self.session_factory, "deposit_instructions")
        return AdminResponse(f"✅ Deposit instructions updated:\n{text}")

    def _set_withdrawal_instructions(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        text = line.rest(2)
        if not text:
            raise ValidationError("Instructions cannot be empty")
        self.config.withdrawal_instructions = text
        self.config.save(self.session_factory, "withdrawal_instructions")
        return AdminResponse(f"✅ Withdrawal instructions updated:\n{text}")

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    def _bulk(self, admin_phone: str, line: CommandLine) -> AdminResponse:
        text = line.rest(2)
        if not text:
            raise ValidationError("Broadcast message cannot be empty")
        chat_ids = self.ledger.all_chat_ids()
        notifications = [OutboundMessage(chat_id=chat_id, text=f"📢 {text}") for chat_id in chat_ids]
        logger.info(f"📣 ADMIN: Broadcast queued for {len(notifications)} chat(s)")
        return AdminResponse(f"📣 Broadcast sent to {len(notifications)} user(s).", notifications)
