"""
Ledger Service
Atomic read-modify-write operations on user balances and their records.

Every mutation runs inside one atomic_transaction() while holding the
per-phone user_lock, and never awaits in between. Lifecycle transitions
(deposit approval, withdrawal resolution, maturation) are conditional
UPDATEs that act only when exactly one row moved out of its open state,
so repeating them is a no-op.

The ledger never sends messages: callers turn the returned results into
notifications.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session, sessionmaker, selectinload

from models import (
    User, Investment, Deposit, Withdrawal, Referral,
    InvestmentStatus, DepositStatus, DepositMethod, WithdrawalStatus, WithdrawalSource,
)
from services.system_config import SystemConfig, quantize_money
from utils.atomic_transactions import atomic_transaction, user_lock
from utils.exception_handler import (
    AuthorizationError, InsufficientFundsError, InvariantViolation, NotFoundError, ValidationError,
)
from utils.helpers import (
    generate_deposit_id, generate_referral_code, generate_withdrawal_id, hash_pin, utc_now, verify_pin,
)
from utils.input_validation import InputValidator, format_money

logger = logging.getLogger(__name__)

PIN_KIND_WITHDRAWAL = "withdrawal"
PIN_KIND_LOGIN = "login"


class DuplicateAccountError(ValidationError):
    """Phone number already registered"""


@dataclass
class LoginResult:
    user: User
    previous_chat_id: Optional[str]


@dataclass
class InvestmentResult:
    user: User
    investment: Investment
    referrer: Optional[User] = None
    referral_bonus: Decimal = Decimal("0")


@dataclass
class WithdrawalResult:
    user: User
    withdrawal: Withdrawal


@dataclass
class DepositResolution:
    user: User
    deposit: Deposit
    changed: bool


@dataclass
class WithdrawalResolution:
    user: User
    withdrawal: Withdrawal
    changed: bool
    refunded: Decimal = Decimal("0")


@dataclass
class MaturationResult:
    user: User
    investment: Investment
    credited: Decimal


class LedgerService:
    """User store and money movements"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker],
        system_config: SystemConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.system_config = system_config
        self.clock = clock

    def _transaction(self):
        return atomic_transaction(self.session_factory)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_user(self, phone: str, with_history: bool = False) -> Optional[User]:
        with self._transaction() as session:
            stmt = select(User).where(User.phone == phone)
            if with_history:
                stmt = stmt.options(*self._history_options())
            return session.scalar(stmt)

    def require_user(self, phone: str, with_history: bool = False) -> User:
        user = self.get_user(phone, with_history=with_history)
        if user is None:
            raise NotFoundError(f"No account found for {phone}")
        return user

    def phone_exists(self, phone: str) -> bool:
        with self._transaction() as session:
            return session.get(User, phone) is not None

    def find_by_chat(self, chat_id: str) -> Optional[User]:
        with self._transaction() as session:
            return session.scalar(select(User).where(User.chat_id == chat_id))

    def find_by_referral_code(self, code: str) -> Optional[User]:
        with self._transaction() as session:
            return session.scalar(select(User).where(User.referral_code == code.strip().upper()))

    def resolve_referral_code(self, code: str) -> Optional[str]:
        """Normalized code when it belongs to a user or is the reserved admin code"""
        normalized = (code or "").strip().upper()
        if not normalized:
            return None
        if self.system_config.admin_referral_code and normalized == self.system_config.admin_referral_code.upper():
            return normalized
        if self.find_by_referral_code(normalized) is not None:
            return normalized
        return None

    def load_all_users(self) -> Dict[str, User]:
        with self._transaction() as session:
            users = session.scalars(
                select(User).options(*self._history_options()).order_by(User.created_at)
            ).all()
            return {user.phone: user for user in users}

    def list_users(self) -> List[User]:
        return list(self.load_all_users().values())

    def chat_ids_for(self, phones) -> Dict[str, str]:
        phones = [p for p in phones if p]
        if not phones:
            return {}
        with self._transaction() as session:
            rows = session.execute(
                select(User.phone, User.chat_id).where(User.phone.in_(phones), User.chat_id.is_not(None))
            ).all()
            return {phone: chat_id for phone, chat_id in rows}

    def all_chat_ids(self) -> List[str]:
        with self._transaction() as session:
            return list(session.scalars(select(User.chat_id).where(User.chat_id.is_not(None))).all())

    def investments_for(self, phone: str) -> List[Investment]:
        with self._transaction() as session:
            return list(session.scalars(
                select(Investment).where(Investment.user_phone == phone).order_by(Investment.id)
            ).all())

    def deposits_for(self, phone: str) -> List[Deposit]:
        with self._transaction() as session:
            return list(session.scalars(
                select(Deposit).where(Deposit.user_phone == phone).order_by(Deposit.id)
            ).all())

    def withdrawals_for(self, phone: str) -> List[Withdrawal]:
        with self._transaction() as session:
            return list(session.scalars(
                select(Withdrawal).where(Withdrawal.user_phone == phone).order_by(Withdrawal.id)
            ).all())

    def referrals_for(self, phone: str) -> List[Referral]:
        with self._transaction() as session:
            return list(session.scalars(
                select(Referral).options(selectinload(Referral.referee))
                .where(Referral.referrer_phone == phone).order_by(Referral.id)
            ).all())

    def available_balance(self, phone: str, source: WithdrawalSource) -> Decimal:
        user = self.require_user(phone)
        if source == WithdrawalSource.REFERRAL_EARNINGS:
            return user.referral_earnings
        return user.account_balance

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_user(
        self,
        *,
        first_name: str,
        second_name: str,
        phone: str,
        withdrawal_pin: str,
        security_pin: str,
        referred_by: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> User:
        phone = InputValidator.validate_phone(phone)
        withdrawal_pin = InputValidator.validate_pin(withdrawal_pin)
        security_pin = InputValidator.validate_pin(security_pin)

        with user_lock(phone), self._transaction() as session:
            if session.get(User, phone) is not None:
                raise DuplicateAccountError("This number is already registered")

            if chat_id:
                self._unbind_chat(session, chat_id)

            now = self.clock()
            user = User(
                phone=phone,
                chat_id=chat_id,
                first_name=InputValidator.validate_name(first_name),
                second_name=InputValidator.validate_name(second_name),
                withdrawal_pin_hash=hash_pin(withdrawal_pin),
                security_pin_hash=hash_pin(security_pin),
                referral_code=self._unique_referral_code(session),
                referred_by=(referred_by or "").strip().upper() or None,
                account_balance=Decimal("0"),
                referral_earnings=Decimal("0"),
                banned=False,
                created_at=now,
                updated_at=now,
            )
            session.add(user)

        logger.info(f"👤 LEDGER: Registered {phone} with referral code {user.referral_code}")
        return user

    def authenticate(self, phone: str, security_pin: str, chat_id: str) -> LoginResult:
        """Check the security PIN and move the account to this chat (last login wins)"""
        with user_lock(phone), self._transaction() as session:
            user = session.get(User, phone)
            if user is None:
                raise NotFoundError("No account found")
            if not verify_pin(security_pin, user.security_pin_hash):
                raise AuthorizationError("Incorrect PIN")

            previous_chat_id = user.chat_id if user.chat_id != chat_id else None
            self._unbind_chat(session, chat_id, keep_phone=phone)
            user.chat_id = chat_id

        logger.info(f"🔑 LEDGER: {phone} logged in{' from a new device' if previous_chat_id else ''}")
        return LoginResult(user=user, previous_chat_id=previous_chat_id)

    def verify_withdrawal_pin(self, phone: str, pin: str) -> bool:
        user = self.require_user(phone)
        return verify_pin(pin, user.withdrawal_pin_hash)

    def set_pin(self, phone: str, new_pin: str, kind: str = PIN_KIND_WITHDRAWAL) -> User:
        new_pin = InputValidator.validate_pin(new_pin)
        if kind not in (PIN_KIND_WITHDRAWAL, PIN_KIND_LOGIN):
            raise ValidationError("PIN type must be withdrawal or login")

        with user_lock(phone), self._transaction() as session:
            user = session.get(User, phone)
            if user is None:
                raise NotFoundError(f"No account found for {phone}")
            if kind == PIN_KIND_LOGIN:
                user.security_pin_hash = hash_pin(new_pin)
            else:
                user.withdrawal_pin_hash = hash_pin(new_pin)

        logger.info(f"🔑 LEDGER: {kind} PIN updated for {phone}")
        return user

    def ban_user(self, phone: str, reason: str) -> User:
        if self.system_config.is_super_admin(phone):
            raise AuthorizationError("The super admin cannot be banned")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required")

        with user_lock(phone), self._transaction() as session:
            user = session.get(User, phone)
            if user is None:
                raise NotFoundError(f"No account found for {phone}")
            user.banned = True
            user.banned_reason = reason

        logger.warning(f"🚫 LEDGER: Banned {phone}: {reason}")
        return user

    def unban_user(self, phone: str) -> User:
        with user_lock(phone), self._transaction() as session:
            user = session.get(User, phone)
            if user is None:
                raise NotFoundError(f"No account found for {phone}")
            user.banned = False
            user.banned_reason = None

        logger.info(f"✅ LEDGER: Unbanned {phone}")
        return user

    # ------------------------------------------------------------------
    # Investments
    # ------------------------------------------------------------------

    def invest(self, phone: str, amount: Decimal) -> InvestmentResult:
        cfg = self.system_config
        amount = quantize_money(Decimal(amount))
        if amount < cfg.min_investment or amount > cfg.max_investment:
            raise ValidationError(
                f"Enter an amount between {cfg.currency_label} {format_money(cfg.min_investment)} "
                f"and {cfg.currency_label} {format_money(cfg.max_investment)}"
            )

        referrer_phone = self._referrer_phone(phone)

        with user_lock(phone, referrer_phone), self._transaction() as session:
            user = self._load_for_update(session, phone)
            if user.account_balance < amount:
                raise InsufficientFundsError(
                    f"Insufficient funds ({cfg.currency_label} {format_money(user.account_balance)})"
                )

            prior_investments = session.scalar(
                select(func.count(Investment.id)).where(Investment.user_phone == phone)
            )

            now = self.clock()
            user.account_balance = user.account_balance - amount
            self._assert_non_negative(user)
            investment = Investment(
                user_phone=phone,
                amount=amount,
                expected_return=cfg.expected_return(amount),
                status=InvestmentStatus.ACTIVE.value,
                created_at=now,
            )
            session.add(investment)

            referrer = None
            bonus = Decimal("0")
            # Referral bonus pays out on the referee's first investment only
            if prior_investments == 0 and referrer_phone and referrer_phone != phone:
                referrer = self._load_for_update(session, referrer_phone)
                bonus = cfg.referral_bonus(amount)
                referrer.referral_earnings = referrer.referral_earnings + bonus
                session.add(Referral(
                    referrer_phone=referrer_phone,
                    referee_phone=phone,
                    bonus_amount=bonus,
                    created_at=now,
                ))
            session.flush()

        logger.info(
            f"💰 LEDGER: {phone} invested {amount} (expected return {investment.expected_return})"
            + (f", referral bonus {bonus} to {referrer_phone}" if referrer else "")
        )
        return InvestmentResult(user=user, investment=investment, referrer=referrer, referral_bonus=bonus)

    def due_investments(self, now: Optional[datetime] = None) -> List[Investment]:
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.system_config.investment_duration_minutes)
        with self._transaction() as session:
            return list(session.scalars(
                select(Investment).where(
                    Investment.status == InvestmentStatus.ACTIVE.value,
                    Investment.created_at <= cutoff,
                ).order_by(Investment.id)
            ).all())

    def mature_investment(self, investment_id: int, now: Optional[datetime] = None) -> Optional[MaturationResult]:
        """Credit principal + expected return once; None when already completed"""
        now = now or self.clock()
        with self._transaction() as session:
            investment = session.get(Investment, investment_id)
            if investment is None:
                raise NotFoundError(f"Investment {investment_id} not found")
            phone = investment.user_phone

        with user_lock(phone), self._transaction() as session:
            moved = session.execute(
                update(Investment)
                .where(Investment.id == investment_id, Investment.status == InvestmentStatus.ACTIVE.value)
                .values(status=InvestmentStatus.COMPLETED.value, matured_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if moved != 1:
                logger.debug(f"MATURATION: Investment {investment_id} already completed")
                return None

            investment = session.get(Investment, investment_id, populate_existing=True)
            user = self._load_for_update(session, phone)
            credited = investment.amount + investment.expected_return
            user.account_balance = user.account_balance + credited

        logger.info(f"🎉 MATURATION: Investment {investment_id} of {phone} matured, credited {credited}")
        return MaturationResult(user=user, investment=investment, credited=credited)

    def mature_due_investments(self, now: Optional[datetime] = None) -> List[MaturationResult]:
        now = now or self.clock()
        results = []
        for investment in self.due_investments(now):
            result = self.mature_investment(investment.id, now=now)
            if result is not None:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def check_withdrawal_amount(self, phone: str, source: WithdrawalSource, amount: Decimal) -> Decimal:
        """Bounds and bucket sufficiency, checked before the payout number is asked"""
        cfg = self.system_config
        amount = quantize_money(Decimal(amount))
        if amount < cfg.min_withdrawal or amount > cfg.max_withdrawal:
            raise ValidationError(
                f"Enter an amount between {cfg.currency_label} {format_money(cfg.min_withdrawal)} "
                f"and {cfg.currency_label} {format_money(cfg.max_withdrawal)}"
            )
        available = self.available_balance(phone, source)
        if available < amount:
            label = "referral earnings" if source == WithdrawalSource.REFERRAL_EARNINGS else "account balance"
            raise InsufficientFundsError(
                f"Insufficient {label} ({cfg.currency_label} {format_money(available)})"
            )
        return amount

    def request_withdrawal(
        self, phone: str, source: WithdrawalSource, amount: Decimal, payout_number: str
    ) -> WithdrawalResult:
        amount = self.check_withdrawal_amount(phone, source, amount)
        payout_number = InputValidator.validate_phone(payout_number)

        with user_lock(phone), self._transaction() as session:
            user = self._load_for_update(session, phone)
            # Re-checked under the lock: the balance may have moved since the amount step
            if source == WithdrawalSource.REFERRAL_EARNINGS:
                if user.referral_earnings < amount:
                    raise InsufficientFundsError("Insufficient referral earnings")
                user.referral_earnings = user.referral_earnings - amount
            else:
                if user.account_balance < amount:
                    raise InsufficientFundsError("Insufficient account balance")
                user.account_balance = user.account_balance - amount
            self._assert_non_negative(user)

            withdrawal = Withdrawal(
                withdrawal_id=self._unique_id(session, Withdrawal.withdrawal_id, generate_withdrawal_id),
                user_phone=phone,
                amount=amount,
                source=source.value,
                payout_number=payout_number,
                status=WithdrawalStatus.PENDING.value,
                created_at=self.clock(),
            )
            session.add(withdrawal)

        logger.info(f"💸 LEDGER: Withdrawal {withdrawal.withdrawal_id} of {amount} from {source.value} for {phone}")
        return WithdrawalResult(user=user, withdrawal=withdrawal)

    def approve_withdrawal(self, withdrawal_id: str) -> WithdrawalResolution:
        return self._resolve_withdrawal(withdrawal_id, WithdrawalStatus.APPROVED)

    def reject_withdrawal(self, withdrawal_id: str, reason: str) -> WithdrawalResolution:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")
        return self._resolve_withdrawal(withdrawal_id, WithdrawalStatus.REJECTED, reason)

    def _resolve_withdrawal(
        self, withdrawal_id: str, target: WithdrawalStatus, reason: Optional[str] = None
    ) -> WithdrawalResolution:
        withdrawal_id = withdrawal_id.strip().upper()
        phone = self._owner_of(Withdrawal, Withdrawal.withdrawal_id, withdrawal_id, "Withdrawal")

        with user_lock(phone), self._transaction() as session:
            moved = session.execute(
                update(Withdrawal)
                .where(
                    Withdrawal.withdrawal_id == withdrawal_id,
                    Withdrawal.status == WithdrawalStatus.PENDING.value,
                )
                .values(status=target.value, rejection_reason=reason, resolved_at=self.clock())
                .execution_options(synchronize_session=False)
            ).rowcount

            withdrawal = session.scalar(
                select(Withdrawal).where(Withdrawal.withdrawal_id == withdrawal_id)
                .execution_options(populate_existing=True)
            )
            user = self._load_for_update(session, phone)
            refunded = Decimal("0")

            if moved == 1 and target == WithdrawalStatus.REJECTED and self.system_config.refund_rejected_withdrawals:
                if withdrawal.source == WithdrawalSource.REFERRAL_EARNINGS.value:
                    user.referral_earnings = user.referral_earnings + withdrawal.amount
                else:
                    user.account_balance = user.account_balance + withdrawal.amount
                withdrawal.refunded = True
                refunded = withdrawal.amount

        if moved == 1:
            logger.info(
                f"📋 LEDGER: Withdrawal {withdrawal_id} {target.value}"
                + (f" ({reason})" if reason else "")
                + (f", refunded {refunded}" if refunded else "")
            )
        else:
            logger.info(f"📋 LEDGER: Withdrawal {withdrawal_id} already {withdrawal.status}, nothing to do")
        return WithdrawalResolution(user=user, withdrawal=withdrawal, changed=moved == 1, refunded=refunded)

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    def create_manual_deposit(self, phone: str, amount: Decimal) -> Deposit:
        amount = Decimal(amount)
        if amount <= 0 or amount > self.system_config.max_deposit:
            raise ValidationError("Please enter a valid deposit amount")
        amount = quantize_money(amount)

        with user_lock(phone), self._transaction() as session:
            self._load_for_update(session, phone)
            deposit = Deposit(
                deposit_id=self._unique_id(session, Deposit.deposit_id, generate_deposit_id),
                user_phone=phone,
                amount=amount,
                method=DepositMethod.MANUAL.value,
                status=DepositStatus.UNDER_REVIEW.value,
                created_at=self.clock(),
            )
            session.add(deposit)

        logger.info(f"💵 LEDGER: Manual deposit {deposit.deposit_id} of {amount} under review for {phone}")
        return deposit

    def record_automatic_deposit(
        self,
        phone: str,
        amount: Decimal,
        push_reference: str,
        provider_reference: Optional[str] = None,
        payer_phone: Optional[str] = None,
    ) -> DepositResolution:
        """Credit a provider-confirmed deposit; a reference already recorded is a no-op"""
        amount = quantize_money(Decimal(amount))
        if amount <= 0:
            raise ValidationError("Please enter a valid deposit amount")

        with user_lock(phone), self._transaction() as session:
            user = self._load_for_update(session, phone)
            existing = session.scalar(select(Deposit).where(Deposit.push_reference == push_reference))
            if existing is not None:
                logger.info(f"DEPOSIT_POLL: Reference {push_reference} already recorded as {existing.deposit_id}")
                return DepositResolution(user=user, deposit=existing, changed=False)

            now = self.clock()
            deposit = Deposit(
                deposit_id=self._unique_id(session, Deposit.deposit_id, generate_deposit_id),
                user_phone=phone,
                amount=amount,
                method=DepositMethod.AUTOMATIC.value,
                status=DepositStatus.APPROVED.value,
                push_reference=push_reference,
                provider_reference=provider_reference or "N/A",
                payer_phone=payer_phone,
                created_at=now,
                resolved_at=now,
            )
            session.add(deposit)
            user.account_balance = user.account_balance + amount

        logger.info(f"✅ LEDGER: Automatic deposit {deposit.deposit_id} of {amount} credited to {phone}")
        return DepositResolution(user=user, deposit=deposit, changed=True)

    def approve_deposit(self, deposit_id: str) -> DepositResolution:
        deposit_id = deposit_id.strip().upper()
        phone = self._owner_of(Deposit, Deposit.deposit_id, deposit_id, "Deposit")

        with user_lock(phone), self._transaction() as session:
            moved = session.execute(
                update(Deposit)
                .where(Deposit.deposit_id == deposit_id, Deposit.status == DepositStatus.UNDER_REVIEW.value)
                .values(status=DepositStatus.APPROVED.value, resolved_at=self.clock())
                .execution_options(synchronize_session=False)
            ).rowcount

            deposit = session.scalar(
                select(Deposit).where(Deposit.deposit_id == deposit_id)
                .execution_options(populate_existing=True)
            )
            user = self._load_for_update(session, phone)
            # Balance is credited only on the transition into approved
            if moved == 1:
                user.account_balance = user.account_balance + deposit.amount

        if moved == 1:
            logger.info(f"✅ LEDGER: Deposit {deposit_id} approved, credited {deposit.amount} to {phone}")
        else:
            logger.info(f"📋 LEDGER: Deposit {deposit_id} already {deposit.status}, nothing to do")
        return DepositResolution(user=user, deposit=deposit, changed=moved == 1)

    def reject_deposit(self, deposit_id: str, reason: str) -> DepositResolution:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")
        deposit_id = deposit_id.strip().upper()
        phone = self._owner_of(Deposit, Deposit.deposit_id, deposit_id, "Deposit")

        with user_lock(phone), self._transaction() as session:
            moved = session.execute(
                update(Deposit)
                .where(Deposit.deposit_id == deposit_id, Deposit.status == DepositStatus.UNDER_REVIEW.value)
                .values(status=DepositStatus.REJECTED.value, rejection_reason=reason, resolved_at=self.clock())
                .execution_options(synchronize_session=False)
            ).rowcount
            deposit = session.scalar(
                select(Deposit).where(Deposit.deposit_id == deposit_id)
                .execution_options(populate_existing=True)
            )
            user = session.get(User, phone)

        logger.info(f"📋 LEDGER: Deposit {deposit_id} {'rejected: ' + reason if moved == 1 else 'already ' + deposit.status}")
        return DepositResolution(user=user, deposit=deposit, changed=moved == 1)

    # ------------------------------------------------------------------
    # Admin listings
    # ------------------------------------------------------------------

    def list_investments(self) -> List[Investment]:
        with self._transaction() as session:
            return list(session.scalars(select(Investment).order_by(Investment.id)).all())

    def list_deposits(self) -> List[Deposit]:
        with self._transaction() as session:
            return list(session.scalars(select(Deposit).order_by(Deposit.id)).all())

    def list_withdrawals(self) -> List[Withdrawal]:
        with self._transaction() as session:
            return list(session.scalars(select(Withdrawal).order_by(Withdrawal.id)).all())

    def list_referrals(self) -> List[Referral]:
        with self._transaction() as session:
            return list(session.scalars(
                select(Referral).options(selectinload(Referral.referrer), selectinload(Referral.referee))
                .order_by(Referral.id)
            ).all())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _history_options():
        return (
            selectinload(User.investments),
            selectinload(User.deposits),
            selectinload(User.withdrawals),
            selectinload(User.referrals),
        )

    @staticmethod
    def _load_for_update(session: Session, phone: str) -> User:
        user = session.scalar(
            select(User).where(User.phone == phone).with_for_update().execution_options(populate_existing=True)
        )
        if user is None:
            raise NotFoundError(f"No account found for {phone}")
        return user

    @staticmethod
    def _assert_non_negative(user: User):
        if user.account_balance < 0 or user.referral_earnings < 0:
            raise InvariantViolation(f"Negative balance for {user.phone}")

    @staticmethod
    def _unbind_chat(session: Session, chat_id: str, keep_phone: Optional[str] = None):
        # A chat is bound to at most one account at a time
        stmt = update(User).where(User.chat_id == chat_id)
        if keep_phone:
            stmt = stmt.where(User.phone != keep_phone)
        session.execute(stmt.values(chat_id=None).execution_options(synchronize_session=False))

    def _referrer_phone(self, phone: str) -> Optional[str]:
        with self._transaction() as session:
            referred_by = session.scalar(select(User.referred_by).where(User.phone == phone))
            if not referred_by:
                return None
            return session.scalar(select(User.phone).where(User.referral_code == referred_by))

    def _owner_of(self, model, id_column, record_id: str, label: str) -> str:
        with self._transaction() as session:
            phone = session.scalar(select(model.user_phone).where(id_column == record_id))
        if phone is None:
            raise NotFoundError(f"{label} {record_id} not found")
        return phone

    @staticmethod
    def _unique_id(session: Session, column, generator: Callable[[], str]) -> str:
        while True:
            candidate = generator()
            if session.scalar(select(func.count()).where(column == candidate)) == 0:
                return candidate

    def _unique_referral_code(self, session: Session) -> str:
        while True:
            code = generate_referral_code()
            if code == self.system_config.admin_referral_code:
                continue
            if session.scalar(select(func.count()).select_from(User).where(User.referral_code == code)) == 0:
                return code
