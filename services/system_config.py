"""
System Configuration Service
Process-wide runtime settings, seeded from Config and overlaid with the
admin-edited values persisted in the system_settings table.
"""

import logging
from dataclasses import dataclass, field, fields
from decimal import Decimal, ROUND_HALF_UP
from typing import ClassVar, Dict, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import Config
from models import SystemSetting
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class SystemConfig:
    """Mutable settings shared by the conversation engine, admin processor and jobs"""

    earning_percentage: Decimal = Decimal("10")
    referral_percentage: Decimal = Decimal("5")
    investment_duration_minutes: int = 60
    min_investment: Decimal = Decimal("1000")
    max_investment: Decimal = Decimal("150000")
    min_withdrawal: Decimal = Decimal("1000")
    max_withdrawal: Decimal = Decimal("1000000")
    max_deposit: Decimal = Decimal("10000000")
    deposit_instructions: str = ""
    withdrawal_instructions: str = ""
    super_admin: str = ""
    admins: Set[str] = field(default_factory=set)
    admin_referral_code: str = ""
    currency_label: str = "Ksh"
    refund_rejected_withdrawals: bool = True

    # Fields admins may change at runtime; these survive restarts
    PERSISTED_FIELDS: ClassVar[Tuple[str, ...]] = (
        "earning_percentage",
        "referral_percentage",
        "investment_duration_minutes",
        "min_investment",
        "max_investment",
        "min_withdrawal",
        "max_withdrawal",
        "deposit_instructions",
        "withdrawal_instructions",
        "admins",
    )

    @classmethod
    def from_config(cls, config=Config) -> "SystemConfig":
        admins = {config.SUPER_ADMIN_PHONE, *config.ADMIN_PHONES}
        return cls(
            earning_percentage=Decimal(config.EARNING_PERCENTAGE),
            referral_percentage=Decimal(config.REFERRAL_PERCENTAGE),
            investment_duration_minutes=int(config.INVESTMENT_DURATION_MINUTES),
            min_investment=Decimal(config.MIN_INVESTMENT),
            max_investment=Decimal(config.MAX_INVESTMENT),
            min_withdrawal=Decimal(config.MIN_WITHDRAWAL),
            max_withdrawal=Decimal(config.MAX_WITHDRAWAL),
            max_deposit=Decimal(config.MAX_DEPOSIT),
            deposit_instructions=config.DEPOSIT_INSTRUCTIONS,
            withdrawal_instructions=config.WITHDRAWAL_INSTRUCTIONS,
            super_admin=config.SUPER_ADMIN_PHONE,
            admins={a for a in admins if a},
            admin_referral_code=config.ADMIN_REFERRAL_CODE,
            currency_label=config.CURRENCY_LABEL,
            refund_rejected_withdrawals=config.REFUND_REJECTED_WITHDRAWALS,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _serialize(self, name: str) -> str:
        value = getattr(self, name)
        if name == "admins":
            return ",".join(sorted(value))
        return str(value)

    def _deserialize(self, name: str, raw: str):
        kind = {f.name: f.type for f in fields(self)}[name]
        if name == "admins":
            return {p.strip() for p in raw.split(",") if p.strip()}
        if kind in (Decimal, "Decimal"):
            return Decimal(raw)
        if kind in (int, "int"):
            return int(raw)
        return raw

    def load(self, session_factory: Optional[sessionmaker] = None) -> "SystemConfig":
        """Overlay persisted admin changes onto the environment defaults"""
        with atomic_transaction(session_factory) as session:
            rows = session.execute(select(SystemSetting)).scalars().all()
            stored: Dict[str, str] = {row.key: row.value for row in rows}

        for name in self.PERSISTED_FIELDS:
            if name in stored:
                try:
                    setattr(self, name, self._deserialize(name, stored[name]))
                except (ArithmeticError, ValueError) as e:
                    logger.warning(f"⚠️ SYSTEM_CONFIG: Ignoring unreadable setting {name}={stored[name]!r}: {e}")

        # The super-admin is always an admin
        self.admins.add(self.super_admin)
        logger.info(f"⚙️ SYSTEM_CONFIG: Loaded {len(stored)} persisted setting(s)")
        return self

    def save(self, session_factory: Optional[sessionmaker] = None, *names: str):
        """Persist the named fields (all persisted fields when none given)"""
        targets = names or self.PERSISTED_FIELDS
        with atomic_transaction(session_factory) as session:
            for name in targets:
                if name not in self.PERSISTED_FIELDS:
                    raise ValueError(f"{name} is not a persisted setting")
                row = session.get(SystemSetting, name)
                if row is None:
                    session.add(SystemSetting(key=name, value=self._serialize(name)))
                else:
                    row.value = self._serialize(name)
        logger.info(f"💾 SYSTEM_CONFIG: Saved {', '.join(targets)}")

    # ------------------------------------------------------------------
    # Admin roles
    # ------------------------------------------------------------------

    def is_admin(self, phone: Optional[str]) -> bool:
        return bool(phone) and phone in self.admins

    def is_super_admin(self, phone: Optional[str]) -> bool:
        return bool(phone) and phone == self.super_admin

    def add_admin(self, phone: str) -> bool:
        if phone in self.admins:
            return False
        self.admins.add(phone)
        return True

    def remove_admin(self, phone: str) -> bool:
        if self.is_super_admin(phone):
            raise AuthorizationError("The super admin cannot be removed")
        if phone not in self.admins:
            return False
        self.admins.discard(phone)
        return True

    # ------------------------------------------------------------------
    # Computations
    # ------------------------------------------------------------------

    def expected_return(self, amount: Decimal) -> Decimal:
        return quantize_money(Decimal(amount) * self.earning_percentage / Decimal(100))

    def referral_bonus(self, amount: Decimal) -> Decimal:
        return quantize_money(Decimal(amount) * self.referral_percentage / Decimal(100))

    def set_percentage(self, name: str, value: Decimal):
        if value < 0 or value > 1000:
            raise ValidationError("Percentage must be between 0 and 1000")
        setattr(self, name, value)

    def set_bound(self, name: str, value: Decimal):
        if value <= 0:
            raise ValidationError("Amount must be greater than 0")
        lower, upper = {
            "min_investment": (value, self.max_investment),
            "max_investment": (self.min_investment, value),
            "min_withdrawal": (value, self.max_withdrawal),
            "max_withdrawal": (self.min_withdrawal, value),
        }[name]
        if lower > upper:
            raise ValidationError("Minimum cannot exceed maximum")
        setattr(self, name, value)

    def set_duration(self, minutes: int):
        if minutes <= 0:
            raise ValidationError("Duration must be at least 1 minute")
        self.investment_duration_minutes = minutes
