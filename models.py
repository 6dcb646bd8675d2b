"""
FY'S Investment Bot - Database Schema
=====================================

Ledger schema for the conversational investment bot:
- Users keyed by phone number, bound to the chat identity of their last login
- Investments that mature once into spendable balance
- Deposits (manual under review, or confirmed automatically by STK push)
- Withdrawals debited at request time from one of two balance buckets
- Referral links and the one-time bonus they paid
- Runtime system settings overlaid on the environment defaults
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    String, Numeric, DateTime, Boolean, Text, Integer,
    ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.helpers import utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class InvestmentStatus(Enum):
    """Investment lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"


class DepositStatus(Enum):
    """Deposit lifecycle states"""
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class DepositMethod(Enum):
    """How the deposit reached the platform"""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class WithdrawalStatus(Enum):
    """Withdrawal lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalSource(Enum):
    """Balance bucket a withdrawal is debited from"""
    REFERRAL_EARNINGS = "referral_earnings"
    ACCOUNT_BALANCE = "account_balance"


MONEY = Numeric(14, 2)


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """Registered investor - identified by phone, bound to one chat at a time"""
    __tablename__ = 'users'

    # Primary identification
    phone: Mapped[str] = mapped_column(String(10), primary_key=True)
    chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    first_name: Mapped[str] = mapped_column(String(64), nullable=False)
    second_name: Mapped[str] = mapped_column(String(64), nullable=False)

    # Credentials (salted hashes, never the raw PIN)
    withdrawal_pin_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    security_pin_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    # Referral system
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    referred_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    # Balances
    account_balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    referral_earnings: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    # Status flags
    banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    banned_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utc_now, onupdate=utc_now, nullable=False
    )

    # Relationships (ordered by creation)
    investments: Mapped[list["Investment"]] = relationship(
        "Investment", back_populates="user", order_by="Investment.id"
    )
    deposits: Mapped[list["Deposit"]] = relationship(
        "Deposit", back_populates="user", order_by="Deposit.id"
    )
    withdrawals: Mapped[list["Withdrawal"]] = relationship(
        "Withdrawal", back_populates="user", order_by="Withdrawal.id"
    )
    referrals: Mapped[list["Referral"]] = relationship(
        "Referral", foreign_keys="Referral.referrer_phone", back_populates="referrer", order_by="Referral.id"
    )

    __table_args__ = (
        CheckConstraint('account_balance >= 0', name='ck_user_account_balance_positive'),
        CheckConstraint('referral_earnings >= 0', name='ck_user_referral_earnings_positive'),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.second_name}".strip()


class Investment(Base):
    """Principal locked for the configured duration, matured exactly once"""
    __tablename__ = 'investments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_phone: Mapped[str] = mapped_column(String(10), ForeignKey('users.phone'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    expected_return: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=InvestmentStatus.ACTIVE.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utc_now, nullable=False)
    matured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="investments")

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{InvestmentStatus.ACTIVE.value}', '{InvestmentStatus.COMPLETED.value}')",
            name='ck_investment_status_valid'
        ),
        CheckConstraint('amount > 0', name='ck_investment_amount_positive'),
        Index('ix_investments_status_created', 'status', 'created_at'),
    )


class Deposit(Base):
    """Funds credited to account balance only when approved"""
    __tablename__ = 'deposits'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deposit_id: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    user_phone: Mapped[str] = mapped_column(String(10), ForeignKey('users.phone'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    method: Mapped[str] = mapped_column(String(20), default=DepositMethod.MANUAL.value, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DepositStatus.UNDER_REVIEW.value, nullable=False)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    push_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payer_phone: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utc_now, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="deposits")

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{DepositStatus.UNDER_REVIEW.value}', '{DepositStatus.APPROVED.value}', "
            f"'{DepositStatus.REJECTED.value}')",
            name='ck_deposit_status_valid'
        ),
        CheckConstraint('amount > 0', name='ck_deposit_amount_positive'),
    )


class Withdrawal(Base):
    """Payout request, debited from its source bucket at creation"""
    __tablename__ = 'withdrawals'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    withdrawal_id: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    user_phone: Mapped[str] = mapped_column(String(10), ForeignKey('users.phone'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    payout_number: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WithdrawalStatus.PENDING.value, nullable=False)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utc_now, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="withdrawals")

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{WithdrawalStatus.PENDING.value}', '{WithdrawalStatus.APPROVED.value}', "
            f"'{WithdrawalStatus.REJECTED.value}')",
            name='ck_withdrawal_status_valid'
        ),
        CheckConstraint(
            f"source IN ('{WithdrawalSource.REFERRAL_EARNINGS.value}', '{WithdrawalSource.ACCOUNT_BALANCE.value}')",
            name='ck_withdrawal_source_valid'
        ),
        CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
    )


class Referral(Base):
    """Referrer -> referee link, created with the referee's first investment"""
    __tablename__ = 'referrals'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_phone: Mapped[str] = mapped_column(String(10), ForeignKey('users.phone'), nullable=False, index=True)
    referee_phone: Mapped[str] = mapped_column(String(10), ForeignKey('users.phone'), nullable=False, unique=True)
    bonus_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utc_now, nullable=False)

    referrer: Mapped["User"] = relationship("User", foreign_keys=[referrer_phone], back_populates="referrals")
    referee: Mapped["User"] = relationship("User", foreign_keys=[referee_phone])


class SystemSetting(Base):
    """Key/value overlay for admin-edited runtime settings"""
    __tablename__ = 'system_settings'

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utc_now, onupdate=utc_now, nullable=False
    )
