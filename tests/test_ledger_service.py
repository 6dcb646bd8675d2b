"""
Ledger invariants: non-negative balances, investment conservation, the
one-time referral bonus, idempotent approvals and maturation, and the
one-chat-per-account binding.
"""

import pytest
from decimal import Decimal

from models import DepositStatus, InvestmentStatus, WithdrawalSource, WithdrawalStatus
from services.ledger_service import DuplicateAccountError
from utils.exception_handler import (
    AuthorizationError, InsufficientFundsError, NotFoundError, ValidationError,
)
from conftest import ADMIN_CODE, SECURITY_PIN, SUPER_ADMIN_PHONE, WITHDRAWAL_PIN, fund


def make_user(ledger, phone, first="Jane", second="Doe", referred_by=ADMIN_CODE, chat_id=None):
    return ledger.create_user(
        first_name=first,
        second_name=second,
        phone=phone,
        withdrawal_pin=WITHDRAWAL_PIN,
        security_pin=SECURITY_PIN,
        referred_by=referred_by,
        chat_id=chat_id,
    )


class TestAccounts:

    def test_create_user_starts_empty_with_unique_code(self, ledger):
        user = make_user(ledger, "0712345678", chat_id="c1")
        other = make_user(ledger, "0722000111")

        assert user.account_balance == Decimal("0")
        assert user.referral_earnings == Decimal("0")
        assert user.referral_code.startswith("FY'S-")
        assert user.referral_code != other.referral_code
        assert user.withdrawal_pin_hash != WITHDRAWAL_PIN
        assert ledger.find_by_chat("c1").phone == "0712345678"

    def test_duplicate_phone_is_rejected(self, ledger):
        make_user(ledger, "0712345678")
        with pytest.raises(DuplicateAccountError):
            make_user(ledger, "0712345678")

    def test_authenticate_checks_the_security_pin(self, ledger):
        make_user(ledger, "0712345678", chat_id="c1")

        with pytest.raises(AuthorizationError):
            ledger.authenticate("0712345678", WITHDRAWAL_PIN, "c1")
        with pytest.raises(NotFoundError):
            ledger.authenticate("0799999999", SECURITY_PIN, "c1")

        result = ledger.authenticate("0712345678", SECURITY_PIN, "c1")
        assert result.previous_chat_id is None

    def test_login_moves_the_account_to_the_new_chat(self, ledger):
        make_user(ledger, "0712345678", chat_id="old")

        result = ledger.authenticate("0712345678", SECURITY_PIN, "new")

        assert result.previous_chat_id == "old"
        assert ledger.find_by_chat("old") is None
        assert ledger.find_by_chat("new").phone == "0712345678"

    def test_a_chat_is_bound_to_one_account_at_a_time(self, ledger):
        make_user(ledger, "0712345678", chat_id="shared")
        make_user(ledger, "0722000111", chat_id="other")

        ledger.authenticate("0722000111", SECURITY_PIN, "shared")

        assert ledger.require_user("0712345678").chat_id is None
        assert ledger.find_by_chat("shared").phone == "0722000111"

    def test_set_pin_by_kind(self, ledger):
        make_user(ledger, "0712345678")

        ledger.set_pin("0712345678", "9999")
        assert ledger.verify_withdrawal_pin("0712345678", "9999")

        ledger.set_pin("0712345678", "4444", kind="login")
        assert ledger.authenticate("0712345678", "4444", "c9").user.phone == "0712345678"

        with pytest.raises(ValidationError):
            ledger.set_pin("0712345678", "12")

    def test_super_admin_cannot_be_banned(self, ledger):
        make_user(ledger, SUPER_ADMIN_PHONE)
        with pytest.raises(AuthorizationError):
            ledger.ban_user(SUPER_ADMIN_PHONE, "test")

    def test_ban_requires_reason_and_unban_clears_it(self, ledger):
        make_user(ledger, "0712345678")
        with pytest.raises(ValidationError):
            ledger.ban_user("0712345678", "  ")

        assert ledger.ban_user("0712345678", "fraud").banned
        user = ledger.unban_user("0712345678")
        assert not user.banned
        assert user.banned_reason is None

    def test_resolve_referral_code(self, ledger):
        user = make_user(ledger, "0712345678")
        assert ledger.resolve_referral_code(user.referral_code.lower()) == user.referral_code
        assert ledger.resolve_referral_code("admin-test1") == ADMIN_CODE
        assert ledger.resolve_referral_code("FY'S-NOPE0") is None
        assert ledger.resolve_referral_code("") is None


class TestInvestments:

    def test_invest_debits_and_records_expected_return(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)

        result = ledger.invest("0712345678", Decimal("2000"))

        assert result.user.account_balance == Decimal("3000")
        assert result.investment.amount == Decimal("2000")
        assert result.investment.expected_return == Decimal("200")
        assert result.investment.status == InvestmentStatus.ACTIVE.value
        assert len(ledger.investments_for("0712345678")) == 1

    def test_invest_bounds_are_enforced(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 500000)

        with pytest.raises(ValidationError):
            ledger.invest("0712345678", Decimal("999"))
        with pytest.raises(ValidationError):
            ledger.invest("0712345678", Decimal("150001"))

    def test_insufficient_funds_leaves_balance_untouched(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 1500)

        with pytest.raises(InsufficientFundsError):
            ledger.invest("0712345678", Decimal("2000"))

        assert ledger.require_user("0712345678").account_balance == Decimal("1500")
        assert ledger.investments_for("0712345678") == []

    def test_referral_bonus_pays_on_first_investment_only(self, ledger):
        referrer = make_user(ledger, "0722000111", first="Rita")
        make_user(ledger, "0712345678", referred_by=referrer.referral_code)
        fund(ledger, "0712345678", 10000)

        first = ledger.invest("0712345678", Decimal("1000"))
        assert first.referrer.phone == "0722000111"
        assert first.referral_bonus == Decimal("50")
        assert ledger.require_user("0722000111").referral_earnings == Decimal("50")

        second = ledger.invest("0712345678", Decimal("4000"))
        assert second.referrer is None
        assert ledger.require_user("0722000111").referral_earnings == Decimal("50")

        referrals = ledger.referrals_for("0722000111")
        assert [r.referee_phone for r in referrals] == ["0712345678"]

    def test_admin_code_referral_pays_nobody(self, ledger):
        make_user(ledger, "0712345678", referred_by=ADMIN_CODE)
        fund(ledger, "0712345678", 2000)

        result = ledger.invest("0712345678", Decimal("1000"))

        assert result.referrer is None
        assert ledger.list_referrals() == []

    def test_maturation_credits_once(self, ledger, clock):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)
        investment = ledger.invest("0712345678", Decimal("2000")).investment

        clock.advance(minutes=59)
        assert ledger.mature_due_investments() == []

        clock.advance(minutes=1)
        results = ledger.mature_due_investments()
        assert len(results) == 1
        assert results[0].credited == Decimal("2200")
        assert ledger.require_user("0712345678").account_balance == Decimal("5200")

        # Second attempt on the same investment is a no-op
        assert ledger.mature_investment(investment.id) is None
        assert ledger.mature_due_investments() == []
        assert ledger.require_user("0712345678").account_balance == Decimal("5200")
        assert ledger.investments_for("0712345678")[0].status == InvestmentStatus.COMPLETED.value


class TestDeposits:

    def test_manual_deposit_is_not_credited_until_approved(self, ledger):
        make_user(ledger, "0712345678")
        deposit = ledger.create_manual_deposit("0712345678", Decimal("2500"))

        assert deposit.deposit_id.startswith("DEP-")
        assert deposit.status == DepositStatus.UNDER_REVIEW.value
        assert ledger.require_user("0712345678").account_balance == Decimal("0")

    def test_approve_deposit_is_idempotent(self, ledger):
        make_user(ledger, "0712345678")
        deposit = ledger.create_manual_deposit("0712345678", Decimal("2500"))

        first = ledger.approve_deposit(deposit.deposit_id)
        second = ledger.approve_deposit(deposit.deposit_id.lower())

        assert first.changed and not second.changed
        assert ledger.require_user("0712345678").account_balance == Decimal("2500")

    def test_rejected_deposit_cannot_be_approved(self, ledger):
        make_user(ledger, "0712345678")
        deposit = ledger.create_manual_deposit("0712345678", Decimal("2500"))

        ledger.reject_deposit(deposit.deposit_id, "No payment received")
        result = ledger.approve_deposit(deposit.deposit_id)

        assert not result.changed
        assert result.deposit.status == DepositStatus.REJECTED.value
        assert result.deposit.rejection_reason == "No payment received"
        assert ledger.require_user("0712345678").account_balance == Decimal("0")

    def test_deposit_above_the_cap_is_refused(self, ledger):
        make_user(ledger, "0712345678")
        with pytest.raises(ValidationError):
            ledger.create_manual_deposit("0712345678", Decimal("1" + "0" * 30))
        assert ledger.deposits_for("0712345678") == []

    def test_unknown_deposit_id(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.approve_deposit("DEP-MISSING1")

    def test_automatic_deposit_reference_is_recorded_once(self, ledger):
        make_user(ledger, "0712345678")

        first = ledger.record_automatic_deposit("0712345678", Decimal("3000"), "PUSH-1", "QWE123", "0712345678")
        second = ledger.record_automatic_deposit("0712345678", Decimal("3000"), "PUSH-1", "QWE123", "0712345678")

        assert first.changed and not second.changed
        assert first.deposit.status == DepositStatus.APPROVED.value
        assert first.deposit.provider_reference == "QWE123"
        assert ledger.require_user("0712345678").account_balance == Decimal("3000")


class TestWithdrawals:

    def test_request_debits_the_selected_bucket(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)

        result = ledger.request_withdrawal(
            "0712345678", WithdrawalSource.ACCOUNT_BALANCE, Decimal("1500"), "0712345678"
        )

        assert result.withdrawal.withdrawal_id.startswith("WD-")
        assert result.withdrawal.status == WithdrawalStatus.PENDING.value
        assert result.user.account_balance == Decimal("3500")
        assert result.user.referral_earnings == Decimal("0")

    def test_insufficient_referral_earnings(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)

        with pytest.raises(InsufficientFundsError):
            ledger.request_withdrawal(
                "0712345678", WithdrawalSource.REFERRAL_EARNINGS, Decimal("1000"), "0712345678"
            )
        assert ledger.withdrawals_for("0712345678") == []

    def test_withdrawal_bounds(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)

        with pytest.raises(ValidationError):
            ledger.check_withdrawal_amount("0712345678", WithdrawalSource.ACCOUNT_BALANCE, Decimal("999"))

    def test_reject_refunds_exactly_once(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)
        wd = ledger.request_withdrawal(
            "0712345678", WithdrawalSource.ACCOUNT_BALANCE, Decimal("2000"), "0712345678"
        ).withdrawal

        first = ledger.reject_withdrawal(wd.withdrawal_id, "Wrong number")
        second = ledger.reject_withdrawal(wd.withdrawal_id, "Wrong number")

        assert first.changed and first.refunded == Decimal("2000")
        assert not second.changed and second.refunded == Decimal("0")
        assert first.withdrawal.refunded
        assert ledger.require_user("0712345678").account_balance == Decimal("5000")

    def test_reject_without_refund_when_disabled(self, ledger, system_config):
        system_config.refund_rejected_withdrawals = False
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)
        wd = ledger.request_withdrawal(
            "0712345678", WithdrawalSource.ACCOUNT_BALANCE, Decimal("2000"), "0712345678"
        ).withdrawal

        result = ledger.reject_withdrawal(wd.withdrawal_id, "Wrong number")

        assert result.changed and result.refunded == Decimal("0")
        assert ledger.require_user("0712345678").account_balance == Decimal("3000")

    def test_approved_withdrawal_cannot_be_rejected(self, ledger):
        make_user(ledger, "0712345678")
        fund(ledger, "0712345678", 5000)
        wd = ledger.request_withdrawal(
            "0712345678", WithdrawalSource.ACCOUNT_BALANCE, Decimal("2000"), "0712345678"
        ).withdrawal

        assert ledger.approve_withdrawal(wd.withdrawal_id).changed
        result = ledger.reject_withdrawal(wd.withdrawal_id, "late")

        assert not result.changed
        assert result.withdrawal.status == WithdrawalStatus.APPROVED.value
        assert ledger.require_user("0712345678").account_balance == Decimal("3000")


class TestBalanceNonNegativity:
    """Balances stay >= 0 across a mixed sequence of operations"""

    def test_mixed_sequence(self, ledger, clock):
        referrer = make_user(ledger, "0722000111")
        make_user(ledger, "0712345678", referred_by=referrer.referral_code)
        fund(ledger, "0712345678", 3000)

        steps = [
            lambda: ledger.invest("0712345678", Decimal("2000")),
            lambda: ledger.invest("0712345678", Decimal("2000")),
            lambda: ledger.request_withdrawal(
                "0712345678", WithdrawalSource.ACCOUNT_BALANCE, Decimal("1000"), "0712345678"),
            lambda: ledger.request_withdrawal(
                "0712345678", WithdrawalSource.ACCOUNT_BALANCE, Decimal("1000"), "0712345678"),
            lambda: ledger.request_withdrawal(
                "0722000111", WithdrawalSource.REFERRAL_EARNINGS, Decimal("1000"), "0722000111"),
        ]
        for step in steps:
            try:
                step()
            except InsufficientFundsError:
                pass
            for user in ledger.list_users():
                assert user.account_balance >= 0
                assert user.referral_earnings >= 0

        user = ledger.require_user("0712345678")
        assert user.account_balance == Decimal("0")
        assert ledger.require_user("0722000111").referral_earnings == Decimal("100")
