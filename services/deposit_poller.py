"""
Deposit status polling for automatic (STK push) deposits.

Each pending push gets one asyncio task, registered under its provider
reference. The task sleeps a fixed interval, asks the provider for the
status, and stops on SUCCESS, on FAILED, or after the attempt cap. The
ledger records a reference at most once, so a late duplicate poll cannot
credit twice.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from config import Config
from services.payhero_service import STATUS_FAILED, STATUS_SUCCESS
from utils.exception_handler import ExternalServiceError, PersistenceError
from utils import messages
from utils.helpers import format_timestamp

logger = logging.getLogger(__name__)


@dataclass
class PendingDeposit:
    phone: str
    amount: Decimal
    reference: str
    payer_phone: str
    attempts: int = 0


class DepositPoller:
    """Registry of polling tasks keyed by push reference"""

    def __init__(
        self,
        provider,
        ledger,
        notifier,
        interval_seconds: float = None,
        max_attempts: int = None,
    ):
        self.provider = provider
        self.ledger = ledger
        self.notifier = notifier
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else Config.DEPOSIT_POLL_INTERVAL_SECONDS
        )
        self.max_attempts = max_attempts or Config.DEPOSIT_POLL_MAX_ATTEMPTS
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def system_config(self):
        return self.ledger.system_config

    def start_polling(self, phone: str, amount: Decimal, reference: str, payer_phone: str) -> asyncio.Task:
        """Schedule the poll and return immediately"""
        existing = self._tasks.get(reference)
        if existing is not None and not existing.done():
            return existing

        pending = PendingDeposit(phone=phone, amount=Decimal(amount), reference=reference, payer_phone=payer_phone)
        task = asyncio.create_task(self._poll(pending), name=f"deposit-poll-{reference}")
        self._tasks[reference] = task
        task.add_done_callback(lambda t, ref=reference: self._forget(ref, t))
        logger.info(
            f"⏳ DEPOSIT_POLL: Watching {reference} for {phone} "
            f"({self.max_attempts} x {self.interval_seconds}s)"
        )
        return task

    def _forget(self, reference: str, task: asyncio.Task):
        if self._tasks.get(reference) is task:
            del self._tasks[reference]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"❌ DEPOSIT_POLL: Poll for {reference} crashed: {type(error).__name__}: {error}",
                exc_info=error,
            )

    def active_references(self) -> List[str]:
        return [ref for ref, task in self._tasks.items() if not task.done()]

    def cancel(self, reference: str) -> bool:
        task = self._tasks.get(reference)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info(f"🛑 DEPOSIT_POLL: Cancelled {reference}")
        return True

    async def shutdown(self):
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"🛑 DEPOSIT_POLL: Cancelled {len(tasks)} pending poll(s) on shutdown")
        self._tasks.clear()

    async def _poll(self, pending: PendingDeposit) -> Optional[str]:
        while pending.attempts < self.max_attempts:
            await asyncio.sleep(self.interval_seconds)
            pending.attempts += 1
            try:
                result = await self.provider.poll_status(pending.reference)
            except ExternalServiceError as e:
                logger.warning(
                    f"⚠️ DEPOSIT_POLL: Attempt {pending.attempts}/{self.max_attempts} for "
                    f"{pending.reference} failed: {e.message}"
                )
                continue

            if result.status == STATUS_SUCCESS:
                await self._credit(pending, result.provider_reference)
                return STATUS_SUCCESS
            if result.status == STATUS_FAILED:
                logger.info(f"❌ DEPOSIT_POLL: {pending.reference} reported FAILED")
                break

        logger.info(f"⌛ DEPOSIT_POLL: Giving up on {pending.reference} after {pending.attempts} attempt(s)")
        cfg = self.system_config
        await self.notifier.notify_user(
            pending.phone,
            "⚠️ STK push not successful. Please try manual deposit.\n"
            f"{cfg.deposit_instructions}\n{messages.BACK_TO_MENU}",
        )
        return STATUS_FAILED

    async def _credit(self, pending: PendingDeposit, provider_reference: Optional[str]):
        try:
            resolution = self.ledger.record_automatic_deposit(
                pending.phone,
                pending.amount,
                push_reference=pending.reference,
                provider_reference=provider_reference,
                payer_phone=pending.payer_phone,
            )
        except PersistenceError:
            logger.error(f"❌ DEPOSIT_POLL: Could not record confirmed payment {pending.reference}")
            await self.notifier.notify_admins(
                "⚠️ Automatic deposit confirmed by the provider but not recorded.\n"
                f"Phone: {pending.phone}\nAmount: {messages.money(pending.amount)}\n"
                f"Reference: {pending.reference}\nPlease credit manually."
            )
            return

        if not resolution.changed:
            return

        deposit = resolution.deposit
        user = resolution.user
        await self.notifier.notify_user(
            user.phone,
            "✅ Automatic deposit successful!\n"
            f"Deposit ID: {deposit.deposit_id}\n"
            f"Amount: {messages.money(deposit.amount)}\n"
            f"Transaction Code: {deposit.provider_reference}\n"
            "Your account has been credited.\n"
            f"{messages.BACK_TO_MENU}",
        )
        await self.notifier.notify_admins(
            "🔔 Automatic Deposit Success:\n"
            f"User: {messages.user_label(user)}\n"
            f"Amount: {messages.money(deposit.amount)}\n"
            f"Deposit ID: {deposit.deposit_id}\n"
            f"Transaction Code: {deposit.provider_reference}\n"
            f"Date: {format_timestamp(deposit.created_at)}"
        )
