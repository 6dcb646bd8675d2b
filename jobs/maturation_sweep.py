"""
Maturation Sweep Job
Moves every due active investment to completed, credits principal plus the
expected return, and tells the owner. Safe to run concurrently with the
conversation engine: each maturation is a conditional update under the
owner's lock, so an investment is credited once however often it is swept.
"""

import logging
from datetime import datetime
from typing import Optional

from utils import messages

logger = logging.getLogger(__name__)


async def run_maturation_sweep(ledger, notifier, now: Optional[datetime] = None) -> int:
    """Mature due investments and notify their owners; returns how many matured"""
    results = ledger.mature_due_investments(now)
    if not results:
        logger.debug("MATURATION: No investments due")
        return 0

    currency = ledger.system_config.currency_label
    for result in results:
        investment = result.investment
        await notifier.notify_user(
            result.user.phone,
            f"🎉 Congratulations {result.user.first_name}! "
            f"Your investment of {messages.money(investment.amount, currency)} has matured. "
            f"You earned {messages.money(investment.expected_return, currency)}, and your account "
            f"has been credited with {messages.money(result.credited, currency)}.",
        )

    logger.info(f"🎉 MATURATION: Sweep matured {len(results)} investment(s)")
    return len(results)
