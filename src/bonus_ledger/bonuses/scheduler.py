"""Daily bonus jobs behind a small scheduler facade.

The ``handle_*`` methods are what the cron binding calls: they never raise,
so one bad night does not kill the worker. The ``manual_*`` variants are for
operators and propagate errors to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from bonus_ledger.bonuses.expiry_service import process_expiring_bonuses, send_expiration_warnings
from bonus_ledger.bonuses.schemas import ExpiryRunResult, WarningRunResult
from bonus_ledger.time_utils import utcnow

logger = logging.getLogger(__name__)


class BonusScheduler:
    """Runs the expiry and expiration-warning jobs and remembers when they last ran."""

    def __init__(self, redis: Any | None = None) -> None:
        self.redis = redis
        self.last_expiration_run: datetime | None = None
        self.last_warning_run: datetime | None = None

    async def handle_bonus_expiration(self) -> ExpiryRunResult | None:
        logger.info("Starting bonus expiration processing")
        try:
            result = await process_expiring_bonuses()
        except Exception:
            logger.exception("Error processing bonus expiration")
            return None
        self.last_expiration_run = utcnow()
        logger.info(
            "Bonus expiration completed: %d bonuses expired, %d users affected, %d failed",
            result.expired, result.users, result.failed,
        )
        return result

    async def handle_expiration_warnings(self) -> WarningRunResult | None:
        logger.info("Starting expiration warning notifications")
        try:
            result = await send_expiration_warnings(redis=self.redis)
        except Exception:
            logger.exception("Error sending expiration warnings")
            return None
        self.last_warning_run = utcnow()
        logger.info("Expiration warnings sent: %d notified, %d skipped", result.notified, result.skipped)
        return result

    async def manual_process_expiration(self) -> ExpiryRunResult:
        logger.info("Manual expiration processing triggered")
        result = await process_expiring_bonuses()
        self.last_expiration_run = utcnow()
        return result

    async def manual_send_warnings(self) -> WarningRunResult:
        logger.info("Manual warning notifications triggered")
        result = await send_expiration_warnings(redis=self.redis)
        self.last_warning_run = utcnow()
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": True,
            "last_expiration_run": self.last_expiration_run,
            "last_warning_run": self.last_warning_run,
        }
