"""
Payment Reaper - The Sweeper
============================
Background task that expires checkout sessions nobody finished paying for.

Features:
- Runs every 60 seconds (fixed rate)
- Finds PENDING payments older than the checkout expiry window
- Expires the session at Stripe, then marks the row FAILED
- A tick that arrives while a pass is still running is coalesced
- Per-record failures are logged and never stop the pass
"""

import asyncio
import os
import time
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from schemas.payment_definitions import PaymentStatus
from services.session_manager import SessionManager

# Configure logger
logger = structlog.get_logger().bind(component="reaper")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReaperConfig:
    """Reaper loop configuration"""

    # How often to sweep for stale sessions (seconds)
    INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", "60"))

    # Enable/disable the reaper loop
    ENABLED = os.getenv("REAPER_ENABLED", "true").lower() == "true"


config = ReaperConfig()


# =============================================================================
# REAPER
# =============================================================================

class PaymentReaper:
    """
    Periodic sweeper over PENDING payments.

    Example:
        reaper = PaymentReaper(manager)
        reaper.start()
        ...
        await reaper.stop()
    """

    def __init__(self, manager: SessionManager, reaper_config: ReaperConfig = config):
        self.manager = manager
        self.config = reaper_config
        self._pass_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

        self.passes = 0
        self.coalesced = 0
        self.last_run_at: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, int]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Optional[Dict[str, int]]:
        """
        One sweep. Returns the pass summary, or None when another pass was
        already in progress.
        """
        if self._pass_lock.locked():
            self.coalesced += 1
            logger.info("Reaper pass still running, tick coalesced")
            return None

        async with self._pass_lock:
            return await self._sweep()

    async def _sweep(self) -> Dict[str, int]:
        summary = {"scanned": 0, "stale": 0, "expired": 0, "skipped": 0, "errors": 0}
        now = self.manager.now()

        pending = await self.manager.store.find_by_status(PaymentStatus.PENDING)
        summary["scanned"] = len(pending)

        for payment in pending:
            if not payment.transaction_id or not payment.transaction_id.strip() or payment.created_at is None:
                summary["skipped"] += 1
                continue

            if not self.manager.is_session_stale(payment, now):
                continue

            summary["stale"] += 1
            try:
                if await self.manager.expire_stale_payment(payment):
                    summary["expired"] += 1
                else:
                    summary["skipped"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(
                    "Failed to expire stale payment",
                    payment_id=payment.id,
                    session_id=payment.transaction_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self.passes += 1
        self.last_run_at = now
        self.last_summary = summary

        if summary["stale"] or summary["errors"]:
            logger.info("Reaper pass complete", **summary)
        else:
            logger.debug("Reaper pass complete", **summary)

        return summary

    async def _loop(self):
        logger.info(
            "Reaper loop started",
            interval=self.config.INTERVAL_SECONDS,
            expiry_minutes=self.manager.expiry_minutes,
        )

        while True:
            started = time.monotonic()
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Reaper pass failed", error=str(e), error_type=type(e).__name__)

            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.config.INTERVAL_SECONDS - elapsed))

    def start(self) -> Optional[asyncio.Task]:
        if not self.config.ENABLED:
            logger.info("Reaper loop disabled via config")
            return None

        if self.running:
            return self._task

        self._task = asyncio.create_task(self._loop(), name="payment-reaper")
        return self._task

    async def stop(self):
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            logger.info("Reaper loop stopped", passes=self.passes)

    def get_stats(self) -> Dict[str, Any]:
        """Reaper statistics for health endpoint"""
        return {
            "enabled": self.config.ENABLED,
            "running": self.running,
            "interval_seconds": self.config.INTERVAL_SECONDS,
            "expiry_minutes": self.manager.expiry_minutes,
            "passes": self.passes,
            "coalesced": self.coalesced,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_summary": self.last_summary,
        }
