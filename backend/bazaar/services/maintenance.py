"""
Maintenance scheduler.

WHAT: Periodic expiry sweeps for reservations, negotiations, QR sessions and rate counters
WHY: Bound how long expired holds keep stock out of circulation when nobody touches them
HOW: Self-rescheduling threading.Timer; every sweep is idempotent, so a late
     or overlapping run is harmless
"""

import threading
from typing import Dict, Optional

from ..core.config import settings
from ..utils.logger import get_logger
from .negotiation_service import NegotiationStateMachine
from .qr_session_service import QRSessionProtocol
from .rate_governor import RateGovernor
from .resource_ledger import ResourceLedger

logger = get_logger(__name__)


class MaintenanceScheduler:
    """Run the expiry sweeps on an interval until stopped."""

    def __init__(
        self,
        ledger: ResourceLedger,
        negotiations: NegotiationStateMachine,
        qr_sessions: QRSessionProtocol,
        rate_governor: RateGovernor,
        interval_seconds: Optional[float] = None,
    ):
        self.ledger = ledger
        self.negotiations = negotiations
        self.qr_sessions = qr_sessions
        self.rate_governor = rate_governor
        self.interval_seconds = interval_seconds or settings.MAINTENANCE_INTERVAL_SECONDS
        self._timer: Optional[threading.Timer] = None
        self._state_lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self) -> Dict[str, int]:
        """
        Run every sweep once.

        Negotiations go first so their reservations are released through the
        state machine; the ledger sweep then picks up any orphaned holds.

        Returns:
            Count of items each sweep retired
        """
        now = self.negotiations.clock()
        return {
            "negotiations_expired": self.negotiations.expire_stale(now),
            "reservations_released": self.ledger.sweep_expired(now),
            "qr_sessions_expired": self.qr_sessions.expire_stale(now),
            "rate_counters_purged": self.rate_governor.purge_elapsed(now),
        }

    def start(self):
        """Begin periodic sweeps. Calling start on a running scheduler does nothing."""
        with self._state_lock:
            if self._running:
                return
            self._running = True
            self._schedule()
        logger.info(f"Started maintenance scheduler (interval: {self.interval_seconds}s)")

    def stop(self):
        """Cancel the pending sweep; a sweep already in progress finishes."""
        with self._state_lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("Stopped maintenance scheduler")

    def _schedule(self):
        self._timer = threading.Timer(self.interval_seconds, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self):
        try:
            counts = self.run_once()
            if any(counts.values()):
                logger.info(f"Maintenance sweep: {counts}")
        except Exception as e:
            # Keep the schedule alive; the next tick retries the same sweeps
            logger.error(f"Maintenance sweep failed: {e}", exc_info=True)
        finally:
            with self._state_lock:
                if self._running:
                    self._schedule()
