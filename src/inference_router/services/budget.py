"""
Cost Budget Tracker
===================

Tracks remote spend in a rolling 24-hour window against a fixed daily
ceiling.  One tracker is shared by every concurrent request.

Usage pattern:
- read ``remaining()`` before deciding
- ``reserve()`` the estimate right before a remote dispatch
- ``commit()`` the actual cost afterwards (or ``release()`` on failure)

Reservations keep concurrent dispatches from jointly overspending by more
than one request's estimate.  ``record()`` adds spend directly for paths
that are not budget-gated (premium traffic, batch groups).
"""

from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional

import requests

from ..clock import Clock, SystemClock
from ..config import Settings, get_settings
from ..logging_utils import get_logger
from .models import BudgetSnapshot

log = get_logger("budget")

WINDOW = timedelta(hours=24)


class CostBudgetTracker:
    """Daily spend ceiling with a rolling window."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        daily_limit: Optional[float] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.daily_limit = (
            daily_limit if daily_limit is not None else self.settings.daily_cost_limit
        )
        self.alert_fraction = self.settings.budget_alert_fraction

        self.lock = threading.Lock()
        self._spent = 0.0
        self._reserved = 0.0
        self._window_start = self.clock.now()
        self._alert_sent = False
        self._alert_thread: Optional[threading.Thread] = None

        log.info(
            "budget_tracker_initialized daily_limit=$%.2f alert_at=%.0f%%",
            self.daily_limit,
            self.alert_fraction * 100,
        )

    def remaining(self) -> float:
        """Budget left in the current window (may dip below zero on premium overdraw)."""
        with self.lock:
            self._check_reset_window()
            return self.daily_limit - self._spent - self._reserved

    def spent(self) -> float:
        with self.lock:
            self._check_reset_window()
            return self._spent

    def record(self, cost: float) -> None:
        """Add actual spend to the window."""
        if cost <= 0:
            return
        with self.lock:
            self._check_reset_window()
            self._spent += cost
            alert = self._check_alert()
        if alert:
            self._send_alert(alert)

    def reserve(self, amount: float) -> bool:
        """
        Atomically hold ``amount`` against the remaining budget.

        Returns:
            False if the remaining budget cannot cover it
        """
        with self.lock:
            self._check_reset_window()
            if self.daily_limit - self._spent - self._reserved < amount:
                log.debug(
                    "budget_reserve_denied amount=$%.4f spent=$%.4f reserved=$%.4f",
                    amount,
                    self._spent,
                    self._reserved,
                )
                return False
            self._reserved += amount
            return True

    def commit(self, reserved: float, actual: float) -> None:
        """Swap a reservation for the actual cost."""
        with self.lock:
            self._check_reset_window()
            self._reserved = max(0.0, self._reserved - reserved)
            self._spent += max(0.0, actual)
            alert = self._check_alert()
        if alert:
            self._send_alert(alert)

    def release(self, reserved: float) -> None:
        """Drop a reservation whose dispatch failed."""
        with self.lock:
            self._reserved = max(0.0, self._reserved - reserved)

    def snapshot(self) -> BudgetSnapshot:
        with self.lock:
            self._check_reset_window()
            return BudgetSnapshot(
                ceiling=self.daily_limit,
                spent=round(self._spent, 6),
                reserved=round(self._reserved, 6),
                remaining=round(self.daily_limit - self._spent - self._reserved, 6),
                window_start=self._window_start,
            )

    def _check_reset_window(self) -> None:
        """Start a new window once 24h have passed.  Caller holds the lock."""
        now = self.clock.now()
        if now - self._window_start >= WINDOW:
            log.info(
                "budget_window_reset window_start=%s spent=$%.4f",
                self._window_start.isoformat(),
                self._spent,
            )
            self._spent = 0.0
            self._window_start = now
            self._alert_sent = False

    def _check_alert(self) -> Optional[str]:
        """Return an alert message the first time spend crosses the threshold."""
        if self._alert_sent or self.daily_limit <= 0:
            return None
        if self._spent < self.daily_limit * self.alert_fraction:
            return None
        self._alert_sent = True
        return (
            f"Daily inference spend ${self._spent:.2f} reached "
            f"{self.alert_fraction:.0%} of the ${self.daily_limit:.2f} ceiling"
        )

    def _send_alert(self, message: str) -> None:
        log.warning("budget_alert msg=%s", message)

        webhook_url = self.settings.budget_alert_webhook
        if not webhook_url:
            return
        # Callers may be on the event loop; post from a daemon thread
        self._alert_thread = threading.Thread(
            target=self._post_alert,
            args=(webhook_url, message),
            name="budget-alert",
            daemon=True,
        )
        self._alert_thread.start()

    def _post_alert(self, webhook_url: str, message: str) -> None:
        try:
            requests.post(webhook_url, json={"content": message}, timeout=5)
        except Exception as e:
            log.warning("budget_alert_webhook_failed err=%s", str(e))
