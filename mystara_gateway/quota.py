"""In-memory per-caller quota tracker for the Mystara gateway.

Tracks per-caller request counts using a fixed-window approach: each caller's
window starts with their first request and is advanced by the window length
once it has elapsed. Because windows are fixed rather than sliding, a caller
can be admitted up to twice their limit in a short span straddling a window
boundary. That approximation is accepted.

State lives in process memory only and is lost on restart. When the table
grows past its capacity it is cleared wholesale, which resets every caller.
"""

import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class CallerTier(str, Enum):
    """Quota tier derived from the caller's premium flag."""

    STANDARD = "standard"
    ELEVATED = "elevated"

    @classmethod
    def from_flag(cls, is_premium: bool) -> "CallerTier":
        return cls.ELEVATED if is_premium else cls.STANDARD


@dataclass
class QuotaRecord:
    """Fixed-window counter for a single caller."""

    count: int
    window_reset_at: float


@dataclass(frozen=True)
class QuotaDecision:
    """Result of an admission check."""

    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class QuotaTracker:
    """Per-caller in-memory fixed-window quota tracker.

    Thread-safe: the read-check-increment of admit() runs under a lock so
    concurrent requests from the same caller cannot both be admitted past
    the limit.
    """

    def __init__(
        self,
        standard_limit: int = 10,
        elevated_limit: int = 100,
        window_seconds: float = 60.0,
        max_tracked_callers: int = 10000,
    ) -> None:
        self._limits = {
            CallerTier.STANDARD: standard_limit,
            CallerTier.ELEVATED: elevated_limit,
        }
        self._window_seconds = window_seconds
        self._max_tracked_callers = max_tracked_callers
        self._records: Dict[str, QuotaRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, caller_id: str) -> bool:
        return caller_id in self._records

    def limit_for(self, tier: CallerTier) -> int:
        """Return the per-window request limit for a tier."""
        return self._limits[tier]

    def admit(self, caller_id: str, tier: CallerTier) -> QuotaDecision:
        """Decide whether a caller may make another request.

        Admitted requests increment the caller's count; rejected requests
        leave it unchanged. This never raises.

        Args:
            caller_id: The caller's identifier (non-empty).
            tier: The caller's tier for this request.

        Returns:
            A QuotaDecision with the remaining quota, or the number of
            seconds until the window resets when rejected.
        """
        limit = self._limits[tier]

        with self._lock:
            now = time.time()
            record = self._records.get(caller_id)

            if record is None:
                if len(self._records) >= self._max_tracked_callers:
                    self._records.clear()
                self._records[caller_id] = QuotaRecord(
                    count=1, window_reset_at=now + self._window_seconds
                )
                return QuotaDecision(allowed=True, remaining=max(limit - 1, 0))

            self._roll_window(record, now)

            if record.count >= limit:
                retry_after = math.ceil(record.window_reset_at - now)
                return QuotaDecision(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=max(retry_after, 1),
                )

            record.count += 1
            return QuotaDecision(allowed=True, remaining=max(limit - record.count, 0))

    def remaining(self, caller_id: str, tier: CallerTier) -> int:
        """Return the caller's remaining quota without consuming any."""
        limit = self._limits[tier]
        with self._lock:
            record = self._records.get(caller_id)
            if record is None or time.time() >= record.window_reset_at:
                return limit
            return max(limit - record.count, 0)

    def refund(self, caller_id: str) -> Optional[int]:
        """Give back one admission in the caller's current window.

        Returns the caller's new count, or None if the caller is unknown or
        their window has already expired.
        """
        with self._lock:
            record = self._records.get(caller_id)
            if record is None or time.time() >= record.window_reset_at:
                return None
            record.count = max(record.count - 1, 0)
            return record.count

    def reset(self) -> None:
        """Forget every tracked caller."""
        with self._lock:
            self._records.clear()

    def _roll_window(self, record: QuotaRecord, now: float) -> None:
        """Start a fresh window if the current one has expired."""
        if now >= record.window_reset_at:
            record.count = 0
            record.window_reset_at = now + self._window_seconds
