"""
Attempt Ledger Module

Bounded log of verification outcomes, and the brute-force lockout derived
from it.

Lockout is never stored. It is recomputed on every query from the records
and the current time: the gate is locked while at least max_failures
failures fall inside the trailing window. Old failures slide out of the
window on their own, so there is no unlock operation.

Persisted form (ATTEMPTS_KEY), oldest first:
    [{"timestamp": "2024-05-01T10:00:00+00:00", "success": false,
      "source": "cli"}, ...]

Usage:
    from faceid.attempt_ledger import AttemptLedger, AttemptOutcome

    ledger = AttemptLedger(repo)
    ledger.record(AttemptOutcome.FAILURE)
    if ledger.is_locked_out():
        print(ledger.remaining_lockout_minutes())
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from faceid.repository import ATTEMPTS_KEY, AuthRepository

logger = logging.getLogger(__name__)


DEFAULT_MAX_FAILURES = 5
DEFAULT_WINDOW_MINUTES = 30
DEFAULT_CAPACITY = 20


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AttemptRecord:
    """
    One verification attempt.

    Attributes:
        timestamp: When the attempt completed (timezone-aware UTC).
        outcome: SUCCESS or FAILURE.
        source: Optional identifier of the host that made the attempt.
    """

    timestamp: datetime
    outcome: AttemptOutcome
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "success": self.outcome is AttemptOutcome.SUCCESS,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttemptRecord":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        outcome = AttemptOutcome.SUCCESS if data["success"] else AttemptOutcome.FAILURE
        return cls(timestamp=timestamp, outcome=outcome, source=data.get("source"))


class AttemptLedger:
    """
    Append-only, capacity-bounded attempt history with derived lockout.

    Attributes:
        max_failures: Failures inside the window that trigger lockout.
        window: Trailing lockout window.
        capacity: Maximum records kept; the oldest is evicted first.
    """

    def __init__(
        self,
        repo: AuthRepository,
        max_failures: int = DEFAULT_MAX_FAILURES,
        window_minutes: float = DEFAULT_WINDOW_MINUTES,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_failures < 1:
            raise ValueError(f"max_failures must be >= 1, got {max_failures}")
        if capacity < max_failures:
            raise ValueError(
                f"capacity ({capacity}) must be at least max_failures ({max_failures})"
            )

        self.repo = repo
        self.max_failures = max_failures
        self.window = timedelta(minutes=window_minutes)
        self.capacity = capacity
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        repo: AuthRepository,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "AttemptLedger":
        """Build from the "lockout" config section."""
        if config is None:
            from faceid.config import get_lockout_config

            config = get_lockout_config()

        return cls(
            repo,
            max_failures=config.get("max_failures", DEFAULT_MAX_FAILURES),
            window_minutes=config.get("window_minutes", DEFAULT_WINDOW_MINUTES),
            capacity=config.get("ledger_capacity", DEFAULT_CAPACITY),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(
        self, outcome: AttemptOutcome, source: Optional[str] = None
    ) -> AttemptRecord:
        """Append an outcome stamped with the current time."""
        entry = AttemptRecord(timestamp=self.clock(), outcome=outcome, source=source)

        records = self._load()
        records.append(entry)
        self._store(records)

        logger.info(f"Recorded {outcome.value} attempt")
        return entry

    def clear(self) -> None:
        self.repo.clear(ATTEMPTS_KEY)
        logger.info("Attempt ledger cleared")

    def seed_failures(
        self, count: int, now: Optional[datetime] = None, source: str = "simulated"
    ) -> List[AttemptRecord]:
        """
        Replace the ledger with count failures spaced one minute apart,
        the most recent at now. Used to exercise the lockout path.
        """
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")

        now = now or self.clock()
        records = [
            AttemptRecord(
                timestamp=now - timedelta(minutes=count - 1 - i),
                outcome=AttemptOutcome.FAILURE,
                source=source,
            )
            for i in range(count)
        ]
        self._store(records)

        logger.info(f"Simulated {count} failed attempts")
        return self.records()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def records(self) -> Tuple[AttemptRecord, ...]:
        """All records, oldest first."""
        return tuple(self._load())

    def recent_failures(self, now: Optional[datetime] = None) -> int:
        """Number of failures inside the lockout window."""
        return len(self._window_failures(now or self.clock()))

    def is_locked_out(self, now: Optional[datetime] = None) -> bool:
        return self.recent_failures(now) >= self.max_failures

    def remaining_lockout_minutes(self, now: Optional[datetime] = None) -> int:
        """
        Whole minutes until the lockout lifts, rounded up.

        The lockout ends one window after the max_failures-th most recent
        failure, which is the point where it leaves the window.

        Returns:
            0 when not locked out.
        """
        now = now or self.clock()
        failures = self._window_failures(now)
        if len(failures) < self.max_failures:
            return 0

        failures.sort(reverse=True)
        lockout_end = failures[self.max_failures - 1] + self.window
        remaining = (lockout_end - now).total_seconds()
        if remaining <= 0:
            return 0
        return math.ceil(remaining / 60)

    def _window_failures(self, now: datetime) -> List[datetime]:
        return [
            r.timestamp
            for r in self._load()
            if r.outcome is AttemptOutcome.FAILURE and now - r.timestamp < self.window
        ]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> List[AttemptRecord]:
        raw = self.repo.get(ATTEMPTS_KEY)
        if not raw:
            return []

        try:
            return [AttemptRecord.from_dict(item) for item in json.loads(raw)]
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Attempt ledger is unreadable, treating as empty: {e}")
            return []

    def _store(self, records: List[AttemptRecord]) -> None:
        if len(records) > self.capacity:
            records = records[-self.capacity:]
        self.repo.set(ATTEMPTS_KEY, json.dumps([r.to_dict() for r in records]))
