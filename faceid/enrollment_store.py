"""
Enrollment Store Module

Holds the single enrolled face template: one FeatureDescriptor plus the
time it was enrolled. Re-enrolling overwrites it; reset removes it.

The descriptor, timestamp and enrolled flag are always written together in
one repository call, so a reader never sees a flag without a descriptor.

Usage:
    from faceid.enrollment_store import EnrollmentStore

    store = EnrollmentStore(repo)
    store.save(descriptor)
    template = store.load()
    if template:
        print(template.enrolled_at)
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from faceid.feature_extractor import FeatureDescriptor
from faceid.repository import (
    DESCRIPTOR_KEY,
    ENROLLED_AT_KEY,
    ENROLLED_FLAG_KEY,
    AuthRepository,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EnrolledTemplate:
    """
    The enrolled face.

    Attributes:
        descriptor: Reference descriptor compared against at verification.
        enrolled_at: When enrollment completed (timezone-aware UTC).
    """

    descriptor: FeatureDescriptor
    enrolled_at: datetime


class EnrollmentStore:
    """Persists at most one EnrolledTemplate through an AuthRepository."""

    def __init__(
        self,
        repo: AuthRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.clock = clock

    def save(self, descriptor: FeatureDescriptor) -> EnrolledTemplate:
        """Store descriptor as the enrolled template, stamped with now."""
        enrolled_at = self.clock()

        self.repo.set_many(
            {
                DESCRIPTOR_KEY: json.dumps(descriptor.to_list()),
                ENROLLED_AT_KEY: enrolled_at.isoformat(),
                ENROLLED_FLAG_KEY: "true",
            }
        )

        logger.info(f"Face enrolled at {enrolled_at.isoformat()}")
        return EnrolledTemplate(descriptor=descriptor, enrolled_at=enrolled_at)

    def load(self) -> Optional[EnrolledTemplate]:
        """
        Load the enrolled template.

        Returns:
            The template, or None if nothing is enrolled or the stored data
            cannot be read.
        """
        if self.repo.get(ENROLLED_FLAG_KEY) != "true":
            return None

        raw_descriptor = self.repo.get(DESCRIPTOR_KEY)
        if raw_descriptor is None:
            return None

        try:
            descriptor = FeatureDescriptor.from_list(json.loads(raw_descriptor))
        except (ValueError, TypeError) as e:
            logger.error(f"Stored face descriptor is unreadable: {e}")
            return None

        return EnrolledTemplate(
            descriptor=descriptor,
            enrolled_at=self._parse_enrolled_at(self.repo.get(ENROLLED_AT_KEY)),
        )

    def exists(self) -> bool:
        return (
            self.repo.get(ENROLLED_FLAG_KEY) == "true"
            and self.repo.get(DESCRIPTOR_KEY) is not None
        )

    def enrolled_at(self) -> Optional[datetime]:
        """Enrollment time, or None if not enrolled."""
        if not self.exists():
            return None
        return self._parse_enrolled_at(self.repo.get(ENROLLED_AT_KEY))

    def clear(self) -> None:
        self.repo.clear(DESCRIPTOR_KEY, ENROLLED_AT_KEY, ENROLLED_FLAG_KEY)
        logger.info("Enrollment cleared")

    def _parse_enrolled_at(self, raw: Optional[str]) -> datetime:
        if raw:
            try:
                return datetime.fromisoformat(raw)
            except ValueError:
                logger.warning(f"Invalid enrollment timestamp '{raw}'")
        # Timestamp missing or unreadable; the descriptor is still valid
        return datetime.fromtimestamp(0, tz=timezone.utc)
