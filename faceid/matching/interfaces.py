"""
Matching Interfaces Module

Abstract interface for deciding whether a candidate descriptor belongs to the
enrolled face. The session depends only on this interface, so a matcher
for a real landmark or embedding model can replace the default one.

Usage:
    from faceid.matching.interfaces import MatchResult, DescriptorMatcher

    class AlwaysMatcher(DescriptorMatcher):
        def compare(self, candidate, template):
            return MatchResult(score=1.0, details={}, is_match=True)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict

from faceid.feature_extractor import FeatureDescriptor


@dataclass
class MatchResult:
    """
    Result of a matching operation.

    Attributes:
        score: Similarity score between 0.0 and 1.0.
               0.0 = completely different (no match)
               1.0 = perfect match
        details: Algorithm-specific details for logging and debugging.
                 Example: {"distances": [3.1, 4.0, 22.7], "votes": 2}
        is_match: Final decision. True = same face.
    """

    score: float
    details: Dict[str, Any]
    is_match: bool


class DescriptorMatcher(ABC):
    """
    Compares a candidate FeatureDescriptor with the enrolled one.

    Implementations are pure: no I/O, no stored state between calls.
    """

    @abstractmethod
    def compare(
        self, candidate: FeatureDescriptor, template: FeatureDescriptor
    ) -> MatchResult:
        """
        Compare two descriptors.

        Args:
            candidate: Descriptor captured during verification.
            template: Enrolled descriptor.

        Returns:
            MatchResult with the decision in is_match.
        """
        pass

    def match(self, candidate: FeatureDescriptor, template: FeatureDescriptor) -> bool:
        """Shortcut for compare(...).is_match."""
        return self.compare(candidate, template).is_match
