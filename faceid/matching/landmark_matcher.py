"""
Landmark Voting Matcher: accept a candidate when enough landmarks land close to
the enrolled ones.

Each of the first `compared_points` landmarks casts one vote if its
Euclidean distance to the enrolled landmark is strictly below
`distance_threshold` pixels. The candidate matches with at least `min_votes`
votes. Defaults (15 px, 3 points, 2 votes) are tuned for the geometric
placeholder extractor; other extractors need their own threshold.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np

from faceid.feature_extractor import N_LANDMARKS, FeatureDescriptor
from faceid.matching.interfaces import DescriptorMatcher, MatchResult

logger = logging.getLogger(__name__)


class LandmarkVotingMatcher(DescriptorMatcher):
    """Distance-threshold voting over leading landmark points."""

    def __init__(
        self,
        distance_threshold: float = 15.0,
        compared_points: int = 3,
        min_votes: int = 2,
    ):
        if not 1 <= compared_points <= N_LANDMARKS:
            raise ValueError(
                f"compared_points must be in [1, {N_LANDMARKS}], got {compared_points}"
            )
        if not 1 <= min_votes <= compared_points:
            raise ValueError(
                f"min_votes must be in [1, {compared_points}], got {min_votes}"
            )
        if distance_threshold <= 0:
            raise ValueError(f"distance_threshold must be positive, got {distance_threshold}")

        self.distance_threshold = float(distance_threshold)
        self.compared_points = compared_points
        self.min_votes = min_votes

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "LandmarkVotingMatcher":
        """Build from the "matching" config section."""
        if config is None:
            from faceid.config import get_matching_config

            config = get_matching_config()

        return cls(
            distance_threshold=config.get("distance_threshold", 15.0),
            compared_points=config.get("compared_points", 3),
            min_votes=config.get("min_votes", 2),
        )

    def compare(
        self, candidate: FeatureDescriptor, template: FeatureDescriptor
    ) -> MatchResult:
        n = self.compared_points
        deltas = candidate.points[:n].astype(np.float64) - template.points[:n].astype(np.float64)
        distances = np.linalg.norm(deltas, axis=1)

        votes = int(np.sum(distances < self.distance_threshold))
        is_match = votes >= self.min_votes

        logger.debug(
            f"Landmark votes: {votes}/{n} (need {self.min_votes}), "
            f"distances={np.round(distances, 2).tolist()}"
        )

        return MatchResult(
            score=votes / n,
            details={
                "method": "landmark_voting",
                "distances": [float(d) for d in distances],
                "votes": votes,
                "compared_points": n,
                "min_votes": self.min_votes,
                "distance_threshold": self.distance_threshold,
            },
            is_match=is_match,
        )
