"""
Matching Module for Face ID

Components:
    - interfaces: MatchResult and the DescriptorMatcher interface
    - landmark_matcher: distance-threshold landmark voting (default)

Usage:
    from faceid.matching import LandmarkVotingMatcher
    matcher = LandmarkVotingMatcher.from_config()
    result = matcher.compare(candidate, template)
"""

from faceid.matching.interfaces import DescriptorMatcher, MatchResult
from faceid.matching.landmark_matcher import LandmarkVotingMatcher

__all__ = [
    "MatchResult",
    "DescriptorMatcher",
    "LandmarkVotingMatcher",
]
