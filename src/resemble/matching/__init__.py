"""Two-phase matching: candidate admission, then relatedness decision."""

from .admission import (
    CandidateAdmission,
    CandidateObservation,
    ScoredCandidate,
    TopKCandidates,
)
from .decision import RelatednessDecider
from .patterns import CallSite, MethodPattern, MethodType

__all__ = [
    "CallSite",
    "CandidateAdmission",
    "CandidateObservation",
    "MethodPattern",
    "MethodType",
    "RelatednessDecider",
    "ScoredCandidate",
    "TopKCandidates",
]
