from .affinity import (
    AffinityClassifier,
    ExplicitPhaseClassifier,
    KeywordAffinityClassifier,
)
from .scorer import (
    AssignmentCandidate,
    AssignmentExplanation,
    AssignmentScorer,
    CandidateScore,
)

__all__ = [
    "AffinityClassifier",
    "AssignmentCandidate",
    "AssignmentExplanation",
    "AssignmentScorer",
    "CandidateScore",
    "ExplicitPhaseClassifier",
    "KeywordAffinityClassifier",
]
