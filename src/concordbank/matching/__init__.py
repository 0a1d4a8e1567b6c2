"""Module de matching et rapprochement heuristique."""

from concordbank.matching.combinations import CombinationResult, find_best_combination
from concordbank.matching.linker import Linker, merge_suggestions
from concordbank.matching.schema import (
    CandidateEntry,
    CandidateMovement,
    ConfidenceLevel,
    MatchKind,
    MatchRun,
    MatchSuggestion,
    SuggestionStatus,
)
from concordbank.matching.similarity import similarity

__all__ = [
    "CandidateEntry",
    "CandidateMovement",
    "CombinationResult",
    "ConfidenceLevel",
    "Linker",
    "MatchKind",
    "MatchRun",
    "MatchSuggestion",
    "SuggestionStatus",
    "find_best_combination",
    "merge_suggestions",
    "similarity",
]
