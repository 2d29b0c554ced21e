# Intel Module - Scoring
#
# Pure computations over scanned items: static risk assessment of a
# single item, and classification plus relevance of baseline diffs.

from .change_detector import Change, ChangeDetail, ChangeDetector, ChangeType
from .risk_scorer import RiskAssessment, RiskDetail, RiskScorer, RiskSeverity

__all__ = [
    "RiskScorer",
    "RiskAssessment",
    "RiskDetail",
    "RiskSeverity",
    "ChangeDetector",
    "Change",
    "ChangeDetail",
    "ChangeType",
]
