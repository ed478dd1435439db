"""
Scoring engines.

Pure, synchronous functions over a validated member-profile list:
- CompatibilityEngine: pairwise compatibility matrix
- StrengthDetector: collective strengths
- RiskPredictor: conflict risks
- GoalAlignmentEngine: shared and divergent goals
"""

from cohortlens.engines.compatibility import CompatibilityEngine
from cohortlens.engines.goals import GoalAlignmentEngine
from cohortlens.engines.risks import RiskPredictor
from cohortlens.engines.strengths import StrengthDetector

__all__ = [
    "CompatibilityEngine",
    "GoalAlignmentEngine",
    "RiskPredictor",
    "StrengthDetector",
]
