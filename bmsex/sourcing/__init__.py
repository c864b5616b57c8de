"""
Parts Sourcing

Components:
- classify_part: table-driven part classification with the OEM safety default
- score_quotes: weighted vendor ranking with a deterministic tie-break

The concurrent engine lives in ``bmsex.sourcing.engine`` and the draft PO
generator in ``bmsex.sourcing.purchase_orders``.
"""

from .classifier import classify_part
from .scoring import ScoringWeights, score_quotes

__all__ = [
    'classify_part',
    'ScoringWeights',
    'score_quotes',
]
