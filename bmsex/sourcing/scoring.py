"""
Quote Scoring

Weighted scoring of responding vendor quotes for one damage line.

Components (each in [0, 1]):
- price: how far below the line's average price the quote sits
- reliability: the vendor's reliability history, 0.5 when unknown
- lead_time: relative to the slowest responding vendor
- part_type: closeness to the preferred part type in the hierarchy

Ranking is by score, then lower price, then shorter lead time, then
vendor id, so equal scores always order the same way.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from bmsex.models.estimate import SourceType
from bmsex.models.sourcing import ScoredQuote, VendorQuoteResult
from bmsex.sourcing.classifier import type_distance

UNKNOWN_RELIABILITY = 0.5
UNKNOWN_TYPE_MATCH = 0.5
TYPE_STEP_PENALTY = 0.25


@dataclass
class ScoringWeights:
    """Score weights; they are normalized to sum to 1"""
    price: float = 0.4
    reliability: float = 0.3
    lead_time: float = 0.2
    part_type: float = 0.1

    def __post_init__(self):
        if min(self.price, self.reliability, self.lead_time, self.part_type) < 0:
            raise ValueError("Scoring weights must not be negative")
        if self.total <= 0:
            raise ValueError("At least one scoring weight must be positive")

    @property
    def total(self) -> float:
        return self.price + self.reliability + self.lead_time + self.part_type

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ScoringWeights':
        data = data or {}
        defaults = cls()
        return cls(
            price=float(data.get('price', defaults.price)),
            reliability=float(data.get('reliability', defaults.reliability)),
            lead_time=float(data.get('lead_time', defaults.lead_time)),
            part_type=float(data.get('part_type', defaults.part_type)),
        )


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def price_component(price: Decimal, average: Decimal) -> float:
    if average <= 0:
        return 1.0
    return _clamp(float(2 - price / average))


def lead_time_component(lead_time: Optional[int], max_lead: int) -> float:
    if lead_time is None:
        return 0.0
    if max_lead <= 0:
        return 1.0
    return _clamp((max_lead - lead_time) / max_lead)


def type_match_component(preferred: SourceType, offered: Optional[SourceType]) -> float:
    distance = type_distance(preferred, offered)
    if distance is None:
        return UNKNOWN_TYPE_MATCH
    return max(0.0, 1 - TYPE_STEP_PENALTY * distance)


def _rank_key(scored: ScoredQuote):
    quote = scored.quote
    lead = quote.lead_time_days if quote.lead_time_days is not None else float('inf')
    return (-scored.score, quote.price, lead, quote.vendor_id)


def score_quotes(
    quotes: Sequence[VendorQuoteResult],
    preferred_type: SourceType,
    weights: Optional[ScoringWeights] = None
) -> List[ScoredQuote]:
    """
    Score and rank responding quotes.

    Args:
        quotes: Quotes for one line; non-responding ones are ignored
        preferred_type: Part type chosen by the classifier
        weights: Component weights

    Returns:
        ScoredQuote list, best first
    """
    weights = weights or ScoringWeights()
    responding = [q for q in quotes if q.responded]
    if not responding:
        return []

    average = sum((q.price for q in responding), Decimal('0')) / len(responding)
    leads = [q.lead_time_days for q in responding if q.lead_time_days is not None]
    max_lead = max(leads) if leads else 0
    all_equal = len(set(leads)) <= 1

    scored = []
    for quote in responding:
        breakdown = {
            'price': price_component(quote.price, average),
            'reliability': _clamp(
                quote.reliability_score if quote.reliability_score is not None else UNKNOWN_RELIABILITY
            ),
            'lead_time': 1.0 if all_equal and quote.lead_time_days is not None
            else lead_time_component(quote.lead_time_days, max_lead),
            'part_type': type_match_component(preferred_type, quote.part_type),
        }
        score = (
            breakdown['price'] * weights.price
            + breakdown['reliability'] * weights.reliability
            + breakdown['lead_time'] * weights.lead_time
            + breakdown['part_type'] * weights.part_type
        ) / weights.total
        scored.append(ScoredQuote(
            quote=quote,
            score=round(score, 4),
            breakdown={k: round(v, 4) for k, v in breakdown.items()},
        ))

    return sorted(scored, key=_rank_key)
