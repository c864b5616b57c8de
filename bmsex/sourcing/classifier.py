"""
Part Classifier

Pure, table-driven classification of a damage line into a part type,
category and value tier.

Safety rule: a part whose description names a safety-critical system is
always classified OEM. A cheaper signal found on such a part (an
aftermarket keyword or a non-OEM part type code on the estimate) does not
change the type; it lowers the confidence instead, which sends the line
to approval.
"""

import re
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from bmsex.models.estimate import DamageLine, SourceType
from bmsex.models.sourcing import PartClassification

TYPE_KEYWORDS: Tuple[Tuple[SourceType, Tuple[str, ...]], ...] = (
    (SourceType.OEM, ('oem', 'oe', 'genuine', 'original')),
    (SourceType.AFTERMARKET, ('aftermarket', 'am', 'alt', 'capa')),
    (SourceType.RECYCLED, ('recycled', 'used', 'lkq', 'salvage')),
    (SourceType.REMANUFACTURED, ('reman', 'remanufactured', 'rebuilt')),
)

SAFETY_CRITICAL_TERMS: Tuple[str, ...] = (
    'airbag', 'air bag', 'brake', 'suspension', 'steering',
    'seatbelt', 'seat belt', 'sensor', 'radar', 'camera',
)

CATEGORY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('body', ('bumper', 'fender', 'door', 'hood', 'trunk', 'quarter', 'rocker', 'pillar', 'grille', 'panel')),
    ('lighting', ('headlight', 'headlamp', 'taillight', 'tail lamp', 'lamp', 'bulb', 'led')),
    ('glass', ('windshield', 'window', 'glass')),
    ('interior', ('seat', 'dashboard', 'console', 'carpet', 'trim')),
    ('mechanical', ('engine', 'transmission', 'brake', 'suspension', 'exhaust', 'radiator', 'condenser')),
    ('electrical', ('battery', 'alternator', 'starter', 'wiring', 'sensor', 'module')),
    ('wheels', ('wheel', 'rim', 'tire', 'hubcap')),
)

# Preference order used for type-match scoring; distance 0 is best
TYPE_HIERARCHY: Tuple[SourceType, ...] = (
    SourceType.OEM,
    SourceType.AFTERMARKET,
    SourceType.RECYCLED,
    SourceType.REMANUFACTURED,
)

CONFIDENCE_DECLARED = 0.95
CONFIDENCE_KEYWORD = 0.9
CONFIDENCE_SAFETY_DEFAULT = 0.8
CONFIDENCE_DEFAULT = 0.6
CONFIDENCE_CONFLICT = 0.4

HIGH_VALUE_THRESHOLD = Decimal('1000')
STANDARD_VALUE_THRESHOLD = Decimal('100')


def _tokens(text: str) -> Tuple[str, ...]:
    return tuple(re.findall(r'[a-z0-9]+', text.lower()))


def _contains_term(text: str, terms: Iterable[str]) -> Optional[str]:
    lowered = text.lower()
    for term in terms:
        if re.search(r'\b' + re.escape(term), lowered):
            return term
    return None


def keyword_type(text: str) -> Tuple[Optional[SourceType], Optional[str]]:
    """First part type whose keyword appears as a whole token in ``text``"""
    tokens = set(_tokens(text))
    for source_type, keywords in TYPE_KEYWORDS:
        for keyword in keywords:
            if keyword in tokens:
                return source_type, keyword
    return None, None


def determine_category(description: Optional[str]) -> str:
    """Category from the keyword table; ``general`` when nothing matches"""
    if not description:
        return 'general'
    for category, keywords in CATEGORY_KEYWORDS:
        if _contains_term(description, keywords):
            return category
    return 'general'


def determine_value_tier(amount: Optional[Decimal]) -> str:
    if amount is None:
        return 'standard'
    if amount >= HIGH_VALUE_THRESHOLD:
        return 'high_value'
    if amount >= STANDARD_VALUE_THRESHOLD:
        return 'standard'
    return 'bulk'


def is_safety_critical(description: Optional[str]) -> bool:
    return bool(description) and _contains_term(description, SAFETY_CRITICAL_TERMS) is not None


def type_distance(preferred: SourceType, offered: Optional[SourceType]) -> Optional[int]:
    """Distance in the preference hierarchy, or None when either side is unknown"""
    if offered is None or preferred not in TYPE_HIERARCHY or offered not in TYPE_HIERARCHY:
        return None
    return abs(TYPE_HIERARCHY.index(preferred) - TYPE_HIERARCHY.index(offered))


def classify_part(line: DamageLine) -> PartClassification:
    """
    Classify one damage line.

    Args:
        line: Parsed damage line

    Returns:
        PartClassification with type, category, value tier and confidence
    """
    description = line.description or ''
    category = determine_category(description)
    value_tier = determine_value_tier(line.extended_cost)
    safety = is_safety_critical(description)

    declared = line.source_type if line.source_type != SourceType.UNKNOWN else None
    hint_text = ' '.join(p for p in (description, line.part_number or '') if p)
    hinted, keyword = keyword_type(hint_text)

    if safety:
        cheaper = [t for t in (declared, hinted) if t is not None and t != SourceType.OEM]
        if cheaper:
            return PartClassification(
                part_type=SourceType.OEM,
                category=category,
                value_tier=value_tier,
                confidence=CONFIDENCE_CONFLICT,
                safety_critical=True,
                matched_keyword=keyword,
                reason=f"Safety-critical part kept OEM despite {cheaper[0].value} indication",
            )
        return PartClassification(
            part_type=SourceType.OEM,
            category=category,
            value_tier=value_tier,
            confidence=CONFIDENCE_DECLARED if declared else CONFIDENCE_SAFETY_DEFAULT,
            safety_critical=True,
            matched_keyword=keyword,
            reason="Safety-critical part defaults to OEM",
        )

    if declared is not None:
        return PartClassification(
            part_type=declared,
            category=category,
            value_tier=value_tier,
            confidence=CONFIDENCE_DECLARED,
            reason="Part type declared on estimate",
        )

    if hinted is not None:
        return PartClassification(
            part_type=hinted,
            category=category,
            value_tier=value_tier,
            confidence=CONFIDENCE_KEYWORD,
            matched_keyword=keyword,
            reason=f"Keyword '{keyword}' in description",
        )

    return PartClassification(
        part_type=SourceType.OEM,
        category=category,
        value_tier=value_tier,
        confidence=CONFIDENCE_DEFAULT,
        reason="No type indication; defaulted to OEM",
    )
