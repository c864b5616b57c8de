"""
BMS Value Normalizer

Turns raw element text into typed values:
- Money and hours as Decimal with fixed precision (ROUND_HALF_UP)
- Quantities as Decimal
- Phone numbers as (XXX) XXX-XXXX when they have 10 digits
- Emails lower-cased
- VINs and part numbers as upper-case keys without separators
- Dates as ISO 8601

Money parsing never silently coerces garbage to zero: unparseable input
raises ValueError so the parser can record it for the validator.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from bmsex.models.estimate import SourceType

EMPTY_MARKERS = {'', 'n/a', 'null', 'none'}

# Integer digits allowed in an amount; matches the Numeric(12, 2) record columns
MAX_INTEGER_DIGITS = 10

_MONEY_STRIP = re.compile(r'[\s$€£,]')
_DATE_FORMATS = (
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%dT%H:%M:%S.%f',
    '%Y-%m-%dT%H:%M',
    '%Y-%m-%d',
    '%m/%d/%Y',
    '%m/%d/%Y %H:%M',
    '%Y%m%d',
)
_TRUE_VALUES = {'true', 'yes', 'y', '1', 'on'}


def normalize_text(value: Optional[str]) -> Optional[str]:
    """Strip, collapse internal whitespace and map empty markers to None"""
    if value is None:
        return None
    cleaned = ' '.join(str(value).split())
    if cleaned.lower() in EMPTY_MARKERS:
        return None
    return cleaned


def normalize_amount(value: Optional[str], places: int = 2) -> Optional[Decimal]:
    """
    Normalize a monetary amount.

    Accepts currency symbols, thousands separators and accounting-style
    negatives such as ``(12.50)``.

    Returns:
        Decimal rounded to ``places``, or None when the value is empty

    Raises:
        ValueError: If the text is present but not a number, or has more
            than MAX_INTEGER_DIGITS integer digits
    """
    text = normalize_text(value)
    if text is None:
        return None

    negative = text.startswith('(') and text.endswith(')')
    if negative:
        text = text[1:-1]
    cleaned = _MONEY_STRIP.sub('', text)

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Not a monetary amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    if amount and amount.adjusted() >= MAX_INTEGER_DIGITS:
        raise ValueError(f"Amount out of range: {value!r}")

    if negative:
        amount = -amount
    quantum = Decimal(1).scaleb(-places)
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def normalize_quantity(value: Optional[str]) -> Optional[Decimal]:
    """Quantities keep up to three decimal places"""
    return normalize_amount(value, places=3)


def normalize_int(value: Optional[str]) -> Optional[int]:
    text = normalize_text(value)
    if text is None:
        return None
    try:
        return int(Decimal(text.replace(',', '')))
    except (InvalidOperation, ValueError, OverflowError):
        return None


def normalize_bool(value: Optional[str]) -> bool:
    text = normalize_text(value)
    return bool(text) and text.lower() in _TRUE_VALUES


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Format North American numbers; anything else is returned as given"""
    text = normalize_text(value)
    if text is None:
        return None
    digits = re.sub(r'\D', '', text)
    if len(digits) == 11 and digits.startswith('1'):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return text


def normalize_email(value: Optional[str]) -> Optional[str]:
    text = normalize_text(value)
    return text.lower() if text else None


def normalize_vin(value: Optional[str]) -> Optional[str]:
    text = normalize_text(value)
    if text is None:
        return None
    return re.sub(r'[\s\-]', '', text).upper() or None


def normalize_part_number(value: Optional[str]) -> Optional[str]:
    """Sourcing key: separators removed, upper-cased"""
    text = normalize_text(value)
    if text is None:
        return None
    return re.sub(r'[\s\-./]', '', text).upper() or None


_SOURCE_TYPE_CODES = {
    'PAN': SourceType.OEM,
    'PAO': SourceType.OEM,
    'OEM': SourceType.OEM,
    'NEW': SourceType.OEM,
    'PAA': SourceType.AFTERMARKET,
    'AFTERMARKET': SourceType.AFTERMARKET,
    'AM': SourceType.AFTERMARKET,
    'PAL': SourceType.RECYCLED,
    'PAU': SourceType.RECYCLED,
    'LKQ': SourceType.RECYCLED,
    'USED': SourceType.RECYCLED,
    'RECYCLED': SourceType.RECYCLED,
    'PAM': SourceType.REMANUFACTURED,
    'REMAN': SourceType.REMANUFACTURED,
    'REMANUFACTURED': SourceType.REMANUFACTURED,
}


def normalize_source_type(value: Optional[str]) -> SourceType:
    """Map CIECA part type codes and free-text labels to a SourceType"""
    text = normalize_text(value)
    if text is None:
        return SourceType.UNKNOWN
    return _SOURCE_TYPE_CODES.get(text.upper(), SourceType.UNKNOWN)


def normalize_date(value: Optional[str]) -> Optional[str]:
    """
    Normalize a date or timestamp to ISO 8601.

    Timezone offsets are kept when present. Unrecognised text is returned
    unchanged rather than dropped.
    """
    text = normalize_text(value)
    if text is None:
        return None

    # Date-only input stays a date
    if len(text) == 10:
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError:
            pass

    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).isoformat()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt in ('%Y-%m-%d', '%m/%d/%Y', '%Y%m%d'):
            return parsed.date().isoformat()
        return parsed.isoformat()

    return text
