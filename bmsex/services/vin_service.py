"""
VIN Decoding Service

Decodes a VIN into a VehicleDescriptor:

1. Structural checks: 17 characters from the VIN alphabet, ISO 3779 check digit
2. Remote decode through a RemoteVinProvider, bounded by a timeout
3. Local fallback from the WMI table and the model-year code
4. An ``unknown`` descriptor when nothing can be derived

Decoding never raises. Results are cached by VIN; remote answers keep the
full TTL while local fallbacks are cached briefly so a transient outage
does not pin a weak answer for days.
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.connectors.nhtsa import DEFAULT_VPIC_URL, NHTSAVinProvider, RemoteVinProvider
from bmsex.exceptions import VINDecodeError
from bmsex.models.sourcing import DescriptorSource, VehicleDescriptor
from bmsex.utils.cache import TTLCache

logger = logging.getLogger(__name__)

VIN_PATTERN = re.compile(r'^[A-HJ-NPR-Z0-9]{17}$')

_WEIGHTS = (8, 7, 6, 5, 4, 3, 2, 10, 0, 9, 8, 7, 6, 5, 4, 3, 2)
_TRANSLITERATION = {
    'A': 1, 'B': 2, 'C': 3, 'D': 4, 'E': 5, 'F': 6, 'G': 7, 'H': 8,
    'J': 1, 'K': 2, 'L': 3, 'M': 4, 'N': 5, 'P': 7, 'R': 9,
    'S': 2, 'T': 3, 'U': 4, 'V': 5, 'W': 6, 'X': 7, 'Y': 8, 'Z': 9,
}

# Position 10 codes; index 0 is 1980 and the cycle repeats every 30 years
_YEAR_CODES = 'ABCDEFGHJKLMNPRSTVWXY123456789'

# World manufacturer identifiers -> (manufacturer, make)
WMI_TABLE: Dict[str, Tuple[str, str]] = {
    '1HG': ('Honda of America', 'Honda'),
    '1H1': ('Honda of America', 'Honda'),
    '1H2': ('Honda of America', 'Honda'),
    '1H3': ('Honda of America', 'Honda'),
    '1H4': ('Honda of America', 'Honda'),
    '2HG': ('Honda of Canada', 'Honda'),
    '5FN': ('Honda of America', 'Honda'),
    'JHM': ('Honda Motor Co', 'Honda'),
    'JHL': ('Honda Motor Co', 'Honda'),
    '19U': ('Honda of America', 'Acura'),
    'JH4': ('Honda Motor Co', 'Acura'),
    '1NX': ('NUMMI', 'Toyota'),
    '2T1': ('Toyota Canada', 'Toyota'),
    '2T2': ('Toyota Canada', 'Lexus'),
    '4T1': ('Toyota Motor Manufacturing', 'Toyota'),
    '4T3': ('Toyota Motor Manufacturing', 'Toyota'),
    '5TD': ('Toyota Motor Manufacturing', 'Toyota'),
    'JTD': ('Toyota Motor Corporation', 'Toyota'),
    'JTH': ('Toyota Motor Corporation', 'Lexus'),
    'JTK': ('Toyota Motor Corporation', 'Scion'),
    'JTN': ('Toyota Motor Corporation', 'Toyota'),
    '1FA': ('Ford Motor Company', 'Ford'),
    '1FB': ('Ford Motor Company', 'Ford'),
    '1FC': ('Ford Motor Company', 'Ford'),
    '1FD': ('Ford Motor Company', 'Ford'),
    '1FM': ('Ford Motor Company', 'Ford'),
    '1FT': ('Ford Motor Company', 'Ford'),
    '1FU': ('Freightliner', 'Freightliner'),
    '1FV': ('Freightliner', 'Freightliner'),
    '1LN': ('Ford Motor Company', 'Lincoln'),
    '1G1': ('General Motors', 'Chevrolet'),
    '1G2': ('General Motors', 'Pontiac'),
    '1G3': ('General Motors', 'Oldsmobile'),
    '1G4': ('General Motors', 'Buick'),
    '1G6': ('General Motors', 'Cadillac'),
    '1G8': ('General Motors', 'Saturn'),
    '1GC': ('General Motors', 'Chevrolet'),
    '1GT': ('General Motors', 'GMC'),
    '1C3': ('FCA US', 'Chrysler'),
    '1C4': ('FCA US', 'Jeep'),
    '1C6': ('FCA US', 'Ram'),
    '1D7': ('FCA US', 'Dodge'),
    '1N4': ('Nissan North America', 'Nissan'),
    'JN1': ('Nissan Motor Co', 'Nissan'),
    '5YJ': ('Tesla', 'Tesla'),
    'KMH': ('Hyundai Motor Company', 'Hyundai'),
    'KNA': ('Kia Motors', 'Kia'),
    'JF1': ('Subaru', 'Subaru'),
    'JM1': ('Mazda', 'Mazda'),
    'WBA': ('BMW AG', 'BMW'),
    'WDB': ('Mercedes-Benz', 'Mercedes-Benz'),
    'WDD': ('Mercedes-Benz', 'Mercedes-Benz'),
    'WVW': ('Volkswagen AG', 'Volkswagen'),
    'WAU': ('Audi AG', 'Audi'),
    'YV1': ('Volvo Cars', 'Volvo'),
}

CONFIDENCE_LOCAL_FULL = 0.6
CONFIDENCE_LOCAL_PARTIAL = 0.4
CHECKSUM_PENALTY = 0.5
FALLBACK_CACHE_TTL_SECONDS = 300


def is_valid_format(vin: Optional[str]) -> bool:
    return bool(vin) and VIN_PATTERN.match(vin) is not None


def compute_check_digit(vin: str) -> str:
    """ISO 3779 check digit for a 17-character VIN ('X' stands for 10)"""
    total = 0
    for char, weight in zip(vin, _WEIGHTS):
        value = int(char) if char.isdigit() else _TRANSLITERATION[char]
        total += value * weight
    remainder = total % 11
    return 'X' if remainder == 10 else str(remainder)


def is_valid_check_digit(vin: str) -> bool:
    if not is_valid_format(vin):
        return False
    return vin[8] == compute_check_digit(vin)


def decode_model_year(vin: str, current_year: Optional[int] = None) -> Optional[int]:
    """
    Model year from position 10.

    A letter in position 7 selects the cycle starting 2010; a digit selects
    the cycle starting 1980. Years more than one ahead of ``current_year``
    are moved back one cycle.
    """
    if len(vin) < 10 or vin[9] not in _YEAR_CODES:
        return None
    year = 1980 + _YEAR_CODES.index(vin[9])
    if vin[6].isalpha():
        year += 30
    current_year = current_year or datetime.now().year
    if year > current_year + 1:
        year -= 30
    return year


def lookup_wmi(vin: str) -> Optional[Tuple[str, str]]:
    return WMI_TABLE.get(vin[:3])


class VINDecoder:
    """
    VIN decoder with remote lookup, local fallback and a TTL cache.

    Usage:
        decoder = VINDecoder()
        descriptor = await decoder.decode('1HGCM82633A123456')
    """

    def __init__(
        self,
        remote: Optional[RemoteVinProvider] = None,
        config: Optional[BMSEXConfig] = None,
        cache: Optional[TTLCache] = None,
        remote_enabled: Optional[bool] = None,
        timeout_seconds: Optional[float] = None,
        current_year: Optional[int] = None
    ):
        config = config or BMSEXConfig()
        vin_config = config.get('vin', {}) or {}

        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None
            else float(vin_config.get('remote_timeout_seconds', 5.0))
        )
        if remote_enabled is None:
            remote_enabled = vin_config.get('remote_enabled', True)
        # An explicitly injected provider is always used
        if remote is None and remote_enabled:
            remote = NHTSAVinProvider(
                base_url=vin_config.get('remote_url') or DEFAULT_VPIC_URL,
                timeout_seconds=self.timeout_seconds
            )
        self.remote = remote
        self.cache = cache or TTLCache(
            ttl_seconds=float(vin_config.get('cache_ttl_seconds', 2592000)),
            max_entries=int(vin_config.get('cache_max_entries', 10000))
        )
        self.current_year = current_year
        self._inflight: Dict[str, asyncio.Future] = {}
        self._stats = {
            'decodes': 0,
            'cache_hits': 0,
            'remote_successes': 0,
            'remote_failures': 0,
            'fallbacks': 0,
            'unknown': 0,
            'shared_lookups': 0,
        }

    async def decode(self, vin: Optional[str]) -> VehicleDescriptor:
        """
        Decode a VIN. Never raises.

        Args:
            vin: VIN as found on the estimate; may be missing or malformed

        Returns:
            VehicleDescriptor tagged with source and confidence
        """
        self._stats['decodes'] += 1
        vin = re.sub(r'[\s\-]', '', vin or '').upper()

        if not is_valid_format(vin):
            self._stats['unknown'] += 1
            return VehicleDescriptor.unknown(vin or None, note="VIN is missing or malformed")

        cached = self.cache.get(vin)
        if cached is not None:
            self._stats['cache_hits'] += 1
            return cached

        # Concurrent callers for the same VIN share one lookup
        pending = self._inflight.get(vin)
        if pending is None:
            pending = asyncio.ensure_future(self._resolve(vin))
            self._inflight[vin] = pending
            pending.add_done_callback(lambda _: self._inflight.pop(vin, None))
        else:
            self._stats['shared_lookups'] += 1
        return await asyncio.shield(pending)

    async def _resolve(self, vin: str) -> VehicleDescriptor:
        checksum_valid = is_valid_check_digit(vin)
        if not checksum_valid:
            logger.warning(f"VIN {vin} fails check digit validation; decoding with reduced confidence")

        descriptor = await self._decode_remote(vin)
        local = self._decode_local(vin)

        if descriptor is not None:
            self._stats['remote_successes'] += 1
            ttl = None
            if local is not None:
                descriptor = self._fill_from(descriptor, local)
        elif local is not None:
            self._stats['fallbacks'] += 1
            descriptor = local
            ttl = FALLBACK_CACHE_TTL_SECONDS
        else:
            self._stats['unknown'] += 1
            descriptor = VehicleDescriptor.unknown(vin, note="No remote answer and no local pattern match")
            ttl = FALLBACK_CACHE_TTL_SECONDS

        notes = list(descriptor.notes)
        confidence = descriptor.confidence
        if not checksum_valid:
            confidence *= CHECKSUM_PENALTY
            notes.append("Check digit mismatch")
        descriptor = descriptor.model_copy(update={
            'checksum_valid': checksum_valid,
            'confidence': round(confidence, 3),
            'notes': notes,
        })

        self.cache.set(vin, descriptor, ttl_seconds=ttl)
        return descriptor

    async def decode_many(self, vins: Iterable[Optional[str]]) -> List[VehicleDescriptor]:
        """Decode several VINs concurrently; duplicates are decoded once"""
        vins = list(vins)
        unique = list(dict.fromkeys(vins))
        results = await asyncio.gather(*(self.decode(v) for v in unique))
        by_vin = dict(zip(unique, results))
        return [by_vin[v] for v in vins]

    def stats(self) -> Dict[str, int]:
        return {**self._stats, 'cache_size': len(self.cache)}

    async def _decode_remote(self, vin: str) -> Optional[VehicleDescriptor]:
        if self.remote is None:
            return None
        try:
            return await asyncio.wait_for(self.remote.lookup(vin), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Remote VIN decode timed out after {self.timeout_seconds}s for {vin}")
        except VINDecodeError as e:
            logger.warning(f"Remote VIN decode failed for {vin}: {e}")
        except Exception as e:
            logger.warning(f"Unexpected remote VIN decode error for {vin}: {e}")
        self._stats['remote_failures'] += 1
        return None

    def _decode_local(self, vin: str) -> Optional[VehicleDescriptor]:
        wmi = lookup_wmi(vin)
        year = decode_model_year(vin, self.current_year)
        if wmi is None and year is None:
            return None
        manufacturer, make = wmi if wmi else (None, None)
        return VehicleDescriptor(
            vin=vin,
            year=year,
            make=make,
            manufacturer=manufacturer,
            source=DescriptorSource.LOCAL,
            confidence=CONFIDENCE_LOCAL_FULL if wmi and year else CONFIDENCE_LOCAL_PARTIAL,
            notes=["Decoded from local WMI and model-year tables"],
        )

    @staticmethod
    def _fill_from(descriptor: VehicleDescriptor, local: VehicleDescriptor) -> VehicleDescriptor:
        missing = {
            name: getattr(local, name)
            for name in ('year', 'make', 'manufacturer')
            if getattr(descriptor, name) is None and getattr(local, name) is not None
        }
        return descriptor.model_copy(update=missing) if missing else descriptor
