"""
NHTSA vPIC VIN Provider

Remote VIN decoding against the public vPIC ``decodevin`` endpoint.
The decoder wraps every lookup in its own deadline, so this provider
only has to turn HTTP and payload problems into VINDecodeError.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from bmsex.exceptions import VINDecodeError
from bmsex.models.sourcing import DescriptorSource, VehicleDescriptor

logger = logging.getLogger(__name__)

DEFAULT_VPIC_URL = "https://vpic.nhtsa.dot.gov/api/vehicles/decodevin"

# vPIC variable name -> descriptor field
_VARIABLE_MAP = {
    'Model Year': 'year',
    'Make': 'make',
    'Model': 'model',
    'Trim': 'trim',
    'Manufacturer Name': 'manufacturer',
    'Body Class': 'body_class',
}

_ENGINE_VARIABLES = ('Displacement (L)', 'Engine Number of Cylinders', 'Fuel Type - Primary')


class RemoteVinProvider(ABC):
    """Capability interface for a remote VIN decode service"""

    name: str = "remote"

    @abstractmethod
    async def lookup(self, vin: str) -> VehicleDescriptor:
        """
        Decode a VIN remotely.

        Raises:
            VINDecodeError: If the service fails or knows nothing about the VIN
        """
        pass


class NHTSAVinProvider(RemoteVinProvider):
    """
    vPIC decoder.

    Usage:
        provider = NHTSAVinProvider(timeout_seconds=5.0)
        descriptor = await provider.lookup('1HGCM82633A004352')
    """

    name = "nhtsa"

    def __init__(
        self,
        base_url: str = DEFAULT_VPIC_URL,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def lookup(self, vin: str) -> VehicleDescriptor:
        url = f"{self.base_url}/{vin}"
        try:
            if self._client is not None:
                response = await self._client.get(url, params={'format': 'json'})
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params={'format': 'json'})
        except httpx.HTTPError as e:
            raise VINDecodeError(f"vPIC request failed: {e}") from e

        if response.status_code != 200:
            raise VINDecodeError(f"vPIC returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise VINDecodeError("vPIC returned a non-JSON body") from e

        return self._to_descriptor(vin, payload)

    def _to_descriptor(self, vin: str, payload: Dict[str, Any]) -> VehicleDescriptor:
        values: Dict[str, str] = {}
        for item in payload.get('Results') or []:
            variable = item.get('Variable')
            value = item.get('Value')
            if variable and value not in (None, '', 'Not Applicable'):
                values[variable] = str(value).strip()

        if not values.get('Make'):
            raise VINDecodeError(f"vPIC has no make for VIN {vin}")

        fields: Dict[str, Any] = {}
        for variable, attr in _VARIABLE_MAP.items():
            if variable in values:
                fields[attr] = values[variable]
        if 'year' in fields:
            try:
                fields['year'] = int(fields['year'])
            except ValueError:
                del fields['year']

        engine = ' '.join(values[v] for v in _ENGINE_VARIABLES if v in values)
        if engine:
            fields['engine'] = engine

        logger.debug(f"vPIC decoded {vin}: {fields.get('make')} {fields.get('model')}")
        return VehicleDescriptor(
            vin=vin,
            source=DescriptorSource.REMOTE,
            confidence=0.95,
            **fields
        )
