"""
BMS Parser

Parses collision-estimate XML into a fixed-shape EstimateDocument.

Features:
- CIECA BMS (VehicleDamageEstimateAddRq) plus the simpler BMS_ESTIMATE,
  Estimate and estimateData dialects
- Namespace-agnostic, case-insensitive element lookup
- Configurable input size limit checked before any parsing
- Hardened lxml parser (no entity resolution, no network, no DTD loading)
- Unparseable money fields are recorded, not coerced, so the validator can
  flag them

Usage:
    parser = BMSParser({'max_bytes': 10 * 1024 * 1024})
    estimate = parser.parse(xml_bytes)
"""

import logging
import os
import re
from decimal import Decimal, ROUND_HALF_UP
from hashlib import sha256
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Union

from lxml import etree

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.exceptions import ParseError, ResourceLimitError
from bmsex.models.estimate import (
    Address,
    ClaimInfo,
    CustomerInfo,
    DamageLine,
    EstimateDocument,
    EstimateFormat,
    EstimateTotals,
    LineType,
    ParseStatus,
    SpecialRequirements,
    TaxDetails,
    VehicleInfo,
)
from bmsex.processors.base import BaseProcessor, EstimateUpload, ProcessingResult
from bmsex.processors.bms.normalizer import (
    normalize_amount,
    normalize_bool,
    normalize_date,
    normalize_email,
    normalize_int,
    normalize_phone,
    normalize_quantity,
    normalize_source_type,
    normalize_text,
    normalize_vin,
)
from bmsex.sourcing.classifier import determine_category

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 50 * 1024 * 1024

ROOT_FORMATS = {
    'vehicledamageestimateaddrq': EstimateFormat.CIECA_BMS,
    'bms_estimate': EstimateFormat.BMS_ESTIMATE,
    'estimate': EstimateFormat.SIMPLE_ESTIMATE,
    'estimatedata': EstimateFormat.ESTIMATE_DATA,
    'estimateinfo': EstimateFormat.ESTIMATE_DATA,
}

KNOWN_SECTIONS = {
    'documentinfo', 'applicationinfo', 'eventinfo', 'admininfo', 'claiminfo',
    'vehicleinfo', 'damagelineinfo', 'repairtotalsinfo', 'refclaimnum', 'rquid',
    'profileinfo', 'estimatorids', 'repairordernum', 'specialrequirements',
    'customer', 'vehicle', 'insurance', 'estimateinfo', 'lineitems', 'totals',
    'customer_info', 'vehicle_info', 'claim_info', 'damage_assessment',
    'claimnumber', 'policynumber',
}

_RO_PATTERN = re.compile(r'RO\s*:\s*(\d+)', re.IGNORECASE)

Node = etree._Element


def _local_name(node: Node) -> Optional[str]:
    if not isinstance(node.tag, str):
        return None
    return etree.QName(node).localname


def _children(node: Optional[Node], name: str) -> List[Node]:
    if node is None:
        return []
    wanted = name.lower()
    return [
        child for child in node
        if isinstance(child.tag, str) and _local_name(child).lower() == wanted
    ]


def _find(node: Optional[Node], *path: str) -> Optional[Node]:
    """Follow ``path`` taking the first matching child at each step"""
    current = node
    for step in path:
        matches = _children(current, step)
        if not matches:
            return None
        current = matches[0]
    return current


def _find_all(node: Optional[Node], *path: str) -> List[Node]:
    """All children matching the last step of ``path``"""
    if not path:
        return []
    parent = _find(node, *path[:-1]) if len(path) > 1 else node
    return _children(parent, path[-1])


def _raw(node: Optional[Node], *path: str) -> Optional[str]:
    target = _find(node, *path) if path else node
    if target is None:
        return None
    return ''.join(t for t in target.itertext() if isinstance(t, str)) if len(target) == 0 else target.text


def _text(node: Optional[Node], *path: str) -> Optional[str]:
    return normalize_text(_raw(node, *path))


def _first(*values: Optional[Any]) -> Optional[Any]:
    for value in values:
        if value is not None:
            return value
    return None


class _DocumentReader:
    """Extraction state for a single parse call"""

    def __init__(self, root: Node, estimate_format: EstimateFormat):
        self.root = root
        self.format = estimate_format
        self.invalid_values: Dict[str, str] = {}

    # Value helpers

    def money(self, raw: Optional[str], path: str) -> Optional[Decimal]:
        try:
            return normalize_amount(raw)
        except ValueError:
            self.invalid_values[path] = raw.strip()
            return None

    def quantity(self, raw: Optional[str], path: str) -> Optional[Decimal]:
        try:
            return normalize_quantity(raw)
        except ValueError:
            self.invalid_values[path] = raw.strip()
            return None

    def hours(self, raw: Optional[str], path: str) -> Optional[Decimal]:
        try:
            return normalize_amount(raw, places=1)
        except ValueError:
            self.invalid_values[path] = raw.strip()
            return None

    # Sections

    def document_info(self) -> Dict[str, Optional[str]]:
        info = _find(self.root, 'DocumentInfo')
        return {
            'document_id': _first(_text(info, 'DocumentID'), _text(self.root, 'EstimateInfo', 'EstimateID')),
            'created_at': normalize_date(_first(
                _text(info, 'CreateDateTime'),
                _text(self.root, 'EstimateInfo', 'EstimateDate'),
                _text(self.root, 'EstimateInfo', 'Date'),
            )),
            'vendor_code': _text(info, 'VendorCode'),
            'bms_version': _text(info, 'BMSVer'),
            'currency': _first(_text(info, 'CurrencyInfo', 'CurCode'), 'USD'),
            'estimate_number': _first(
                _text(self.root, 'EstimateInfo', 'EstimateNumber'),
                _text(info, 'DocumentID'),
            ),
        }

    def customer(self) -> CustomerInfo:
        simple = _find(self.root, 'Customer')
        if simple is not None:
            return CustomerInfo(
                first_name=_text(simple, 'FirstName'),
                last_name=_text(simple, 'LastName'),
                phone=normalize_phone(_text(simple, 'Phone')),
                email=normalize_email(_text(simple, 'Email')),
                address=self._simple_address(_find(simple, 'Address'), simple),
            )

        legacy = _find(self.root, 'CUSTOMER_INFO')
        if legacy is not None:
            address = _find(legacy, 'ADDRESS')
            return CustomerInfo(
                first_name=_text(legacy, 'FIRST_NAME'),
                last_name=_text(legacy, 'LAST_NAME'),
                phone=normalize_phone(_text(legacy, 'PHONE')),
                email=normalize_email(_text(legacy, 'EMAIL')),
                address=Address(
                    line1=_text(address, 'STREET'),
                    city=_text(address, 'CITY'),
                    state=_text(address, 'STATE'),
                    postal_code=_text(address, 'ZIP'),
                ) if address is not None else None,
            )

        for role in ('Owner', 'PolicyHolder'):
            party = _find(self.root, 'AdminInfo', role, 'Party')
            if party is None:
                continue
            customer = self._party(party)
            if customer.full_name:
                return customer
        return CustomerInfo()

    def _simple_address(self, address: Optional[Node], parent: Node) -> Optional[Address]:
        source = address if address is not None and len(address) else parent
        result = Address(
            line1=_first(_text(source, 'Street'), _text(source, 'Address1'),
                         _text(address) if address is not None and not len(address) else None),
            city=_text(source, 'City'),
            state=_text(source, 'State'),
            postal_code=_first(_text(source, 'Zip'), _text(source, 'PostalCode')),
        )
        if not any(result.model_dump().values()):
            return None
        return result

    def _party(self, party: Node) -> CustomerInfo:
        person = _find(party, 'PersonInfo', 'PersonName')
        phones: Dict[str, Optional[str]] = {}
        email = None
        for comm in _find_all(party, 'ContactInfo', 'Communications'):
            qualifier = (_text(comm, 'CommQualifier') or '').upper()
            if qualifier == 'EM':
                email = email or normalize_email(_text(comm, 'CommEmail'))
            elif qualifier in ('HP', 'WP', 'CP', 'MP'):
                phones.setdefault(qualifier, normalize_phone(_text(comm, 'CommPhone')))

        addr = _find(party, 'PersonInfo', 'Communications', 'Address')
        address = None
        if addr is not None:
            address = Address(
                line1=_text(addr, 'Address1'),
                line2=_text(addr, 'Address2'),
                city=_text(addr, 'City'),
                state=_text(addr, 'StateProvince'),
                postal_code=_text(addr, 'PostalCode'),
                country=_text(addr, 'Country'),
            )

        mobile = _first(phones.get('CP'), phones.get('MP'))
        return CustomerInfo(
            first_name=_text(person, 'FirstName'),
            last_name=_text(person, 'LastName'),
            company_name=_text(party, 'OrgInfo', 'CompanyName'),
            phone=_first(phones.get('HP'), mobile, phones.get('WP')),
            work_phone=phones.get('WP'),
            mobile_phone=mobile,
            email=email,
            address=address,
        )

    def _adjuster_name(self, adjuster: Optional[Node]) -> Optional[str]:
        if adjuster is None:
            return None
        if len(adjuster):
            return _text(adjuster, 'Name')
        return _text(adjuster)

    def claim(self) -> ClaimInfo:
        insurance = _find(self.root, 'Insurance')
        legacy = _find(self.root, 'CLAIM_INFO')
        claim_info = _find(self.root, 'ClaimInfo')

        adjuster_party = _find(self.root, 'AdminInfo', 'Adjuster', 'Party')
        adjuster = self._party(adjuster_party) if adjuster_party is not None else None
        simple_adjuster = _find(insurance, 'Adjuster')

        deductible = None
        waived = False
        deductible_info = _find(claim_info, 'PolicyInfo', 'CoverageInfo', 'Coverage', 'DeductibleInfo')
        if deductible_info is not None:
            deductible = self.money(_raw(deductible_info, 'DeductibleAmt'), 'claim.deductible')
            status = (_text(deductible_info, 'DeductibleStatus') or '').lower()
            waived = 'waive' in status or (deductible == 0 and 'no deductible' in status)
        elif insurance is not None and _find(insurance, 'Deductible') is not None:
            deductible = self.money(_raw(insurance, 'Deductible'), 'claim.deductible')
        else:
            for adjustment in _find_all(self.root, 'RepairTotalsInfo', 'Adjustments'):
                if 'deductible' in (_text(adjustment, 'AdjustmentDesc') or '').lower():
                    amount = self.money(_raw(adjustment, 'AdjustmentAmt'), 'claim.deductible')
                    deductible = abs(amount) if amount is not None else None
                    break

        return ClaimInfo(
            claim_number=_first(
                _text(self.root, 'RefClaimNum'),
                _text(claim_info, 'ClaimNum'),
                _text(insurance, 'ClaimNumber'),
                _text(legacy, 'CLAIM_NUMBER'),
                _text(self.root, 'ClaimNumber'),
            ),
            policy_number=_first(
                _text(claim_info, 'PolicyInfo', 'PolicyNum'),
                _text(insurance, 'PolicyNumber'),
                _text(legacy, 'POLICY_NUMBER'),
                _text(self.root, 'PolicyNumber'),
            ),
            insurance_company=_first(
                _text(self.root, 'AdminInfo', 'InsuranceCompany', 'Party', 'OrgInfo', 'CompanyName'),
                _text(insurance, 'Company'),
                _text(legacy, 'INSURANCE_COMPANY'),
            ),
            adjuster_name=_first(
                adjuster.full_name if adjuster else None,
                self._adjuster_name(simple_adjuster),
            ),
            adjuster_phone=adjuster.phone if adjuster else None,
            adjuster_email=adjuster.email if adjuster else None,
            loss_date=normalize_date(_text(claim_info, 'LossInfo', 'Facts', 'LossDateTime')),
            deductible=deductible,
            deductible_waived=waived,
        )

    def vehicle(self) -> Optional[VehicleInfo]:
        simple = _find(self.root, 'Vehicle')
        if simple is not None:
            return VehicleInfo(
                vin=normalize_vin(_text(simple, 'VIN')),
                year=normalize_int(_text(simple, 'Year')),
                make=_text(simple, 'Make'),
                model=_text(simple, 'Model'),
                trim=_text(simple, 'Trim'),
                license_plate=_first(_text(simple, 'LicensePlate'), _text(simple, 'License')),
                color=_text(simple, 'Color'),
                mileage=normalize_int(_text(simple, 'Mileage')),
                engine=_first(_text(simple, 'EngineType'), _text(simple, 'Engine')),
                transmission=_text(simple, 'Transmission'),
                drivetrain=_text(simple, 'Drivetrain'),
            )

        legacy = _find(self.root, 'VEHICLE_INFO')
        if legacy is not None:
            return VehicleInfo(
                vin=normalize_vin(_text(legacy, 'VIN')),
                year=normalize_int(_text(legacy, 'YEAR')),
                make=_text(legacy, 'MAKE'),
                model=_text(legacy, 'MODEL'),
                trim=_text(legacy, 'TRIM'),
                license_plate=_text(legacy, 'LICENSE_PLATE'),
                color=_text(legacy, 'COLOR'),
                mileage=normalize_int(_text(legacy, 'MILEAGE')),
                engine=_text(legacy, 'ENGINE'),
                transmission=_text(legacy, 'TRANSMISSION'),
            )

        info = _find(self.root, 'VehicleInfo')
        if info is None:
            return None
        desc = _find(info, 'VehicleDesc')
        powertrain = _find(info, 'Powertrain')
        return VehicleInfo(
            vin=normalize_vin(_text(info, 'VINInfo', 'VIN', 'VINNum')),
            year=normalize_int(_text(desc, 'ModelYear')),
            make=_text(desc, 'MakeDesc'),
            model=_text(desc, 'ModelName'),
            trim=_text(desc, 'SubModelDesc'),
            body_style=_first(_text(info, 'Body', 'BodyStyle'), _text(desc, 'BodyStyle')),
            license_plate=_text(info, 'License', 'LicensePlateNum'),
            license_state=_text(info, 'License', 'LicensePlateStateProvince'),
            color=_text(info, 'Paint', 'Exterior', 'Color', 'ColorName'),
            mileage=normalize_int(_text(desc, 'OdometerInfo', 'OdometerReading')),
            engine=_text(powertrain, 'EngineDesc'),
            transmission=_first(
                _text(powertrain, 'TransmissionInfo', 'TransmissionDesc'),
                _text(powertrain, 'TransmissionDesc'),
            ),
            drivetrain=_text(powertrain, 'DriveTrainDesc'),
        )

    def ro_number(self) -> Optional[str]:
        memo = _text(self.root, 'VehicleInfo', 'VehicleDesc', 'VehicleDescMemo')
        if memo:
            match = _RO_PATTERN.search(memo)
            if match:
                return match.group(1)
        return _first(
            _text(self.root, 'RepairOrderNum'),
            _text(self.root, 'DocumentInfo', 'RepairOrderNum'),
        )

    def damage_lines(self) -> List[DamageLine]:
        if self.format == EstimateFormat.CIECA_BMS or _find(self.root, 'DamageLineInfo') is not None:
            return [self._cieca_line(el, idx) for idx, el in enumerate(_find_all(self.root, 'DamageLineInfo'), start=1)]
        legacy = _find_all(self.root, 'DAMAGE_ASSESSMENT', 'DAMAGE_LINES', 'LINE_ITEM')
        if legacy:
            return [self._legacy_line(el, idx) for idx, el in enumerate(legacy, start=1)]
        return [self._simple_line(el, idx) for idx, el in enumerate(_find_all(self.root, 'LineItems', 'LineItem'), start=1)]

    def _line_number(self, raw: Optional[str], position: int) -> int:
        number = normalize_int(raw)
        return number if number is not None and number > 0 else position

    def _cieca_line(self, el: Node, position: int) -> DamageLine:
        number = self._line_number(_text(el, 'LineNum'), position)
        path = f"damage_lines[{number}]"
        description = _text(el, 'LineDesc') or ''
        part = _find(el, 'PartInfo')
        labor = _find(el, 'LaborInfo')
        other = _find(el, 'OtherChargesInfo')
        material_type = _text(el, 'MaterialType')

        values: Dict[str, Any] = {
            'line_number': number,
            'description': description,
            'category': determine_category(description),
        }
        if part is not None:
            values.update(
                line_type=LineType.PART,
                part_number=_text(part, 'PartNum'),
                oem_part_number=_text(part, 'OEMPartNum'),
                unit_cost=self.money(_raw(part, 'PartPrice'), f"{path}.unit_cost"),
                quantity=_first(self.quantity(_raw(part, 'Quantity'), f"{path}.quantity"), Decimal('1')),
                source_type=normalize_source_type(_text(part, 'PartType')),
                taxable=normalize_bool(_text(part, 'TaxableInd')),
            )
        elif material_type or other is not None:
            values.update(
                line_type=LineType.MATERIAL,
                part_number=material_type,
                unit_cost=self.money(_raw(other, 'Price'), f"{path}.unit_cost") if other is not None else None,
                taxable=normalize_bool(_text(other, 'TaxableInd')) if other is not None else True,
            )
        elif labor is not None:
            values['line_type'] = LineType.LABOR
        else:
            values['line_type'] = LineType.OTHER

        if labor is not None:
            values.update(
                labor_type=_text(labor, 'LaborType'),
                labor_operation=_text(labor, 'LaborOperation'),
                labor_hours=_first(self.hours(_raw(labor, 'LaborHours'), f"{path}.labor_hours"), Decimal('0')),
            )
        return DamageLine(**values)

    def _legacy_line(self, el: Node, position: int) -> DamageLine:
        number = self._line_number(_text(el, 'LINE_NUMBER'), position)
        path = f"damage_lines[{number}]"
        description = _text(el, 'PART_NAME') or ''
        return DamageLine(
            line_number=number,
            line_type=LineType.PART if _text(el, 'PART_NAME') else LineType.OTHER,
            description=description,
            part_number=_text(el, 'PART_NUMBER'),
            unit_cost=self.money(_raw(el, 'PART_COST'), f"{path}.unit_cost"),
            labor_hours=_first(self.hours(_raw(el, 'LABOR_HOURS'), f"{path}.labor_hours"), Decimal('0')),
            labor_operation=_text(el, 'OPERATION_TYPE'),
            source_type=normalize_source_type(_text(el, 'PART_TYPE')),
            category=determine_category(description),
        )

    def _simple_line(self, el: Node, position: int) -> DamageLine:
        number = self._line_number(_text(el, 'LineNumber'), position)
        path = f"damage_lines[{number}]"
        description = _text(el, 'Description') or ''
        kind = (_text(el, 'Type') or 'part').lower()
        line_type = {
            'part': LineType.PART,
            'labor': LineType.LABOR,
            'material': LineType.MATERIAL,
        }.get(kind, LineType.OTHER)

        quantity = _first(self.quantity(_raw(el, 'Quantity'), f"{path}.quantity"), Decimal('1'))
        unit_cost = self.money(_raw(el, 'UnitPrice'), f"{path}.unit_cost")
        if unit_cost is None and _raw(el, 'UnitPrice') is None:
            parts_amount = self.money(_raw(el, 'PartsAmount'), f"{path}.parts_amount")
            if parts_amount is not None and quantity:
                unit_cost = (parts_amount / quantity).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

        return DamageLine(
            line_number=number,
            line_type=line_type,
            description=description,
            part_number=_text(el, 'PartNumber'),
            oem_part_number=_text(el, 'OEMPartNumber'),
            quantity=quantity,
            unit_cost=unit_cost,
            labor_hours=_first(self.hours(_raw(el, 'LaborHours'), f"{path}.labor_hours"), Decimal('0')),
            labor_operation=_text(el, 'Operation'),
            source_type=normalize_source_type(_text(el, 'PartType')),
            category=determine_category(description),
        )

    def totals(self) -> EstimateTotals:
        values: Dict[str, Optional[Decimal]] = {}

        simple = _find(self.root, 'Totals')
        if simple is not None:
            for field, tag in (
                ('parts_total', 'PartsTotal'),
                ('labor_total', 'LaborTotal'),
                ('materials_total', 'MaterialsTotal'),
                ('tax_total', 'Tax'),
                ('gross_total', 'Subtotal'),
                ('net_total', 'GrandTotal'),
            ):
                values[field] = self.money(_raw(simple, tag), f"totals.{field}")

        legacy = _find(self.root, 'DAMAGE_ASSESSMENT')
        if legacy is not None:
            for field, tag in (
                ('parts_total', 'PARTS_TOTAL'),
                ('labor_total', 'LABOR_TOTAL'),
                ('tax_total', 'TAX_TOTAL'),
                ('net_total', 'TOTAL_ESTIMATE'),
            ):
                values[field] = _first(values.get(field), self.money(_raw(legacy, tag), f"totals.{field}"))

        repair = _find(self.root, 'RepairTotalsInfo')
        if repair is not None:
            for field, tag in (
                ('parts_total', 'PartsTotalsInfo'),
                ('labor_total', 'LaborTotalsInfo'),
                ('materials_total', 'OtherChargesTotalsInfo'),
            ):
                amounts = [
                    self.money(_raw(el, 'TotalAmt'), f"totals.{field}")
                    for el in _children(repair, tag)
                ]
                amounts = [a for a in amounts if a is not None]
                if amounts:
                    values[field] = sum(amounts, Decimal('0.00'))

            for summary in _children(repair, 'SummaryTotalsInfo'):
                total_type = _text(summary, 'TotalType') or ''
                sub_type = _text(summary, 'TotalSubType') or ''
                if (total_type, sub_type) == ('TOT', 'CE') or total_type == 'GrossTotal':
                    values['gross_total'] = self.money(_raw(summary, 'TotalAmt'), 'totals.gross_total')
                elif (total_type, sub_type) == ('TOT', 'TT') or total_type == 'NetTotal':
                    values['net_total'] = self.money(_raw(summary, 'TotalAmt'), 'totals.net_total')

        return EstimateTotals(**values)

    def tax_details(self) -> TaxDetails:
        gst = pst = None
        for adjustment in _find_all(self.root, 'RepairTotalsInfo', 'Adjustments'):
            if (_text(adjustment, 'AdjustmentType') or '').lower() != 'tax':
                continue
            desc = (_text(adjustment, 'AdjustmentDesc') or '').upper()
            if 'GST' in desc or 'FEDERAL' in desc:
                gst = self.money(_raw(adjustment, 'AdjustmentAmt'), 'tax_details.gst_amount')
            elif 'PST' in desc or 'PROVINCIAL' in desc:
                pst = self.money(_raw(adjustment, 'AdjustmentAmt'), 'tax_details.pst_amount')
        present = [v for v in (gst, pst) if v is not None]
        return TaxDetails(
            gst_amount=gst,
            pst_amount=pst,
            total_tax=sum(present, Decimal('0.00')) if present else None,
        )

    def special_requirements(self, lines: Iterable[DamageLine]) -> SpecialRequirements:
        adas = scan = alignment = False
        for line in lines:
            desc = line.description.lower()
            adas = adas or 'adas' in desc or 'calibration' in desc
            scan = scan or 'scan' in desc or 'diagnostic' in desc
            alignment = alignment or 'alignment' in desc or '4 wheel align' in desc

        flags = _find(self.root, 'SpecialRequirements')
        if flags is not None:
            adas = adas or normalize_bool(_text(flags, 'ADASCalibration'))
            scan = scan or normalize_bool(_text(flags, 'PostScan'))
            alignment = alignment or normalize_bool(_text(flags, 'FourWheelAlignment'))
        return SpecialRequirements(adas_calibration=adas, pre_post_scan=scan, wheel_alignment=alignment)

    def unknown_elements(self) -> List[str]:
        seen: List[str] = []
        for child in self.root:
            name = _local_name(child)
            if name and name.lower() not in KNOWN_SECTIONS and name not in seen:
                seen.append(name)
        return seen


class BMSParser(BaseProcessor):
    """
    Parses BMS estimate documents into EstimateDocument records.

    Parsing is synchronous CPU work; ``process`` wraps it for use in the
    async pipeline.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        max_bytes = self.config.get('max_bytes')
        if max_bytes is None:
            max_bytes = BMSEXConfig().get('parser.max_bytes', DEFAULT_MAX_BYTES)
        self.max_bytes = int(max_bytes)

    def can_process(self, document: EstimateUpload) -> bool:
        """Can process anything that looks like XML"""
        if document.filename and document.filename.lower().endswith('.xml'):
            return True
        if document.content_type and 'xml' in document.content_type.lower():
            return True
        return document.content.lstrip()[:1] == b'<'

    async def process(self, document: EstimateUpload) -> ProcessingResult:
        """
        Parse an uploaded document.

        Args:
            document: Raw upload

        Returns:
            ProcessingResult with the EstimateDocument as content
        """
        try:
            estimate = self.parse(document.content)
        except (ParseError, ResourceLimitError) as e:
            logger.warning(f"Failed to parse {document.filename or 'document'}: {e}")
            return ProcessingResult(success=False, error=str(e), exception=e)

        return ProcessingResult(
            success=True,
            content=estimate,
            metadata={
                'document_id': estimate.document_id,
                'estimate_format': estimate.estimate_format.value,
                'parse_status': estimate.parse_status.value,
                'line_count': len(estimate.damage_lines),
            }
        )

    def parse(self, content: Union[bytes, str]) -> EstimateDocument:
        """
        Parse raw document bytes.

        Args:
            content: XML bytes (str is encoded as UTF-8)

        Returns:
            EstimateDocument

        Raises:
            ResourceLimitError: If the input exceeds the configured size
            ParseError: If the XML is malformed or the root is not recognised
        """
        if isinstance(content, str):
            content = content.encode('utf-8')
        self._check_size(len(content))

        if not content.strip():
            raise ParseError("Document is empty")

        root = self._parse_xml(content)
        root_name = _local_name(root)
        estimate_format = ROOT_FORMATS.get((root_name or '').lower())
        if estimate_format is None:
            raise ParseError(f"Unrecognised root element: {root_name}")

        return self._build(root, estimate_format, content)

    def parse_file(self, path: Union[str, os.PathLike]) -> EstimateDocument:
        """Parse a file, refusing oversized files before reading them"""
        self._check_size(os.path.getsize(path))
        with open(path, 'rb') as f:
            return self.parse(f.read())

    def read_stream(self, stream: BinaryIO) -> bytes:
        """Read at most ``max_bytes`` from a stream, failing fast beyond that"""
        data = stream.read(self.max_bytes + 1)
        self._check_size(len(data))
        return data

    def _check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise ResourceLimitError(
                f"Document is {size} bytes; the limit is {self.max_bytes} bytes",
                limit=self.max_bytes,
                actual=size,
            )

    def _parse_xml(self, content: bytes) -> Node:
        parser = etree.XMLParser(
            resolve_entities=False,
            no_network=True,
            load_dtd=False,
            remove_comments=True,
            remove_pis=True,
            huge_tree=False,
        )
        try:
            root = etree.fromstring(content, parser)
        except etree.XMLSyntaxError as e:
            raise ParseError(f"Malformed XML: {e.msg}", line=e.lineno) from e
        if root is None:
            raise ParseError("Document has no root element")
        return root

    def _build(self, root: Node, estimate_format: EstimateFormat, content: bytes) -> EstimateDocument:
        reader = _DocumentReader(root, estimate_format)
        content_hash = sha256(content).hexdigest()

        info = reader.document_info()
        vehicle = reader.vehicle()
        lines = reader.damage_lines()
        claim = reader.claim()

        parse_status = ParseStatus.PARSED
        if vehicle is None or not lines:
            parse_status = ParseStatus.PARTIAL

        estimate = EstimateDocument(
            document_id=info['document_id'] or f"est_{content_hash[:16]}",
            claim_number=claim.claim_number,
            vendor_code=info['vendor_code'],
            created_at=info['created_at'],
            parse_status=parse_status,
            estimate_format=estimate_format,
            bms_version=info['bms_version'],
            currency=info['currency'],
            estimate_number=info['estimate_number'],
            ro_number=reader.ro_number(),
            content_hash=content_hash,
            customer=reader.customer(),
            vehicle=vehicle or VehicleInfo(),
            claim=claim,
            damage_lines=lines,
            totals=reader.totals(),
            tax_details=reader.tax_details(),
            special_requirements=reader.special_requirements(lines),
            invalid_values=dict(reader.invalid_values),
            unknown_elements=reader.unknown_elements(),
        )
        logger.debug(
            f"Parsed {estimate.document_id} ({estimate_format.value}): "
            f"{len(lines)} lines, status {parse_status.value}"
        )
        return estimate
