"""
Estimate Validator

Validates a parsed EstimateDocument against field and business rules.

Every rule runs independently and all findings are collected in one pass,
so callers see the whole error surface at once. Findings are tiered:

- critical: blocks automated sourcing (missing VIN or claim number,
  unparseable money fields)
- warning: non-blocking (malformed email, missing optional data)
- info: completeness hints

Rule violations are returned as data; nothing here raises for bad input.
"""

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from bmsex.models.estimate import (
    EstimateDocument,
    FieldStatus,
    FieldVerdict,
    IssueSeverity,
    LineType,
    ParseStatus,
    ValidationIssue,
    ValidationResult,
    ValidationSummary,
)
from bmsex.processors.base import BaseProcessor, ProcessingResult
from bmsex.services.vin_service import VIN_PATTERN, is_valid_check_digit

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

MONEY_SUFFIXES = (
    'unit_cost', 'parts_amount', 'parts_total', 'labor_total', 'materials_total',
    'tax_total', 'gross_total', 'net_total', 'deductible', 'gst_amount', 'pst_amount',
)

# Fields that make an estimate complete enough to act on
RECOMMENDED_FIELDS: Tuple[Tuple[str, Callable[[EstimateDocument], Any]], ...] = (
    ('vehicle.vin', lambda d: d.vehicle.vin),
    ('vehicle.year', lambda d: d.vehicle.year),
    ('vehicle.make', lambda d: d.vehicle.make),
    ('vehicle.model', lambda d: d.vehicle.model),
    ('claim.claim_number', lambda d: d.claim_number),
    ('claim.insurance_company', lambda d: d.claim.insurance_company),
    ('customer.name', lambda d: d.customer.full_name),
    ('customer.phone', lambda d: d.customer.phone),
    ('customer.email', lambda d: d.customer.email),
    ('damage_lines', lambda d: d.damage_lines),
    ('totals.net_total', lambda d: _first_total(d)),
)

_STATUS_RANK = {
    FieldStatus.VALID: 0,
    FieldStatus.WARNING: 1,
    FieldStatus.MISSING: 2,
    FieldStatus.INVALID: 3,
}


def _first_total(document: EstimateDocument) -> Optional[Decimal]:
    totals = document.totals
    for value in (totals.net_total, totals.gross_total, totals.parts_total):
        if value is not None:
            return value
    return None


def _issue(field: str, message: str, severity: IssueSeverity, code: str) -> ValidationIssue:
    return ValidationIssue(field=field, message=message, severity=severity, code=code)


def _critical(field: str, message: str, code: str) -> ValidationIssue:
    return _issue(field, message, IssueSeverity.CRITICAL, code)


def _warning(field: str, message: str, code: str) -> ValidationIssue:
    return _issue(field, message, IssueSeverity.WARNING, code)


def _info(field: str, message: str, code: str) -> ValidationIssue:
    return _issue(field, message, IssueSeverity.INFO, code)


class EstimateValidator(BaseProcessor):
    """
    Runs the rule table over an EstimateDocument.

    Config keys:
        tolerance_percentage: Allowed drift between line sum and parts total (default 0.01)
        current_year: Overrides the clock for the vehicle year rule
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.tolerance_percentage = Decimal(str(self.config.get('tolerance_percentage', '0.01')))
        self.current_year = self.config.get('current_year')
        self.rules: List[Tuple[str, Callable[[EstimateDocument], List[ValidationIssue]]]] = [
            ('vin_present', self._rule_vin_present),
            ('vin_format', self._rule_vin_format),
            ('claim_number', self._rule_claim_number),
            ('money_fields', self._rule_money_fields),
            ('vehicle_year', self._rule_vehicle_year),
            ('vehicle_identity', self._rule_vehicle_identity),
            ('customer_name', self._rule_customer_name),
            ('customer_contact', self._rule_customer_contact),
            ('damage_lines', self._rule_damage_lines),
            ('line_values', self._rule_line_values),
            ('parts_total', self._rule_parts_total),
            ('insurance_company', self._rule_insurance_company),
            ('parse_status', self._rule_parse_status),
            ('unknown_elements', self._rule_unknown_elements),
        ]

    def can_process(self, document: Any) -> bool:
        return isinstance(document, EstimateDocument)

    async def process(self, document: EstimateDocument) -> ProcessingResult:
        """
        Validate a parsed estimate.

        Returns:
            ProcessingResult whose content is the ValidationResult
        """
        result = self.validate(document)
        return ProcessingResult(
            success=True,
            content=result,
            metadata={
                'is_valid': result.is_valid,
                'error_count': len(result.errors),
                'warning_count': len(result.warnings),
            }
        )

    def validate(self, document: EstimateDocument) -> ValidationResult:
        """Run every rule and collect all findings"""
        issues: List[ValidationIssue] = []
        for name, rule in self.rules:
            try:
                issues.extend(rule(document))
            except Exception as e:
                logger.exception(f"Validation rule {name} failed on {document.document_id}")
                issues.append(_critical(name, f"Rule {name} could not be evaluated: {e}", 'RULE_FAILED'))

        completeness = self._completeness(document)
        issues.append(_info(
            'document',
            f"{completeness:.0%} of recommended fields are populated",
            'COMPLETENESS'
        ))

        errors = tuple(i for i in issues if i.severity == IssueSeverity.CRITICAL)
        warnings = tuple(i for i in issues if i.severity == IssueSeverity.WARNING)
        infos = tuple(i for i in issues if i.severity == IssueSeverity.INFO)

        if errors:
            message = f"Estimate has {len(errors)} critical error(s) and {len(warnings)} warning(s)"
        elif warnings:
            message = f"Estimate is valid with {len(warnings)} warning(s)"
        else:
            message = "Estimate is valid"

        return ValidationResult(
            document_id=document.document_id,
            errors=errors,
            warnings=warnings,
            infos=infos,
            field_validations=self._field_verdicts(document, issues),
            summary=ValidationSummary(
                message=message,
                critical_count=len(errors),
                warning_count=len(warnings),
                info_count=len(infos),
                completeness=completeness,
                line_count=len(document.damage_lines),
                details={
                    'parse_status': document.parse_status.value,
                    'estimate_format': document.estimate_format.value,
                    'part_lines': len(document.part_lines),
                },
            ),
        )

    # Rules

    def _rule_vin_present(self, document: EstimateDocument) -> List[ValidationIssue]:
        if not document.vehicle.vin:
            return [_critical('vehicle.vin', "Vehicle VIN is required", 'MISSING_VIN')]
        return []

    def _rule_vin_format(self, document: EstimateDocument) -> List[ValidationIssue]:
        vin = document.vehicle.vin
        if not vin:
            return []
        if not VIN_PATTERN.match(vin):
            return [_warning(
                'vehicle.vin',
                f"VIN '{vin}' is not 17 characters of the VIN alphabet",
                'INVALID_VIN_FORMAT'
            )]
        if not is_valid_check_digit(vin):
            return [_warning('vehicle.vin', "VIN check digit does not match", 'VIN_CHECKSUM_MISMATCH')]
        return []

    def _rule_claim_number(self, document: EstimateDocument) -> List[ValidationIssue]:
        if not document.claim_number:
            return [_critical('claim.claim_number', "Claim number is required", 'MISSING_CLAIM_NUMBER')]
        return []

    def _rule_money_fields(self, document: EstimateDocument) -> List[ValidationIssue]:
        issues = []
        for path, raw in sorted(document.invalid_values.items()):
            if path.rsplit('.', 1)[-1] in MONEY_SUFFIXES:
                issues.append(_critical(path, f"'{raw}' is not a valid amount", 'INVALID_AMOUNT'))
            else:
                issues.append(_warning(path, f"'{raw}' is not a valid number", 'INVALID_NUMBER'))
        return issues

    def _rule_vehicle_year(self, document: EstimateDocument) -> List[ValidationIssue]:
        year = document.vehicle.year
        if year is None:
            return [_warning('vehicle.year', "Vehicle year is missing", 'MISSING_VEHICLE_YEAR')]
        latest = (self.current_year or datetime.now().year) + 2
        if not 1900 <= year <= latest:
            return [_warning('vehicle.year', f"Vehicle year {year} is outside 1900-{latest}", 'INVALID_VEHICLE_YEAR')]
        return []

    def _rule_vehicle_identity(self, document: EstimateDocument) -> List[ValidationIssue]:
        issues = []
        if not document.vehicle.make:
            issues.append(_warning('vehicle.make', "Vehicle make is missing", 'MISSING_VEHICLE_MAKE'))
        if not document.vehicle.model:
            issues.append(_warning('vehicle.model', "Vehicle model is missing", 'MISSING_VEHICLE_MODEL'))
        return issues

    def _rule_customer_name(self, document: EstimateDocument) -> List[ValidationIssue]:
        if not document.customer.full_name:
            return [_warning('customer.name', "Customer name is missing", 'MISSING_CUSTOMER_NAME')]
        return []

    def _rule_customer_contact(self, document: EstimateDocument) -> List[ValidationIssue]:
        issues = []
        customer = document.customer
        if customer.email and not EMAIL_PATTERN.match(customer.email):
            issues.append(_warning('customer.email', f"'{customer.email}' is not a valid email address", 'INVALID_EMAIL'))
        for field in ('phone', 'work_phone', 'mobile_phone'):
            value = getattr(customer, field)
            if value and len(re.sub(r'\D', '', value)) != 10:
                issues.append(_warning(f"customer.{field}", f"'{value}' is not a 10-digit phone number", 'INVALID_PHONE'))
        return issues

    def _rule_damage_lines(self, document: EstimateDocument) -> List[ValidationIssue]:
        if not document.damage_lines:
            return [_warning('damage_lines', "Estimate has no damage lines", 'NO_DAMAGE_LINES')]
        return []

    def _rule_line_values(self, document: EstimateDocument) -> List[ValidationIssue]:
        issues = []
        for line in document.damage_lines:
            path = f"damage_lines[{line.line_number}]"
            if line.line_type == LineType.PART:
                if not (line.part_number or line.oem_part_number or line.description):
                    issues.append(_warning(path, "Part line has neither part number nor description", 'MISSING_PART_IDENTIFIER'))
                if line.unit_cost is None and f"{path}.unit_cost" not in document.invalid_values:
                    issues.append(_info(f"{path}.unit_cost", "Part line has no price", 'MISSING_PRICE'))
            for field in ('quantity', 'unit_cost', 'labor_hours'):
                value = getattr(line, field)
                if value is not None and value < 0:
                    issues.append(_warning(f"{path}.{field}", f"{field} is negative ({value})", 'NEGATIVE_VALUE'))
        return issues

    def _rule_parts_total(self, document: EstimateDocument) -> List[ValidationIssue]:
        stated = document.totals.parts_total
        priced = [line.extended_cost for line in document.part_lines if line.extended_cost is not None]
        if stated is None or not stated or not priced:
            return []
        line_total = sum(priced, Decimal('0'))
        tolerance = abs(stated) * self.tolerance_percentage
        if abs(line_total - stated) > tolerance:
            return [_warning(
                'totals.parts_total',
                f"Part lines sum to {line_total} but the parts total is {stated}",
                'PARTS_TOTAL_MISMATCH'
            )]
        return []

    def _rule_insurance_company(self, document: EstimateDocument) -> List[ValidationIssue]:
        if not document.claim.insurance_company:
            return [_info('claim.insurance_company', "Insurance company is not specified", 'MISSING_INSURANCE_COMPANY')]
        return []

    def _rule_parse_status(self, document: EstimateDocument) -> List[ValidationIssue]:
        if document.parse_status == ParseStatus.PARTIAL:
            return [_info('document', "Estimate is missing its vehicle or line sections", 'PARTIAL_DOCUMENT')]
        return []

    def _rule_unknown_elements(self, document: EstimateDocument) -> List[ValidationIssue]:
        if document.unknown_elements:
            return [_info(
                'document',
                f"Unrecognised sections were ignored: {', '.join(document.unknown_elements)}",
                'UNKNOWN_ELEMENTS'
            )]
        return []

    # Summary helpers

    def _completeness(self, document: EstimateDocument) -> float:
        populated = sum(1 for _, getter in RECOMMENDED_FIELDS if getter(document))
        return round(populated / len(RECOMMENDED_FIELDS), 2)

    def _field_verdicts(
        self,
        document: EstimateDocument,
        issues: List[ValidationIssue]
    ) -> Dict[str, FieldVerdict]:
        verdicts: Dict[str, FieldVerdict] = {}
        for field, getter in RECOMMENDED_FIELDS:
            if getter(document):
                verdicts[field] = FieldVerdict(status=FieldStatus.VALID)

        for issue in issues:
            if issue.severity == IssueSeverity.INFO:
                continue
            if issue.severity == IssueSeverity.CRITICAL:
                status = FieldStatus.MISSING if issue.code.startswith('MISSING') else FieldStatus.INVALID
            else:
                status = FieldStatus.WARNING
            current = verdicts.get(issue.field)
            if current is None or _STATUS_RANK[status] > _STATUS_RANK[current.status]:
                verdicts[issue.field] = FieldVerdict(status=status, message=issue.message)
        return verdicts
