"""
Tests for estimate validation rules
"""

import pytest

from bmsex.models.estimate import FieldStatus, IssueSeverity
from bmsex.processors.bms.parser import BMSParser
from bmsex.processors.bms.validator import EstimateValidator

from conftest import BAD_CHECKSUM_VIN, simple_estimate


def _codes(issues):
    return {issue.code for issue in issues}


class TestEstimateValidator:
    """Rule table behaviour"""

    def setup_method(self):
        self.parser = BMSParser()
        self.validator = EstimateValidator({'current_year': 2024})

    def validate(self, xml: bytes):
        return self.validator.validate(self.parser.parse(xml))

    def test_complete_estimate_is_valid(self, simple_xml):
        result = self.validate(simple_xml)

        assert result.is_valid
        assert result.errors == ()
        assert result.warnings == ()
        assert result.summary.message == "Estimate is valid"
        assert result.summary.completeness == 1.0
        assert result.summary.line_count == 2
        assert _codes(result.infos) == {'COMPLETENESS'}

    def test_cieca_estimate_is_valid(self, cieca_xml):
        result = self.validate(cieca_xml)

        assert result.is_valid
        assert result.summary.details['part_lines'] == 2

    def test_missing_vin_is_critical(self, missing_vin_xml):
        result = self.validate(missing_vin_xml)

        assert not result.is_valid
        assert _codes(result.errors) == {'MISSING_VIN'}
        assert result.summary.message == "Estimate has 1 critical error(s) and 0 warning(s)"
        assert result.field_validations['vehicle.vin'].status == FieldStatus.MISSING

    def test_missing_claim_number_is_critical(self):
        result = self.validate(simple_estimate(claim_number=''))

        assert _codes(result.errors) == {'MISSING_CLAIM_NUMBER'}

    def test_checksum_mismatch_is_only_a_warning(self):
        result = self.validate(simple_estimate(vin=BAD_CHECKSUM_VIN))

        assert result.is_valid
        assert _codes(result.warnings) == {'VIN_CHECKSUM_MISMATCH'}
        assert result.summary.message == "Estimate is valid with 1 warning(s)"
        assert result.field_validations['vehicle.vin'].status == FieldStatus.WARNING

    def test_malformed_vin_is_a_warning(self):
        result = self.validate(simple_estimate(vin='ABC123'))

        assert result.is_valid
        assert 'INVALID_VIN_FORMAT' in _codes(result.warnings)

    def test_unparseable_amount_is_critical(self):
        result = self.validate(simple_estimate(unit_price='abc'))

        assert not result.is_valid
        invalid = [issue for issue in result.errors if issue.code == 'INVALID_AMOUNT']
        assert {issue.field for issue in invalid} == {'damage_lines[1].unit_cost', 'totals.parts_total'}

    def test_out_of_range_amount_is_critical(self):
        result = self.validate(simple_estimate(unit_price='1e30'))

        assert not result.is_valid
        invalid = [issue for issue in result.errors if issue.code == 'INVALID_AMOUNT']
        assert {issue.field for issue in invalid} == {'damage_lines[1].unit_cost', 'totals.parts_total'}

    def test_all_findings_collected_in_one_pass(self):
        xml = b"<Estimate><EstimateInfo><EstimateID>E-9</EstimateID></EstimateInfo></Estimate>"

        result = self.validate(xml)

        assert _codes(result.errors) == {'MISSING_VIN', 'MISSING_CLAIM_NUMBER'}
        assert {
            'MISSING_VEHICLE_YEAR', 'MISSING_VEHICLE_MAKE', 'MISSING_VEHICLE_MODEL',
            'MISSING_CUSTOMER_NAME', 'NO_DAMAGE_LINES',
        } <= _codes(result.warnings)
        assert {'MISSING_INSURANCE_COMPANY', 'PARTIAL_DOCUMENT', 'COMPLETENESS'} <= _codes(result.infos)
        assert result.summary.completeness == 0.0

    def test_parts_total_mismatch(self, simple_xml):
        xml = simple_xml.replace(b"<PartsTotal>250.00</PartsTotal>", b"<PartsTotal>400.00</PartsTotal>")

        result = self.validate(xml)

        assert result.is_valid
        assert 'PARTS_TOTAL_MISMATCH' in _codes(result.warnings)

    def test_invalid_email(self, simple_xml):
        xml = simple_xml.replace(b"Jane.Doe@Example.com", b"not-an-email")

        result = self.validate(xml)

        assert [issue.field for issue in result.warnings if issue.code == 'INVALID_EMAIL'] == ['customer.email']

    def test_vehicle_year_out_of_range(self, simple_xml):
        xml = simple_xml.replace(b"<Year>2003</Year>", b"<Year>2031</Year>")

        result = self.validate(xml)

        assert 'INVALID_VEHICLE_YEAR' in _codes(result.warnings)

    def test_negative_quantity(self, simple_xml):
        xml = simple_xml.replace(b"<Quantity>1</Quantity>", b"<Quantity>-2</Quantity>")

        result = self.validate(xml)

        assert 'NEGATIVE_VALUE' in _codes(result.warnings)
        assert result.issues_for('damage_lines[1].quantity')

    def test_missing_price_is_info(self, simple_xml):
        xml = simple_xml.replace(b"<UnitPrice>250.00</UnitPrice>", b"")

        result = self.validate(xml)

        assert result.is_valid
        missing = [issue for issue in result.infos if issue.code == 'MISSING_PRICE']
        assert missing[0].field == 'damage_lines[1].unit_cost'

    def test_unknown_elements_reported_as_info(self, simple_xml):
        xml = simple_xml.replace(b"</Estimate>", b"<Marketing/></Estimate>")

        result = self.validate(xml)

        assert result.is_valid
        assert 'UNKNOWN_ELEMENTS' in _codes(result.infos)

    def test_failing_rule_is_reported_not_raised(self, simple_xml):
        self.validator.rules.append(('exploding', lambda document: 1 / 0))

        result = self.validate(simple_xml)

        assert not result.is_valid
        failed = [issue for issue in result.errors if issue.code == 'RULE_FAILED']
        assert failed[0].field == 'exploding'
        assert failed[0].severity == IssueSeverity.CRITICAL

    def test_issues_for_prefix(self):
        result = self.validate(simple_estimate(vin=BAD_CHECKSUM_VIN))

        assert [issue.code for issue in result.issues_for('vehicle')] == ['VIN_CHECKSUM_MISMATCH']
        assert result.issues_for('customer') == []

    def test_result_is_immutable(self, simple_xml):
        result = self.validate(simple_xml)

        with pytest.raises(Exception):
            result.document_id = 'other'

    @pytest.mark.asyncio
    async def test_process_reports_counts(self, missing_vin_xml):
        processed = await self.validator.process(self.parser.parse(missing_vin_xml))

        assert processed.success
        assert processed.metadata == {'is_valid': False, 'error_count': 1, 'warning_count': 0}
