"""
Tests for the end-to-end estimate pipeline
"""

import pytest

from bmsex.connectors.registry import VendorRegistry
from bmsex.db.repository import InMemoryRecordStore
from bmsex.exceptions import ParseError
from bmsex.models.estimate import EstimateFormat
from bmsex.models.options import PipelineOptions
from bmsex.models.sourcing import DecisionStatus, DescriptorSource
from bmsex.processors.base import EstimateUpload
from bmsex.processors.bms.pipeline import EstimatePipeline, PipelineStage


class FailingStore(InMemoryRecordStore):
    def save(self, data):
        raise RuntimeError("disk full")


def upload(content: bytes, filename: str = 'estimate.xml') -> EstimateUpload:
    return EstimateUpload(content=content, filename=filename, content_type='application/xml')


class TestPipelineRun:
    """Successful imports"""

    @pytest.mark.asyncio
    async def test_full_import(self, pipeline, store, simple_xml, bmsex_config):
        options = PipelineOptions.from_config(bmsex_config, generate_auto_po=True)

        result = await pipeline.process(upload(simple_xml), options)

        assert result.success
        imported = result.content
        assert imported.document_id == 'EST-1001'
        assert imported.claim_number == 'CLM-1001'
        assert imported.estimate_format == EstimateFormat.SIMPLE_ESTIMATE
        assert imported.validation.is_valid
        assert imported.skipped_stages == {}
        assert set(imported.stage_times) == {'parse', 'validate', 'vin', 'source', 'po', 'persist'}

        assert imported.vehicle.source == DescriptorSource.LOCAL
        assert imported.vehicle.make == 'Honda'
        assert imported.vehicle.model == 'Accord'
        assert imported.vehicle.year == 2003

        decisions = imported.sourcing.decisions
        assert [d.status for d in decisions] == [DecisionStatus.SOURCED, DecisionStatus.SKIPPED]
        assert decisions[0].recommended_vendor.vendor_id == 'vendor-a'

        assert len(imported.purchase_orders) == 1
        draft = imported.purchase_orders[0]
        assert draft.vendor_id == 'vendor-a'
        assert draft.document_id == 'EST-1001'
        assert draft.po_number.startswith('PO-')

        assert imported.record_id == 'imp_000001'
        record = store.get('imp_000001')
        assert record['is_valid'] is True
        assert record['vin'] == '1HGCM82633A004352'
        assert record['summary']['purchase_orders'] == [draft.po_number]
        assert record['summary']['vehicle_source'] == 'local'

    @pytest.mark.asyncio
    async def test_cieca_import(self, pipeline, cieca_xml):
        result = await pipeline.process(upload(cieca_xml))

        assert result.success
        statistics = result.content.sourcing.statistics
        assert statistics.total_lines == 3
        assert statistics.sourced == 2
        assert statistics.skipped == 1
        assert statistics.requires_approval == 0
        headlamp = result.content.sourcing.decisions[1]
        assert headlamp.classification.category == 'lighting'
        assert headlamp.reasoning_factors['partType'] == 'Aftermarket'

    @pytest.mark.asyncio
    async def test_po_generation_off_by_default(self, pipeline, simple_xml):
        result = await pipeline.process(upload(simple_xml))

        assert result.content.purchase_orders == []
        assert result.content.skipped_stages == {'po': "Automatic PO generation disabled"}

    @pytest.mark.asyncio
    async def test_summary(self, pipeline, simple_xml):
        result = await pipeline.process(upload(simple_xml))

        summary = result.content.summary()
        assert summary['document_id'] == 'EST-1001'
        assert summary['is_valid'] is True
        assert summary['sourced_lines'] == 1
        assert summary['purchase_orders'] == []


class TestPipelineGating:
    """Stage skipping"""

    @pytest.mark.asyncio
    async def test_invalid_document_skips_automation(self, pipeline, store, missing_vin_xml, bmsex_config):
        options = PipelineOptions.from_config(bmsex_config, generate_auto_po=True)

        result = await pipeline.process(upload(missing_vin_xml), options)

        assert result.success
        imported = result.content
        assert not imported.validation.is_valid
        assert imported.skipped_stages == {
            'vin': "Document failed validation",
            'source': "Document failed validation",
            'po': "Nothing was sourced",
        }
        assert imported.vehicle is None
        assert imported.sourcing is None
        assert store.get(imported.record_id)['summary']['validation']['errors'] == ['MISSING_VIN']

    @pytest.mark.asyncio
    async def test_validate_first_off_sources_anyway(self, pipeline, missing_vin_xml):
        result = await pipeline.process(upload(missing_vin_xml), validate_first=False)

        imported = result.content
        assert imported.sourcing.statistics.sourced == 1
        assert imported.vehicle.source == DescriptorSource.UNKNOWN
        assert imported.vehicle.make == 'Honda'

    @pytest.mark.asyncio
    async def test_disabled_stages(self, pipeline, simple_xml):
        options = PipelineOptions(enable_automated_sourcing=False, enhance_with_vin_decoding=False)

        result = await pipeline.process(upload(simple_xml), options)

        imported = result.content
        assert imported.skipped_stages['vin'] == "VIN decoding disabled"
        assert imported.skipped_stages['source'] == "Automated sourcing disabled"
        assert imported.vehicle.source == DescriptorSource.UNKNOWN
        assert imported.vehicle.model == 'Accord'

    @pytest.mark.asyncio
    async def test_no_part_lines(self, pipeline, simple_xml):
        xml = simple_xml.replace(b"<Type>part</Type>", b"<Type>labor</Type>")

        result = await pipeline.process(upload(xml))

        assert result.content.skipped_stages['source'] == "No part lines"

    @pytest.mark.asyncio
    async def test_no_vendors(self, offline_decoder, bmsex_config, simple_xml):
        pipeline = EstimatePipeline(vin_decoder=offline_decoder, vendors=VendorRegistry(), bmsex_config=bmsex_config)

        result = await pipeline.process(upload(simple_xml))

        assert result.content.skipped_stages['source'] == "No vendors configured"
        assert result.content.skipped_stages['persist'] == "No record store configured"
        assert result.content.record_id is None


class TestPipelineFailures:
    """Failures that end the run"""

    @pytest.mark.asyncio
    async def test_parse_failure(self, pipeline, store, malformed_xml):
        result = await pipeline.process(upload(malformed_xml, 'broken.xml'))

        assert not result.success
        assert isinstance(result.exception, ParseError)
        assert result.metadata['error_stage'] == 'parse'
        assert result.metadata['filename'] == 'broken.xml'
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_persistence_failure(self, offline_decoder, vendors, bmsex_config, simple_xml):
        pipeline = EstimatePipeline(
            vin_decoder=offline_decoder, vendors=vendors, store=FailingStore(), bmsex_config=bmsex_config,
        )

        result = await pipeline.process(upload(simple_xml))

        assert not result.success
        assert result.error == "disk full"
        assert result.metadata['error_stage'] == 'persist'
        assert result.metadata['document_id'] == 'EST-1001'


class TestPipelineCallbacks:

    @pytest.mark.asyncio
    async def test_stage_callbacks(self, pipeline, simple_xml):
        seen = []
        pipeline.on_stage(PipelineStage.VALIDATE, lambda ctx: seen.append(ctx.validation.is_valid))
        pipeline.on_stage(PipelineStage.PARSE, lambda ctx: seen.append(ctx.document_id))

        await pipeline.process(upload(simple_xml))

        assert seen == ['EST-1001', True]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_fail_the_run(self, pipeline, simple_xml):
        def explode(ctx):
            raise ValueError("callback bug")

        pipeline.on_stage(PipelineStage.SOURCE, explode)

        result = await pipeline.process(upload(simple_xml))

        assert result.success

    def test_can_process(self, pipeline):
        assert pipeline.can_process(upload(b'<Estimate/>'))
        assert not pipeline.can_process(EstimateUpload(content=b'%PDF', filename='scan.pdf'))
