"""
Tests for the intake service
"""

import pytest

from bmsex.exceptions import DocumentImportError, ParseError, ResourceLimitError, UnsupportedContentTypeError
from bmsex.models.batch import BatchOptions
from bmsex.models.errors import ErrorCategory
from bmsex.models.results import ImportResult
from bmsex.services.intake_service import IntakeService

from conftest import simple_estimate


class TestUploadChecks:

    def make_service(self, pipeline, bmsex_config):
        return IntakeService(pipeline=pipeline, config=bmsex_config)

    def test_allowed_types(self, pipeline, bmsex_config):
        service = self.make_service(pipeline, bmsex_config)

        assert service.is_allowed_type('estimate.xml', None)
        assert service.is_allowed_type('ESTIMATE.XML', 'application/octet-stream')
        assert service.is_allowed_type(None, 'text/xml; charset=utf-8')
        assert service.is_allowed_type('upload', 'Application/XML')
        assert not service.is_allowed_type('scan.pdf', 'application/pdf')
        assert not service.is_allowed_type(None, None)

    def test_size_limit(self, pipeline, bmsex_config):
        service = self.make_service(pipeline, bmsex_config)
        service.pipeline.parser.max_bytes = 100

        with pytest.raises(ResourceLimitError) as exc:
            service.check_upload('big.xml', 'text/xml', 101)

        assert exc.value.limit == 100
        assert exc.value.actual == 101
        service.check_upload('ok.xml', 'text/xml', 100)


class TestImportDocument:

    @pytest.mark.asyncio
    async def test_import(self, pipeline, bmsex_config, simple_xml):
        service = IntakeService(pipeline=pipeline, config=bmsex_config)

        result = await service.import_document(simple_xml, filename='estimate.xml')

        assert isinstance(result, ImportResult)
        assert result.document_id == 'EST-1001'
        assert len(service.reporter) == 0

    @pytest.mark.asyncio
    async def test_rejected_content_type_is_reported(self, pipeline, bmsex_config, simple_xml):
        service = IntakeService(pipeline=pipeline, config=bmsex_config)

        with pytest.raises(UnsupportedContentTypeError):
            await service.import_document(simple_xml, filename='scan.pdf', content_type='application/pdf', user_id='u1')

        reports = service.reporter.search()['reports']
        assert len(reports) == 1
        assert reports[0].context.file == 'scan.pdf'
        assert reports[0].context.operation == 'estimate_import'
        assert reports[0].context.user == 'u1'

    @pytest.mark.asyncio
    async def test_oversized_upload_never_reaches_the_parser(self, pipeline, bmsex_config, simple_xml):
        service = IntakeService(pipeline=pipeline, config=bmsex_config)
        service.pipeline.parser.max_bytes = 10

        with pytest.raises(ResourceLimitError):
            await service.import_document(simple_xml, filename='estimate.xml')

        assert service.reporter.search()['reports'][0].analysis.category == ErrorCategory.RESOURCE_LIMIT

    @pytest.mark.asyncio
    async def test_pipeline_failure_carries_report(self, pipeline, store, bmsex_config, malformed_xml):
        service = IntakeService(pipeline=pipeline, config=bmsex_config)

        with pytest.raises(DocumentImportError) as exc:
            await service.import_document(malformed_xml, filename='broken.xml')

        report = exc.value.report
        assert isinstance(exc.value.cause, ParseError)
        assert str(exc.value) == report.analysis.user_message
        assert report.analysis.category == ErrorCategory.PARSING
        assert report.context.file == 'broken.xml'
        assert report.context.extra['stage'] == 'parse'
        assert service.reporter.get(report.id) is report
        assert len(store) == 0


class TestSubmitBatch:

    @pytest.mark.asyncio
    async def test_batch_runs_to_completion(self, pipeline, bmsex_config):
        service = IntakeService(pipeline=pipeline, config=bmsex_config)

        job_id = await service.submit_batch([
            ('a.xml', 'text/xml', simple_estimate(estimate_id='EST-A')),
            ('b.xml', None, simple_estimate(estimate_id='EST-B')),
        ])
        snapshot = await service.registry.wait(job_id, timeout=5)

        assert snapshot['status'] == 'completed'
        assert [f['result']['document_id'] for f in snapshot['files']] == ['EST-A', 'EST-B']
        assert service.get_stats()['batches']['total_batches'] == 1
        await service.registry.shutdown()

    @pytest.mark.asyncio
    async def test_one_bad_file_rejects_the_batch(self, pipeline, bmsex_config, simple_xml):
        service = IntakeService(pipeline=pipeline, config=bmsex_config)

        with pytest.raises(UnsupportedContentTypeError):
            await service.submit_batch(
                [('a.xml', 'text/xml', simple_xml), ('b.pdf', 'application/pdf', b'%PDF')],
                BatchOptions(user_id='u7'),
            )

        assert len(service.registry) == 0
        report = service.reporter.search()['reports'][0]
        assert report.context.operation == 'batch_submit'
        assert report.context.user == 'u7'
        await service.registry.shutdown()
