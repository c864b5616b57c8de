"""
Tests for the command-line interface
"""

import json

from click.testing import CliRunner

from bmsex.cli import cli

from conftest import VALID_VIN, simple_estimate


def write(tmp_path, name, content: bytes):
    path = tmp_path / name
    path.write_bytes(content)
    return str(path)


class TestCLI:

    def setup_method(self):
        self.runner = CliRunner()

    def test_import(self, tmp_path, simple_xml):
        path = write(tmp_path, 'estimate.xml', simple_xml)

        result = self.runner.invoke(cli, ['import', path])

        assert result.exit_code == 0, result.output
        assert 'Document: EST-1001 (simple_estimate, parsed)' in result.output
        assert 'Valid: yes' in result.output
        # No vendors in the default configuration
        assert 'Skipped source: No vendors configured' in result.output

    def test_import_json(self, tmp_path, simple_xml):
        path = write(tmp_path, 'estimate.xml', simple_xml)

        result = self.runner.invoke(cli, ['import', path, '--json', '--no-sourcing'])

        assert result.exit_code == 0, result.output
        body = json.loads(result.output)
        assert body['document_id'] == 'EST-1001'
        assert body['skipped_stages']['source'] == "Automated sourcing disabled"

    def test_import_failure(self, tmp_path, malformed_xml):
        path = write(tmp_path, 'broken.xml', malformed_xml)

        result = self.runner.invoke(cli, ['import', path])

        assert result.exit_code == 1
        assert 'Error:' in result.output

    def test_batch(self, tmp_path, malformed_xml):
        first = write(tmp_path, 'a.xml', simple_estimate(estimate_id='EST-A'))
        second = write(tmp_path, 'b.xml', malformed_xml)

        result = self.runner.invoke(cli, ['batch', first, second, '--no-sourcing'])

        assert result.exit_code == 0, result.output
        snapshot = json.loads(result.output)
        assert snapshot['status'] == 'completed'
        assert [f['status'] for f in snapshot['files']] == ['completed', 'failed']

    def test_batch_rejects_non_xml(self, tmp_path, simple_xml):
        first = write(tmp_path, 'a.xml', simple_xml)
        second = write(tmp_path, 'notes.txt', b'hello')

        result = self.runner.invoke(cli, ['batch', first, second])

        assert result.exit_code == 1
        assert 'Unsupported content type' in result.output

    def test_decode_vin_offline(self):
        result = self.runner.invoke(cli, ['decode-vin', VALID_VIN.lower(), '--offline'])

        assert result.exit_code == 0, result.output
        descriptor = json.loads(result.output)
        assert descriptor['vin'] == VALID_VIN
        assert descriptor['make'] == 'Honda'
        assert descriptor['source'] == 'local'

    def test_validate(self, tmp_path, simple_xml, missing_vin_xml):
        good = write(tmp_path, 'good.xml', simple_xml)
        bad = write(tmp_path, 'bad.xml', missing_vin_xml)

        valid = self.runner.invoke(cli, ['validate', good])
        invalid = self.runner.invoke(cli, ['validate', bad])

        assert valid.exit_code == 0, valid.output
        assert valid.output.startswith('EST-1001: Estimate is valid')
        assert invalid.exit_code == 1
        assert 'MISSING_VIN' in invalid.output
