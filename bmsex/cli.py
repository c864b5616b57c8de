"""
BMSEX CLI commands

This module provides command-line interface for BMSEX operations.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import click

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.connectors.registry import VendorRegistry
from bmsex.db.connection import Database
from bmsex.db.repository import InMemoryRecordStore, SQLAlchemyRecordStore
from bmsex.exceptions import BMSEXError, DocumentImportError
from bmsex.models.batch import BatchOptions
from bmsex.models.options import PipelineOptions
from bmsex.processors.bms.parser import BMSParser
from bmsex.processors.bms.pipeline import EstimatePipeline
from bmsex.processors.bms.validator import EstimateValidator
from bmsex.services.intake_service import IntakeService
from bmsex.services.vin_service import VINDecoder

logger = logging.getLogger(__name__)

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
TERMINAL_STATUSES = ('completed', 'cancelled', 'error')


def _configure_logging(level: Optional[str]) -> None:
    config = BMSEXConfig()
    logging_config = config.get_logging_config()
    level = level or logging_config.get('level', 'INFO')
    kwargs = {
        'level': getattr(logging, str(level).upper(), logging.INFO),
        'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
    }
    if logging_config.get('file'):
        kwargs['filename'] = logging_config['file']
    logging.basicConfig(**kwargs)


def _build_intake(persist: bool) -> IntakeService:
    config = BMSEXConfig()
    store = SQLAlchemyRecordStore(Database(config)) if persist else InMemoryRecordStore()
    pipeline = EstimatePipeline(vendors=VendorRegistry.from_config(config), store=store, bmsex_config=config)
    return IntakeService(pipeline=pipeline, config=config)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True), help='Path to configuration file')
@click.option('--log-level', type=click.Choice(LOG_LEVELS, case_sensitive=False), help='Logging level')
def cli(config_path, log_level):
    """BMSEX command-line interface"""
    if config_path:
        BMSEXConfig.from_file(config_path)
    _configure_logging(log_level)


@cli.command('import')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--no-sourcing', is_flag=True, help='Skip VIN decoding and vendor sourcing')
@click.option('--generate-po', is_flag=True, help='Draft purchase orders for sourced lines')
@click.option('--persist', is_flag=True, help='Save the import record to the configured database')
@click.option('--json', 'as_json', is_flag=True, help='Print the full result as JSON')
def import_command(file, no_sourcing, generate_po, persist, as_json):
    """Import a single estimate file"""
    intake = _build_intake(persist)
    options = PipelineOptions.from_config(
        enable_automated_sourcing=not no_sourcing,
        enhance_with_vin_decoding=not no_sourcing,
        generate_auto_po=generate_po or None,
    )
    path = Path(file)
    try:
        result = asyncio.run(intake.import_document(path.read_bytes(), filename=path.name, options=options))
    except DocumentImportError as e:
        click.echo(f'Error: {e.report.analysis.user_message}', err=True)
        for suggestion in e.report.analysis.suggestions:
            click.echo(f'  - {suggestion}', err=True)
        raise click.Abort()
    except BMSEXError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()

    if as_json:
        _echo_json(result.model_dump(mode='json'))
        return

    click.echo(f'Document: {result.document_id} ({result.estimate_format.value}, {result.parse_status.value})')
    click.echo(f'Valid: {"yes" if result.validation.is_valid else "no"} - {result.validation.summary.message}')
    for issue in result.validation.errors:
        click.echo(f'  ERROR {issue.field}: {issue.message}')
    for issue in result.validation.warnings:
        click.echo(f'  WARN  {issue.field}: {issue.message}')
    if result.sourcing:
        stats = result.sourcing.statistics
        click.echo(f'Sourcing: {stats.sourced}/{stats.total_lines} line(s) sourced, {stats.manual} manual, {stats.timed_out} timed out')
        for decision in result.sourcing.decisions:
            vendor = decision.recommended_vendor.vendor_id if decision.recommended_vendor else '-'
            click.echo(f'  {decision.line_ref}: {decision.status.value} {vendor}')
    for po in result.purchase_orders:
        flag = ' (approval required)' if po.approval_required else ''
        click.echo(f'PO {po.po_number}: {po.vendor_id} {po.total_amount}{flag}')
    for stage, reason in result.skipped_stages.items():
        click.echo(f'Skipped {stage}: {reason}')


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--pause-on-error', is_flag=True, help='Pause the batch when a file fails')
@click.option('--concurrency', type=int, default=1, show_default=True, help='Files processed in parallel')
@click.option('--no-sourcing', is_flag=True, help='Skip VIN decoding and vendor sourcing')
def batch(files, pause_on_error, concurrency, no_sourcing):
    """Import several estimate files as one batch and print the final snapshot"""
    intake = _build_intake(persist=False)
    options = BatchOptions.from_config(
        pause_on_error=pause_on_error,
        concurrency=concurrency,
        pipeline=PipelineOptions.from_config(
            enable_automated_sourcing=not no_sourcing,
            enhance_with_vin_decoding=not no_sourcing,
        ),
    )

    async def run():
        items = [(Path(f).name, None, Path(f).read_bytes()) for f in files]
        job_id = await intake.submit_batch(items, options)
        registry = intake.registry
        while registry.get(job_id)['status'] not in TERMINAL_STATUSES:
            # Nothing can resume a paused batch from here
            if registry.get(job_id)['status'] == 'paused':
                await registry.cancel(job_id)
                break
            await asyncio.sleep(0.1)
        snapshot = await registry.wait(job_id)
        await registry.shutdown()
        return snapshot

    try:
        snapshot = asyncio.run(run())
    except BMSEXError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()
    _echo_json(snapshot)


@cli.command('decode-vin')
@click.argument('vin')
@click.option('--offline', is_flag=True, help='Use only the local decoder')
def decode_vin(vin, offline):
    """Decode a VIN"""
    decoder = VINDecoder(remote_enabled=not offline)
    descriptor = asyncio.run(decoder.decode(vin))
    _echo_json(descriptor.model_dump(mode='json'))


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
def validate(file):
    """Validate an estimate file without sourcing"""
    parser = BMSParser()
    try:
        estimate = parser.parse_file(file)
    except BMSEXError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()

    result = EstimateValidator().validate(estimate)
    click.echo(f'{estimate.document_id}: {result.summary.message}')
    for issue in result.errors + result.warnings + result.infos:
        click.echo(f'  {issue.severity.value.upper():8} {issue.code} {issue.field}: {issue.message}')
    if not result.is_valid:
        raise SystemExit(1)


if __name__ == '__main__':
    cli()
