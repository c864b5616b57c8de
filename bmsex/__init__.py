"""
BMSEX - Collision Estimate Import Library

This library imports collision-repair estimates in BMS XML, validates
them, decodes the vehicle VIN, sources replacement parts across vendors
and drafts purchase order recommendations, one document at a time or in
controllable batches.

Basic usage:
    from bmsex.services.intake_service import IntakeService

    intake = IntakeService()

    # Single document
    result = await intake.import_document(xml_bytes, filename='estimate.xml')
    print(result.validation.summary.message)

    # Batch
    job_id = await intake.submit_batch([('a.xml', 'text/xml', data_a), ('b.xml', 'text/xml', data_b)])
    snapshot = await intake.registry.wait(job_id)
"""

from bmsex.config.bmsex_config import BMSEXConfig

__all__ = ['BMSEXConfig']

__version__ = '1.0.0'
