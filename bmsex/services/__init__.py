"""
BMSEX Services

- error_service.ErrorReporter: classified, sanitized error reports
- vin_service.VINDecoder: remote VIN lookup with local fallback
- intake_service.IntakeService: single-file and batch intake
"""
