"""
BMS Estimate Processing Module

Processors for parsing, normalizing, and validating collision-estimate
BMS XML, plus the per-document import pipeline.

Components (import from their modules):
- bmsex.processors.bms.parser.BMSParser: XML to EstimateDocument
- bmsex.processors.bms.normalizer: money, quantity, phone and part number normalizers
- bmsex.processors.bms.validator.EstimateValidator: rule table over EstimateDocument
- bmsex.processors.bms.pipeline.EstimatePipeline: parse -> validate -> vin -> source -> po -> persist
"""
