from bmsex.processors.base import BaseProcessor, EstimateUpload, ProcessingResult

__all__ = ['BaseProcessor', 'EstimateUpload', 'ProcessingResult']
