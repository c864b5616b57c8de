from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import sha256
from typing import Any, Dict, Optional


@dataclass
class EstimateUpload:
    """Raw document handed to the processors"""
    content: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def content_hash(self) -> str:
        return sha256(self.content).hexdigest()


class ProcessingResult:
    """Result of a BMSEX processing operation"""

    def __init__(
        self,
        success: bool,
        content: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        exception: Optional[BaseException] = None
    ):
        self.success = success
        self.content = content
        self.metadata = dict(metadata) if metadata else {}
        self.error = error
        self.exception = exception
        self.timestamp = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"ProcessingResult(success={self.success}, error={self.error!r})"


class BaseProcessor(ABC):
    """Base class for BMSEX document processors"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}

    @abstractmethod
    async def process(self, document: Any) -> ProcessingResult:
        """Process a document

        Args:
            document: Document to process

        Returns:
            ProcessingResult containing processing results
        """
        pass

    @abstractmethod
    def can_process(self, document: Any) -> bool:
        """Check if this processor can handle the given document

        Args:
            document: Document to check

        Returns:
            True if processor can handle the document
        """
        pass
