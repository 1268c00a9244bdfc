import asyncio
import io
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

from pdfminer.high_level import extract_text

from jobex.errors import TerminalUpstreamError
from jobex.jobs.models import DocumentPayload

logger = logging.getLogger(__name__)


class Extractor(ABC):
    """
    Collaborator that performs the actual work of each pipeline stage.

    The job runner calls these hooks in stage order and owns retries,
    timeouts, cancellation and progress. Implementations raise
    RetryableUpstreamError for transient failures (timeouts, throttling)
    and TerminalUpstreamError for anything that will not succeed on retry.
    """

    def __init__(self, config: Dict[str, Any] = None):
        self.config = config or {}

    async def acquire(self, document: DocumentPayload) -> str:
        """Read the document's embedded text

        Args:
            document: Submitted document

        Returns:
            Raw text (may be empty for scanned documents)
        """
        if document.content_type == 'application/pdf':
            try:
                return await asyncio.to_thread(extract_text, io.BytesIO(document.data))
            except Exception as e:
                raise TerminalUpstreamError(f"Unreadable PDF {document.file_name}: {e}")
        try:
            return document.data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise TerminalUpstreamError(f"Document {document.file_name} is not UTF-8 text: {e}")

    async def recognize(self, document: DocumentPayload, text: str) -> str:
        """Optical recognition for documents without usable embedded text

        The default keeps the acquired text as is.
        """
        return text

    @abstractmethod
    async def extract_section(self, section: str, text: str) -> Any:
        """Extract one section of structured data

        Args:
            section: Section name from the pipeline configuration
            text: Document text, already sized to the budget

        Returns:
            JSON-serializable section data
        """
        pass

    async def assemble(
        self,
        document: DocumentPayload,
        sections: Dict[str, Any],
        metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Build the final artifact from the extracted sections"""
        return {
            'file_name': document.file_name,
            'sections': dict(sections),
            'metadata': dict(metadata),
        }
