"""
Keyword Section Extractor

Offline extractor that locates each configured section with the document
sizer's pattern list and returns the surrounding text window. Needs no
model or network access, which makes it the default for the command line
and a predictable collaborator in tests.
"""

import logging
from typing import Any, Dict

from jobex.jobs.models import DocumentPayload
from jobex.processors.base import Extractor
from jobex.processors.document_sizer import (
    extract_section,
    find_key_sections,
    quick_data_check,
)

logger = logging.getLogger(__name__)


class KeywordSectionExtractor(Extractor):
    """
    Config options:
    - context_before: chars kept before a match (default: 200)
    - context_after: chars kept after a match (default: 800)
    """

    def __init__(self, config: Dict[str, Any] = None):
        super().__init__(config)
        self.context_before = self.config.get('context_before', 200)
        self.context_after = self.config.get('context_after', 800)

    async def extract_section(self, section: str, text: str) -> Any:
        position = find_key_sections(text).get(section)
        if position is None:
            logger.debug(f"Section {section} not found")
            return {'found': False, 'offset': None, 'excerpt': None}

        excerpt = extract_section(text, position, self.context_before, self.context_after)
        return {'found': True, 'offset': position, 'excerpt': excerpt.strip()}

    async def assemble(
        self,
        document: DocumentPayload,
        sections: Dict[str, Any],
        metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        artifact = await super().assemble(document, sections, metadata)
        found = [name for name, data in sections.items() if (data or {}).get('found')]
        artifact['metadata'].update({
            'total_sections': len(sections),
            'extracted_sections': len(found),
            'missing_sections': len(sections) - len(found),
        })
        return artifact

    def content_check(self, text: str) -> Dict[str, bool]:
        return quick_data_check(text)
