"""
Document Sizer

Decides whether document text must be shrunk before it is handed to an
extraction stage, and shrinks it deterministically when it must.

Documents within the budget are passed through untouched. Larger ones keep
their head (parties, context) and tail (signatures, key terms) joined by a
visible omission marker. Also provides cheap helpers to check for and locate
the sections an extractor is interested in.
"""

import logging
import math
import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, List, Mapping, Optional, Pattern, Sequence

logger = logging.getLogger(__name__)

MAX_DIRECT_LENGTH = 1_000_000
TRUNCATION_START_RATIO = 0.7
TRUNCATION_END_RATIO = 0.3
MARKER_RESERVE = 200

OMISSION_MARKER = "\n\n[... middle section omitted to respect processing limits ...]\n\n"


@dataclass(frozen=True)
class DocumentSizingResult:
    text: str
    original_length: int
    was_truncated: bool
    method: str  # 'none' or 'smart'

    def to_dict(self) -> Dict[str, object]:
        return {
            'original_length': self.original_length,
            'prepared_length': len(self.text),
            'was_truncated': self.was_truncated,
            'method': self.method,
        }


class DocumentSizer:
    """
    Head/tail truncation policy.

    The head keeps floor(budget * start_ratio) characters and the tail keeps
    floor(budget * end_ratio) - marker_reserve characters, so the result
    never exceeds the budget as long as the marker fits in the reserve.
    """

    def __init__(
        self,
        start_ratio: float = TRUNCATION_START_RATIO,
        end_ratio: float = TRUNCATION_END_RATIO,
        marker_reserve: int = MARKER_RESERVE,
        marker: str = OMISSION_MARKER
    ):
        if abs((start_ratio + end_ratio) - 1.0) > 1e-9:
            raise ValueError("start_ratio and end_ratio must sum to 1")
        if start_ratio < end_ratio:
            raise ValueError("start_ratio must be at least end_ratio")
        if len(marker) > marker_reserve:
            raise ValueError("marker must fit in marker_reserve")
        self.start_ratio = start_ratio
        self.end_ratio = end_ratio
        self.marker_reserve = marker_reserve
        self.marker = marker

    def prepare(self, text: str, budget: int = MAX_DIRECT_LENGTH) -> DocumentSizingResult:
        original_length = len(text)

        if original_length <= budget:
            return DocumentSizingResult(text, original_length, False, 'none')

        if budget < len(self.marker):
            raise ValueError(f"budget {budget} is smaller than the omission marker")

        end_length = max(0, _share(budget, self.end_ratio) - self.marker_reserve)
        # Small budgets: shorten the head so the marker still fits
        start_length = min(
            _share(budget, self.start_ratio),
            budget - len(self.marker) - end_length
        )

        head = text[:start_length]
        tail = text[original_length - end_length:] if end_length else ""
        prepared = head + self.marker + tail

        logger.info(
            f"Truncated document from {original_length} to {len(prepared)} chars "
            f"({len(prepared) / original_length * 100:.1f}%)"
        )
        return DocumentSizingResult(prepared, original_length, True, 'smart')


def _share(budget: int, ratio: float) -> int:
    # 700 * 0.7 is 489.99... in floating point
    return math.floor(budget * Fraction(ratio).limit_denominator())


def prepare_document_text(text: str, budget: int = MAX_DIRECT_LENGTH) -> DocumentSizingResult:
    """Prepare text with the default ratios"""
    return DocumentSizer().prepare(text, budget)


# Substrings that signal each content category; all groups of a category
# must match (any term within a group).
CONTENT_MARKERS: Dict[str, List[Sequence[str]]] = {
    'rent': [('loyer', 'rent'), ('€', 'euro', 'eur ', '$')],
    'indexation': [('indexation', 'ilat', 'icc', 'ilc', 'index')],
    'parties': [('bailleur', 'landlord', 'lessor'), ('preneur', 'tenant', 'lessee')],
    'calendar': [('durée', 'duree', 'term', 'duration'), ('effet', 'compter', 'commencement', 'effective')],
}

SECTION_PATTERNS: Dict[str, List[Pattern]] = {
    'rent': [
        re.compile(r'loyer\s*(annuel|principal|de\s*base)', re.IGNORECASE),
        re.compile(r'\bLOYER\b'),
        re.compile(r'\b(annual|base)\s+rent\b', re.IGNORECASE),
    ],
    'indexation': [
        re.compile(r'indexation', re.IGNORECASE),
        re.compile(r'indice\s*de\s*r[ée]f[ée]rence', re.IGNORECASE),
    ],
    'parties': [
        re.compile(r'entre\s*les\s*soussign[ée]', re.IGNORECASE),
        re.compile(r'le\s*bailleur', re.IGNORECASE),
        re.compile(r'\bbetween\b.*\b(landlord|lessor)\b', re.IGNORECASE),
    ],
    'guarantee': [
        re.compile(r'd[ée]p[ôo]t\s*de\s*garantie', re.IGNORECASE),
        re.compile(r'garantie', re.IGNORECASE),
        re.compile(r'security\s+deposit', re.IGNORECASE),
    ],
    'premises': [
        re.compile(r'd[ée]signation\s*des\s*locaux', re.IGNORECASE),
        re.compile(r'\bpremises\b', re.IGNORECASE),
    ],
    'calendar': [
        re.compile(r'dur[ée]e\s*du\s*bail', re.IGNORECASE),
        re.compile(r'prise\s*d.effet', re.IGNORECASE),
        re.compile(r'\bterm\s+of\s+(the\s+)?lease\b', re.IGNORECASE),
    ],
    'charges': [
        re.compile(r'charges\s*(locatives|et\s*taxes)', re.IGNORECASE),
        re.compile(r'\bservice\s+charges?\b', re.IGNORECASE),
    ],
}


def quick_data_check(
    text: str,
    markers: Mapping[str, List[Sequence[str]]] = CONTENT_MARKERS
) -> Dict[str, bool]:
    """Fast substring test for each expected content category"""
    lower = text.lower()
    return {
        category: all(any(term in lower for term in group) for group in groups)
        for category, groups in markers.items()
    }


def find_key_sections(
    text: str,
    patterns: Mapping[str, List[Pattern]] = SECTION_PATTERNS
) -> Dict[str, Optional[int]]:
    """
    Offset of the first match for each category.

    Candidates are tried in order; the first pattern that matches anywhere
    wins, even if a later pattern would match earlier in the text.
    """
    results: Dict[str, Optional[int]] = {}
    for category, candidates in patterns.items():
        results[category] = None
        for pattern in candidates:
            match = pattern.search(text)
            if match:
                results[category] = match.start()
                break
    return results


def extract_section(
    text: str,
    position: int,
    context_before: int = 2000,
    context_after: int = 5000
) -> str:
    """Window of text around a located offset"""
    start = max(0, position - context_before)
    end = min(len(text), position + context_after)
    return text[start:end]
