from jobex.processors.base import Extractor
from jobex.processors.document_sizer import DocumentSizer, DocumentSizingResult, prepare_document_text
from jobex.processors.keyword_extractor import KeywordSectionExtractor

__all__ = [
    'Extractor',
    'DocumentSizer',
    'DocumentSizingResult',
    'prepare_document_text',
    'KeywordSectionExtractor'
]
