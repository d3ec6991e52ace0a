from .engine import (
    NO_INDEX_ANSWER,
    NO_MATCH_ANSWER,
    IndexedDocument,
    LexicalSearchEngine,
    SearchHit,
    SearchResult,
    extract_answer,
)
from .tokenizer import STOP_WORDS, split_sentences, term_frequency, tokenize

__all__ = [
    'LexicalSearchEngine',
    'IndexedDocument',
    'SearchHit',
    'SearchResult',
    'extract_answer',
    'NO_INDEX_ANSWER',
    'NO_MATCH_ANSWER',
    'STOP_WORDS',
    'tokenize',
    'split_sentences',
    'term_frequency',
]
