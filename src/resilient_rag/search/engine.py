from __future__ import annotations

import math
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from resilient_rag.types import ReferenceDocument

from .tokenizer import split_sentences, term_frequency, tokenize

TOP_K = 3
MIN_SCORE = 0.1
SNIPPET_CHARS = 200
EXCERPT_CHARS = 300
MAX_ANSWER_SENTENCES = 3

NO_INDEX_ANSWER = "I don't have any information available offline."
NO_MATCH_ANSWER = "I couldn't find relevant information for your question in my offline data."


@dataclass(frozen=True, slots=True)
class IndexedDocument:
    id: str
    title: str
    content: str
    tokens: Tuple[str, ...]
    tfidf: Dict[str, float]
    norm: float


@dataclass(frozen=True, slots=True)
class SearchHit:
    document_id: str
    title: str
    snippet: str
    score: float


@dataclass(frozen=True, slots=True)
class SearchResult:
    answer: str
    sources: List[SearchHit] = field(default_factory=list)
    top_score: float = 0.0


@dataclass(frozen=True, slots=True)
class _IndexState:
    documents: Tuple[IndexedDocument, ...] = ()
    idf: Dict[str, float] = field(default_factory=dict)


def _norm(vec: Mapping[str, float]) -> float:
    return math.sqrt(sum(v * v for v in vec.values()))


def _cosine(query_vec: Mapping[str, float], query_norm: float, doc_vec: Mapping[str, float], doc_norm: float) -> float:
    if query_norm <= 0.0 or doc_norm <= 0.0:
        return 0.0
    dot = 0.0
    for term, weight in query_vec.items():
        dot += weight * doc_vec.get(term, 0.0)
    return dot / (query_norm * doc_norm)


def _weigh(tf: Mapping[str, float], idf: Mapping[str, float]) -> Dict[str, float]:
    # terms unseen in the corpus keep weight 1
    return {term: value * idf.get(term, 1.0) for term, value in tf.items()}


def _snippet(content: str, limit: int) -> str:
    return content if len(content) <= limit else content[:limit] + "..."


class LexicalSearchEngine:
    """TF-IDF search over cached documents, used when the backend is unreachable.

    Purely lexical: smoothed IDF (ln((N+1)/(df+1)) + 1), max-normalized TF,
    cosine ranking and extractive sentence selection for the answer text.

    Each `index` call builds a complete new state and swaps it in; the
    previous index is discarded and readers never see a half-built one.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._state = _IndexState()

    def is_indexed(self) -> bool:
        with self._lock:
            return len(self._state.documents) > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._state.documents)

    def index(self, documents: Iterable[ReferenceDocument]) -> None:
        docs = list(documents)
        tokenized: List[Tuple[ReferenceDocument, List[str]]] = []
        doc_freq: Dict[str, int] = {}

        for doc in docs:
            tokens = tokenize(doc.content)
            for term in set(tokens):
                doc_freq[term] = doc_freq.get(term, 0) + 1
            tokenized.append((doc, tokens))

        n = len(docs)
        idf = {term: math.log((n + 1) / (df + 1)) + 1.0 for term, df in doc_freq.items()}

        indexed: List[IndexedDocument] = []
        for doc, tokens in tokenized:
            vec = _weigh(term_frequency(tokens), idf)
            indexed.append(
                IndexedDocument(
                    id=doc.id,
                    title=doc.title,
                    content=doc.content,
                    tokens=tuple(tokens),
                    tfidf=vec,
                    norm=_norm(vec),
                )
            )

        new_state = _IndexState(documents=tuple(indexed), idf=idf)
        with self._lock:
            self._state = new_state

    def reset(self) -> None:
        with self._lock:
            self._state = _IndexState()

    def score(self, query: str) -> List[Tuple[IndexedDocument, float]]:
        """All indexed documents with their cosine similarity, best first."""
        with self._lock:
            state = self._state

        query_vec = _weigh(term_frequency(tokenize(query)), state.idf)
        query_norm = _norm(query_vec)
        scored = [(doc, _cosine(query_vec, query_norm, doc.tfidf, doc.norm)) for doc in state.documents]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored

    def ask(self, query: str) -> SearchResult:
        if not self.is_indexed():
            return SearchResult(answer=NO_INDEX_ANSWER, sources=[], top_score=0.0)

        scored = self.score(query)
        top = [(doc, s) for doc, s in scored[:TOP_K] if s > MIN_SCORE]

        if not top:
            # report the best sub-threshold score so callers can see we looked
            best = scored[0][1] if scored else 0.0
            return SearchResult(answer=NO_MATCH_ANSWER, sources=[], top_score=best)

        best_doc, best_score = top[0]
        answer = extract_answer(best_doc.content, tokenize(query))
        hits = [
            SearchHit(document_id=doc.id, title=doc.title, snippet=_snippet(doc.content, SNIPPET_CHARS), score=s)
            for doc, s in top
        ]
        return SearchResult(answer=answer, sources=hits, top_score=best_score)


def extract_answer(content: str, query_tokens: Sequence[str], *, max_sentences: int = MAX_ANSWER_SENTENCES) -> str:
    """Pick the sentences sharing the most query terms; fall back to a leading excerpt."""
    wanted = set(query_tokens)
    scored: List[Tuple[str, int]] = []
    for sentence in split_sentences(content):
        overlap = len(wanted & set(tokenize(sentence)))
        if overlap > 0:
            scored.append((sentence, overlap))

    if not scored:
        return content[:EXCERPT_CHARS] + "..."

    scored.sort(key=lambda pair: pair[1], reverse=True)
    return ". ".join(sentence for sentence, _ in scored[:max_sentences]) + "."


__all__ = [
    "LexicalSearchEngine",
    "IndexedDocument",
    "SearchHit",
    "SearchResult",
    "extract_answer",
    "NO_INDEX_ANSWER",
    "NO_MATCH_ANSWER",
]
