"""
Semantic search over paper embeddings.

A full linear cosine-similarity scan: fine for a corpus of a few thousand
papers. Entries are immutable and swapped into the index under a lock, so a
concurrent query sees either the previous entry or the new one.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List

import numpy as np

from chainindex.errors import ChainIndexError, NotFoundError, ValidationError
from chainindex.events import EmbeddingsGenerated, LedgerEvent, PaperDeactivated, PaperUpdated
from chainindex.ledger import PaperLedger
from chainindex.services.content_store import EmbeddingStore
from chainindex.services.embedding import EmbeddingGenerator
from chainindex.utils import is_blank, snippet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexEntry:
    paper_id: int
    embedding_ref: str
    vector: np.ndarray
    title: str
    snippet: str


@dataclass(frozen=True)
class SearchHit:
    paper_id: int
    score: float
    title: str
    snippet: str


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """dot(a, b) / (|a| * |b|), defined as 0 when either norm is 0."""
    if a.shape != b.shape:
        raise ValueError(f"Embeddings must have the same dimension ({a.shape} vs {b.shape})")
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


class SearchIndex:
    def __init__(self, ledger: PaperLedger, generator: EmbeddingGenerator, store: EmbeddingStore,
                 snippet_length: int = 200):
        self.ledger = ledger
        self.generator = generator
        self.store = store
        self.snippet_length = snippet_length
        self._entries: Dict[int, IndexEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, paper_id: int) -> bool:
        with self._lock:
            return paper_id in self._entries

    def subscribe(self):
        """Keep the index in step with ledger events."""
        self.ledger.events.subscribe(EmbeddingsGenerated, self.handle_event)
        self.ledger.events.subscribe(PaperUpdated, self.handle_event)
        self.ledger.events.subscribe(PaperDeactivated, self.handle_event)

    def handle_event(self, event: LedgerEvent):
        if isinstance(event, EmbeddingsGenerated):
            self.ingest(event.paper_id, event.embedding_ref)
        elif isinstance(event, (PaperUpdated, PaperDeactivated)):
            self.evict(event.paper_id)

    def _build_entry(self, paper_id: int, embedding_ref: str) -> IndexEntry | None:
        try:
            paper = self.ledger.get(paper_id)
        except NotFoundError:
            logger.warning(f"Cannot index unknown paper {paper_id}")
            return None
        if not paper.is_active or not paper.embeddings_generated or paper.embedding_ref != embedding_ref:
            logger.info(f"Skipping stale embedding {embedding_ref} for paper {paper_id}")
            return None

        vector = np.asarray(self.store.load(embedding_ref), dtype=np.float64)
        return IndexEntry(
            paper_id=paper_id,
            embedding_ref=embedding_ref,
            vector=vector,
            title=paper.title,
            snippet=snippet(paper.abstract_text, self.snippet_length),
        )

    def ingest(self, paper_id: int, embedding_ref: str) -> bool:
        entry = self._build_entry(paper_id, embedding_ref)
        if entry is None:
            self.evict(paper_id)
            return False
        with self._lock:
            self._entries[paper_id] = entry
        logger.info(f"Indexed paper {paper_id} ({len(entry.vector)} dimensions)")
        return True

    def evict(self, paper_id: int):
        with self._lock:
            self._entries.pop(paper_id, None)

    def rebuild(self) -> int:
        """Replay EmbeddingsGenerated events over the current ledger state into a fresh index."""
        live = self.ledger.searchable_refs()
        entries: Dict[int, IndexEntry] = {}
        for event in self.ledger.events_log(name=EmbeddingsGenerated.event_name()):
            if live.get(event.paper_id) != event.embedding_ref or event.paper_id in entries:
                continue
            try:
                entry = self._build_entry(event.paper_id, event.embedding_ref)
            except ChainIndexError as e:
                logger.warning(f"Could not rebuild entry for paper {event.paper_id}: {e.detail}")
                continue
            if entry is not None:
                entries[event.paper_id] = entry

        with self._lock:
            self._entries = entries
        logger.info(f"Search index rebuilt with {len(entries)} entries")
        return len(entries)

    def query(self, query_text: str, limit: int = 10) -> List[SearchHit]:
        if is_blank(query_text):
            raise ValidationError("Query cannot be empty")
        if limit < 1:
            raise ValidationError("Limit must be at least 1")

        query_vector = np.asarray(self.generator.embed(query_text), dtype=np.float64)
        with self._lock:
            entries = list(self._entries.values())
        # Papers deactivated or updated after ingestion drop out here
        live = self.ledger.searchable_refs()

        scored = []
        for entry in entries:
            if live.get(entry.paper_id) != entry.embedding_ref:
                continue
            if entry.vector.shape != query_vector.shape:
                logger.warning(
                    f"Skipping paper {entry.paper_id}: embedding has {entry.vector.shape[0]} dimensions, "
                    f"query has {query_vector.shape[0]}"
                )
                continue
            score = cosine_similarity(query_vector, entry.vector)
            if score > 0:
                scored.append((min(score, 1.0), entry))

        scored.sort(key=lambda item: (-item[0], item[1].paper_id))
        return [
            SearchHit(paper_id=entry.paper_id, score=score, title=entry.title, snippet=entry.snippet)
            for score, entry in scored[:limit]
        ]
