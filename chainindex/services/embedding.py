import hashlib
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from openai import OpenAI
from pydantic import BaseModel

from chainindex.config import Settings
from chainindex.errors import ConflictError
from chainindex.ledger import PaperLedger
from chainindex.models import Paper
from chainindex.services.content_store import EmbeddingStore
from chainindex.utils import sanitize_text

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"[a-z0-9]+")
STOPWORDS = frozenset(
    "a an and are as at be by for from has in is it its of on or that the this to was were with we our".split()
)

class EmbeddingStats(BaseModel):
    total_papers: int
    papers_with_embeddings: int
    papers_without_embeddings: int

class EmbeddingGenerator(ABC):
    model: str = ""
    dimensions: int = 0

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        pass

class OpenAIEmbeddingGenerator(EmbeddingGenerator):
    def __init__(self, api_key: str | None, base_url: str | None,
                 model: str = "text-embedding-3-small", dimensions: int = 1024):
        self.client = OpenAI(api_key=api_key, base_url=base_url)
        self.model = model
        self.dimensions = dimensions

    def embed(self, text: str) -> List[float]:
        response = self.client.embeddings.create(
            model=self.model,
            input=sanitize_text(text) or "",
            dimensions=self.dimensions,
        )
        return response.data[0].embedding

class HashingEmbeddingGenerator(EmbeddingGenerator):
    """
    Deterministic bag-of-words embedding: every token is hashed into one of
    ``dimensions`` buckets. Needs no network access, so it serves offline
    deployments and tests. Texts without shared tokens score (almost) zero.
    """
    model = "feature-hashing"

    def __init__(self, dimensions: int = 1024):
        if dimensions < 1:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def tokens(self, text: str) -> List[str]:
        return [t for t in TOKEN_RE.findall(text.lower()) if t not in STOPWORDS]

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in self.tokens(text):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:8], "big") % self.dimensions] += 1.0
        return vector

def get_embedding_generator(settings: Settings) -> EmbeddingGenerator:
    if settings.EMBEDDING_PROVIDER == "openai":
        return OpenAIEmbeddingGenerator(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            model=settings.EMBEDDING_MODEL,
            dimensions=settings.EMBEDDING_DIMENSIONS,
        )
    if settings.EMBEDDING_PROVIDER == "hashing":
        return HashingEmbeddingGenerator(settings.EMBEDDING_DIMENSIONS)
    raise ValueError(f"Unknown EMBEDDING_PROVIDER: {settings.EMBEDDING_PROVIDER}")

class EmbeddingService:
    """Generates paper embeddings, stores them and records the reference on the ledger."""

    def __init__(self, ledger: PaperLedger, generator: EmbeddingGenerator, store: EmbeddingStore,
                 actor: Optional[str] = None):
        self.ledger = ledger
        self.generator = generator
        self.store = store
        # Defaults to the ledger administrator; without one each paper's submitter acts
        self.actor = actor or ledger.admin_identity

    @staticmethod
    def paper_text(paper: Paper) -> str:
        return " ".join([paper.title, paper.abstract_text, *paper.keywords_list, *paper.authors_list])

    def generate_paper_embeddings(self, paper_id: int) -> str:
        paper = self.ledger.get(paper_id)
        if not paper.is_active:
            raise ConflictError(f"Paper {paper_id} is inactive")

        vector = self.generator.embed(self.paper_text(paper))
        embedding_ref = self.store.save(paper_id, vector, model=self.generator.model)
        self.ledger.store_embedding(paper_id, embedding_ref, self.actor or paper.submitter)
        logger.info(f"Embeddings generated for paper {paper_id}: {embedding_ref}")
        return embedding_ref

    def missing_embeddings(self) -> List[int]:
        with_embeddings = self.ledger.list_with_embeddings()
        papers = self.ledger.list_papers(active=True, limit=self.ledger.total_papers() or 1)
        return [p.id for p in papers if p.id not in with_embeddings]

    def generate_all_missing(self) -> List[int]:
        generated = []
        for paper_id in self.missing_embeddings():
            try:
                self.generate_paper_embeddings(paper_id)
                generated.append(paper_id)
            except Exception as e:
                logger.warning(f"Error generating embeddings for paper {paper_id}: {e}")
        return generated

    def stats(self) -> EmbeddingStats:
        total = self.ledger.total_papers()
        with_embeddings = len(self.ledger.list_with_embeddings())
        return EmbeddingStats(
            total_papers=total,
            papers_with_embeddings=with_embeddings,
            papers_without_embeddings=total - with_embeddings,
        )
