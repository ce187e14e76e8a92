from dataclasses import dataclass

from chainindex.config import Settings
from chainindex.events import EventBus
from chainindex.ledger import PaperLedger
from chainindex.researchers import ResearcherRegistry, ReviewerPool, StaticReviewerPool
from chainindex.reviewers import ReviewerAssignmentProtocol
from chainindex.search import SearchIndex
from chainindex.services.content_store import ContentStore, EmbeddingStore, LocalContentStore
from chainindex.services.embedding import EmbeddingGenerator, EmbeddingService, get_embedding_generator
from chainindex.services.oracle import LocalRandomnessOracle, RandomnessOracle, get_oracle


@dataclass
class Services:
    settings: Settings
    ledger: PaperLedger
    researchers: ResearcherRegistry
    assignments: ReviewerAssignmentProtocol
    search: SearchIndex
    embeddings: EmbeddingService
    oracle: RandomnessOracle


def build_services(
    engine,
    settings: Settings,
    content_store: ContentStore | None = None,
    generator: EmbeddingGenerator | None = None,
    oracle: RandomnessOracle | None = None,
    pool: ReviewerPool | None = None,
) -> Services:
    """Wire the ledger, protocol and search index to their collaborators."""
    ledger = PaperLedger(
        engine,
        admin_identity=settings.ADMIN_IDENTITY,
        events=EventBus(),
        min_publication_year=settings.MIN_PUBLICATION_YEAR,
        max_authors=settings.MAX_AUTHORS,
        max_keywords=settings.MAX_KEYWORDS,
    )
    researchers = ResearcherRegistry(engine)

    content_store = content_store or LocalContentStore(settings.CONTENT_STORE_DIR)
    embedding_store = EmbeddingStore(content_store)
    generator = generator or get_embedding_generator(settings)

    oracle = oracle or get_oracle(settings)
    if pool is None:
        pool = StaticReviewerPool(settings.REVIEWER_POOL) if settings.REVIEWER_POOL else researchers
    assignments = ReviewerAssignmentProtocol(ledger, oracle, pool)
    if isinstance(oracle, LocalRandomnessOracle):
        oracle.bind(assignments.on_randomness_fulfilled)

    search = SearchIndex(ledger, generator, embedding_store, snippet_length=settings.SEARCH_SNIPPET_LENGTH)
    search.subscribe()

    return Services(
        settings=settings,
        ledger=ledger,
        researchers=researchers,
        assignments=assignments,
        search=search,
        embeddings=EmbeddingService(ledger, generator, embedding_store),
        oracle=oracle,
    )
