import re
import pytest
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool
from fastapi.testclient import TestClient

from chainindex.config import Settings
from chainindex.container import build_services
from chainindex.database import init_db
from chainindex.main import app, get_services
from chainindex.researchers import StaticReviewerPool
from chainindex.services.content_store import LocalContentStore
from chainindex.services.embedding import EmbeddingGenerator
from chainindex.services.oracle import LocalRandomnessOracle

ADMIN = "0xADMIN"
ALICE = "0xA11CE"
BOB = "0xB0B"
REVIEWERS = ["0xREV0", "0xREV1", "0xREV2"]

VOCABULARY = [
    "blockchain", "consensus", "mechanisms", "ledger", "proof", "stake", "distributed",
    "cooking", "recipes", "pasta", "sauce", "kitchen",
    "neural", "networks", "learning", "graph",
]

class VocabularyEmbeddingGenerator(EmbeddingGenerator):
    """One dimension per known word, so unrelated texts are exactly orthogonal."""
    model = "test-vocabulary"
    dimensions = len(VOCABULARY)

    def embed(self, text):
        tokens = re.findall(r"[a-z]+", text.lower())
        return [float(tokens.count(word)) for word in VOCABULARY]

@pytest.fixture(name="engine")
def engine_fixture():
    # StaticPool keeps one in-memory SQLite connection shared across threads
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)

@pytest.fixture(name="file_engine")
def file_engine_fixture(tmp_path):
    # Threaded tests need one connection per thread, which an in-memory StaticPool cannot give
    engine = create_engine(
        f"sqlite:///{tmp_path / 'chainindex.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(engine)
    yield engine
    engine.dispose()

@pytest.fixture(name="threaded_services")
def threaded_services_fixture(file_engine, settings, tmp_path):
    return build_services(
        file_engine,
        settings,
        content_store=LocalContentStore(tmp_path / "content"),
        generator=VocabularyEmbeddingGenerator(),
        oracle=LocalRandomnessOracle(),
        pool=StaticReviewerPool(REVIEWERS),
    )

@pytest.fixture(name="settings")
def settings_fixture(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        ADMIN_IDENTITY=ADMIN,
        CONTENT_STORE_DIR=str(tmp_path / "content"),
        ORACLE_AUTO_FULFILL=True,
    )

@pytest.fixture(name="oracle")
def oracle_fixture():
    return LocalRandomnessOracle()

@pytest.fixture(name="services")
def services_fixture(engine, settings, oracle, tmp_path):
    return build_services(
        engine,
        settings,
        content_store=LocalContentStore(tmp_path / "content"),
        generator=VocabularyEmbeddingGenerator(),
        oracle=oracle,
        pool=StaticReviewerPool(REVIEWERS),
    )

@pytest.fixture(name="ledger")
def ledger_fixture(services):
    return services.ledger

@pytest.fixture(name="submit")
def submit_fixture(ledger):
    """Submit a paper with sensible defaults; keyword arguments override them."""
    counter = {"n": 0}

    def _submit(**overrides):
        counter["n"] += 1
        n = counter["n"]
        fields = dict(
            content_hash=f"hash-{n}",
            title=f"Paper {n}",
            abstract_text="An abstract about distributed ledger systems.",
            doi=f"10.1000/test-{n}",
            publication_year=2024,
            keywords=["ledger"],
            authors=[ALICE],
            version="1.0.0",
            acting_identity=ALICE,
        )
        fields.update(overrides)
        return ledger.submit(**fields)

    return _submit

@pytest.fixture(name="client")
def client_fixture(services):
    app.dependency_overrides[get_services] = lambda: services
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
