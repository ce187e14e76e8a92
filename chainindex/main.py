import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Field, SQLModel

from chainindex import permissions
from chainindex.config import settings
from chainindex.container import Services, build_services
from chainindex.database import engine, init_db
from chainindex.errors import AuthorizationError, ChainIndexError, ConflictError
from chainindex.logger import logger
from chainindex.models import Paper
from chainindex.scheduler import SchedulerService
from chainindex.services.embedding import EmbeddingStats
from chainindex.services.oracle import LocalRandomnessOracle
from chainindex.worker import fulfill_randomness, run_embedding_backfill

@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.LOG_LEVEL)
    init_db()
    services = build_services(engine, settings)
    services.search.rebuild()
    app.state.services = services

    scheduler = SchedulerService(services)
    scheduler.start()
    yield
    scheduler.shutdown()

app = FastAPI(title="ChainIndex API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_services(request: Request) -> Services:
    return request.app.state.services

@app.exception_handler(ChainIndexError)
async def chainindex_error_handler(request: Request, exc: ChainIndexError):
    return JSONResponse(status_code=exc.status_code, content={"kind": exc.kind, "detail": exc.detail})

# ----------------------------------------------------------------------
# Schemas
# ----------------------------------------------------------------------

class SubmitPaperRequest(SQLModel):
    content_hash: str
    title: str
    abstract_text: str
    doi: str
    publication_year: int
    keywords: List[str] = []
    authors: List[str]
    version: str = ""

class UpdatePaperRequest(SQLModel):
    content_hash: str
    version: str

class StoreEmbeddingRequest(SQLModel):
    embedding_ref: str

class FulfillRequest(SQLModel):
    token: int
    random_value: int = Field(ge=0)

class RegisterResearcherRequest(SQLModel):
    name: str

class PaperRead(SQLModel):
    id: int
    content_hash: str
    title: str
    abstract_text: str
    doi: str
    publication_year: int
    keywords: List[str]
    authors: List[str]
    submitter: str
    version: str
    is_active: bool
    embedding_ref: str
    embeddings_generated: bool
    assigned_reviewer: Optional[str]
    reviewer_assigned: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_paper(cls, paper: Paper) -> "PaperRead":
        data = paper.model_dump()
        data["keywords"] = paper.keywords_list
        data["authors"] = paper.authors_list
        return cls(**data)

class ReviewerStatus(SQLModel):
    paper_id: int
    state: str
    token: Optional[int] = None
    reviewer: Optional[str] = None

class SearchResult(SQLModel):
    paper_id: int
    score: float
    title: str
    snippet: str

# ----------------------------------------------------------------------
# Papers
# ----------------------------------------------------------------------

@app.post("/papers", status_code=201)
def submit_paper(
    body: SubmitPaperRequest,
    x_identity: str = Header(...),
    services: Services = Depends(get_services),
):
    paper_id = services.ledger.submit(
        content_hash=body.content_hash,
        title=body.title,
        abstract_text=body.abstract_text,
        doi=body.doi,
        publication_year=body.publication_year,
        keywords=body.keywords,
        authors=body.authors,
        version=body.version,
        acting_identity=x_identity,
    )
    return {"id": paper_id}

@app.get("/papers", response_model=List[PaperRead])
def list_papers(
    active: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    return [PaperRead.from_paper(p) for p in services.ledger.list_papers(active=active, limit=limit, offset=offset)]

@app.get("/papers/by-doi", response_model=PaperRead)
def get_paper_by_doi(doi: str, services: Services = Depends(get_services)):
    paper_id = services.ledger.get_by_doi(doi)
    return PaperRead.from_paper(services.ledger.get(paper_id))

@app.get("/papers/{paper_id}", response_model=PaperRead)
def get_paper(paper_id: int, services: Services = Depends(get_services)):
    return PaperRead.from_paper(services.ledger.get(paper_id))

@app.put("/papers/{paper_id}")
def update_paper(
    paper_id: int,
    body: UpdatePaperRequest,
    x_identity: str = Header(...),
    services: Services = Depends(get_services),
):
    services.ledger.update(paper_id, body.content_hash, body.version, x_identity)
    return {"message": f"Paper {paper_id} updated; embeddings must be regenerated."}

@app.post("/papers/{paper_id}/deactivate")
def deactivate_paper(paper_id: int, x_identity: str = Header(...), services: Services = Depends(get_services)):
    services.ledger.deactivate(paper_id, x_identity)
    return {"message": f"Paper {paper_id} deactivated."}

@app.post("/papers/{paper_id}/embedding")
def store_embedding(
    paper_id: int,
    body: StoreEmbeddingRequest,
    x_identity: str = Header(...),
    services: Services = Depends(get_services),
):
    services.ledger.store_embedding(paper_id, body.embedding_ref, x_identity)
    return {"message": f"Embedding stored for paper {paper_id}.", "embedding_ref": body.embedding_ref}

@app.post("/papers/{paper_id}/embedding/generate")
def generate_embedding(paper_id: int, x_identity: str = Header(...), services: Services = Depends(get_services)):
    """
    Generate, store and index the embedding of one paper.
    Restricted to the paper's submitter and the administrator.
    """
    paper = services.ledger.get(paper_id)
    permissions.require_role(paper, x_identity, permissions.STORE_EMBEDDING, services.ledger.admin_identity)
    embedding_ref = services.embeddings.generate_paper_embeddings(paper_id)
    return {"message": f"Embeddings generated for paper {paper_id}.", "embedding_ref": embedding_ref}

@app.get("/authors/{identity}/papers", response_model=List[int])
def list_papers_by_author(identity: str, services: Services = Depends(get_services)):
    return services.ledger.get_by_author(identity)

# ----------------------------------------------------------------------
# Reviewer assignment
# ----------------------------------------------------------------------

@app.post("/papers/{paper_id}/reviewer", status_code=202)
def trigger_reviewer_assignment(
    paper_id: int,
    background_tasks: BackgroundTasks,
    x_identity: str = Header(...),
    services: Services = Depends(get_services),
):
    token = services.assignments.trigger_assignment(paper_id, x_identity)
    if isinstance(services.oracle, LocalRandomnessOracle) and services.settings.ORACLE_AUTO_FULFILL:
        background_tasks.add_task(fulfill_randomness, services, token)
    return {"message": f"Reviewer assignment requested for paper {paper_id}.", "token": token}

@app.get("/papers/{paper_id}/reviewer", response_model=ReviewerStatus)
def get_reviewer_status(paper_id: int, services: Services = Depends(get_services)):
    state = services.assignments.state_of(paper_id)
    request = services.assignments.request_for_paper(paper_id)
    return ReviewerStatus(
        paper_id=paper_id,
        state=state.value,
        token=request.token if request else None,
        reviewer=request.reviewer if request else None,
    )

def check_oracle_secret(services: Services, secret: Optional[str]):
    expected = services.settings.ORACLE_CALLBACK_SECRET
    if expected and not hmac.compare_digest(secret or "", expected):
        raise AuthorizationError("Invalid oracle secret")

@app.post("/oracle/fulfill")
def oracle_fulfill(
    body: FulfillRequest,
    x_oracle_secret: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    check_oracle_secret(services, x_oracle_secret)
    services.assignments.on_randomness_fulfilled(body.token, body.random_value)
    return {"message": f"Randomness for token {body.token} delivered."}

@app.post("/oracle/pending/fulfill")
def redeliver_pending_randomness(
    x_oracle_secret: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """
    Redeliver randomness for every request the local oracle still holds,
    e.g. after reviewers were registered into an empty pool.
    """
    check_oracle_secret(services, x_oracle_secret)
    if not isinstance(services.oracle, LocalRandomnessOracle):
        raise ConflictError("Randomness is delivered by a remote oracle")
    delivered = services.oracle.fulfill_pending()
    return {"delivered": delivered, "pending": services.oracle.pending}

# ----------------------------------------------------------------------
# Search & embeddings
# ----------------------------------------------------------------------

@app.get("/search", response_model=List[SearchResult])
def search(
    q: str,
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
):
    return [SearchResult(**asdict(hit)) for hit in services.search.query(q, limit)]

@app.get("/embeddings/stats", response_model=EmbeddingStats)
def embedding_stats(services: Services = Depends(get_services)):
    return services.embeddings.stats()

@app.post("/embeddings/backfill")
async def trigger_backfill(background_tasks: BackgroundTasks, services: Services = Depends(get_services)):
    """
    Generate embeddings for all active papers without them, in the background.
    """
    background_tasks.add_task(run_embedding_backfill, services)
    return {"message": "Embedding back-fill started in background."}

# ----------------------------------------------------------------------
# Researchers
# ----------------------------------------------------------------------

@app.post("/researchers", status_code=201)
def register_researcher(
    body: RegisterResearcherRequest,
    x_identity: str = Header(...),
    services: Services = Depends(get_services),
):
    researcher = services.researchers.register(x_identity, body.name)
    return {"identity": researcher.identity, "name": researcher.name}

@app.get("/researchers")
def list_researchers(services: Services = Depends(get_services)):
    return [{"identity": r.identity, "name": r.name} for r in services.researchers.list_researchers()]

@app.get("/researchers/{identity}")
def get_researcher(identity: str, services: Services = Depends(get_services)):
    return {
        "identity": identity,
        "name": services.researchers.get_name(identity),
        "registered": services.researchers.is_registered(identity),
    }

# ----------------------------------------------------------------------
# Events & logs
# ----------------------------------------------------------------------

@app.get("/events")
def list_events(
    name: Optional[str] = None,
    paper_id: Optional[int] = None,
    services: Services = Depends(get_services),
):
    return [
        {"name": event.event_name(), **event.model_dump()}
        for event in services.ledger.events_log(name=name, paper_id=paper_id)
    ]

@app.websocket("/ws/logs")
async def stream_logs(websocket: WebSocket):
    await logger.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.disconnect(websocket)

@app.get("/")
def read_root():
    return {"message": "Welcome to ChainIndex. POST /papers to submit a paper."}
