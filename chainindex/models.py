from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
from sqlmodel import SQLModel, Field
import json

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Paper(SQLModel, table=True):
    id: int = Field(primary_key=True)  # assigned by the ledger sequence
    content_hash: str = Field(index=True, unique=True)
    title: str
    abstract_text: str
    doi: str = Field(index=True, unique=True)
    publication_year: int
    keywords: str = "[]"  # JSON list
    authors: str = "[]"  # JSON list of identities
    submitter: str = Field(index=True)
    version: str = ""

    is_active: bool = True

    embedding_ref: str = ""
    embeddings_generated: bool = False

    assigned_reviewer: Optional[str] = None
    reviewer_assigned: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def authors_list(self) -> List[str]:
        if not self.authors:
            return []
        return json.loads(self.authors)

    @property
    def keywords_list(self) -> List[str]:
        if not self.keywords:
            return []
        return json.loads(self.keywords)

class PaperAuthor(SQLModel, table=True):
    author: str = Field(primary_key=True)
    paper_id: int = Field(primary_key=True, foreign_key="paper.id")

class ContentHashClaim(SQLModel, table=True):
    """A content hash stays claimed once any paper has used it."""
    content_hash: str = Field(primary_key=True)
    paper_id: int = Field(foreign_key="paper.id", index=True)
    claimed_at: datetime = Field(default_factory=utcnow)

class RequestState(str, Enum):
    REQUESTED = "REQUESTED"
    FULFILLED = "FULFILLED"

class ReviewerRequest(SQLModel, table=True):
    token: int = Field(primary_key=True)
    paper_id: int = Field(foreign_key="paper.id", unique=True)
    state: RequestState = RequestState.REQUESTED
    requested_by: str
    random_value: Optional[str] = None  # decimal; 256-bit values overflow SQLite integers
    reviewer: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)
    fulfilled_at: Optional[datetime] = None

class Researcher(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    identity: str = Field(index=True, unique=True)
    name: str
    registered_at: datetime = Field(default_factory=utcnow)

class EventRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    paper_id: int = Field(index=True)
    payload: str  # JSON
    created_at: datetime = Field(default_factory=utcnow)
