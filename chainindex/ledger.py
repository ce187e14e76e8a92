"""
The paper ledger: system of record for paper submissions.

Every mutation is a single database transaction. Check-then-write sequences
run under locks: one re-entrant lock per paper for per-paper mutations, and
an index lock for anything touching the content hash / DOI uniqueness
indices. Locks are always taken in that order (paper, then index).
"""
import json
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence as Seq, Set

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from chainindex import permissions
from chainindex.errors import ConflictError, NotFoundError, ValidationError
from chainindex.events import (
    EmbeddingsGenerated,
    EventBus,
    LedgerEvent,
    PaperDeactivated,
    PaperSubmitted,
    PaperUpdated,
    ReviewerAssigned,
    event_from_record,
)
from chainindex.models import ContentHashClaim, EventRecord, Paper, PaperAuthor, utcnow
from chainindex.sequence import Sequence
from chainindex.utils import is_blank, sanitize_text

logger = logging.getLogger(__name__)

MIN_PUBLICATION_YEAR = 1900
MAX_AUTHORS = 10
MAX_KEYWORDS = 20


class PaperLedger:
    def __init__(
        self,
        engine,
        admin_identity: Optional[str] = None,
        events: Optional[EventBus] = None,
        min_publication_year: int = MIN_PUBLICATION_YEAR,
        max_authors: int = MAX_AUTHORS,
        max_keywords: int = MAX_KEYWORDS,
    ):
        self.engine = engine
        self.events = events or EventBus()
        self._admin_identity = admin_identity or None
        self.min_publication_year = min_publication_year
        self.max_authors = max_authors
        self.max_keywords = max_keywords

        self._ids = Sequence(self._highest_paper_id)
        self._index_lock = threading.RLock()
        self._paper_locks: Dict[int, threading.RLock] = {}
        self._paper_locks_guard = threading.Lock()

    @property
    def admin_identity(self) -> Optional[str]:
        return self._admin_identity

    # ------------------------------------------------------------------
    # Locking / transactions
    # ------------------------------------------------------------------

    @contextmanager
    def lock_paper(self, paper_id: int) -> Iterator[None]:
        with self._paper_locks_guard:
            lock = self._paper_locks.setdefault(paper_id, threading.RLock())
        with lock:
            yield

    def commit(self, session: Session):
        """Commit, turning a uniqueness violation raised by the database into a ConflictError."""
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise ConflictError(f"Uniqueness constraint violated: {e.orig}") from e

    def record_event(self, session: Session, event: LedgerEvent):
        session.add(event.to_record())

    def _highest_paper_id(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.max(Paper.id))).one() or 0

    def _load(self, session: Session, paper_id: int) -> Paper:
        paper = session.get(Paper, paper_id)
        if paper is None:
            raise NotFoundError(f"Paper {paper_id} not found")
        return paper

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _validate_submission(self, content_hash, title, abstract_text, doi, publication_year,
                             keywords: List[str], authors: List[str], acting_identity):
        if is_blank(content_hash):
            raise ValidationError("Content hash cannot be empty")
        if is_blank(title):
            raise ValidationError("Title cannot be empty")
        if is_blank(abstract_text):
            raise ValidationError("Abstract cannot be empty")
        if is_blank(doi):
            raise ValidationError("DOI cannot be empty")
        if is_blank(acting_identity):
            raise ValidationError("Acting identity is required")

        current_year = utcnow().year
        if not isinstance(publication_year, int) or not (self.min_publication_year <= publication_year <= current_year):
            raise ValidationError(
                f"Invalid publication year {publication_year!r}: must be between "
                f"{self.min_publication_year} and {current_year}"
            )

        if not authors:
            raise ValidationError("Must have at least one author")
        if len(authors) > self.max_authors:
            raise ValidationError(f"Too many authors: {len(authors)} > {self.max_authors}")
        if any(is_blank(author) for author in authors):
            raise ValidationError("Author identities cannot be empty")
        if len(keywords) > self.max_keywords:
            raise ValidationError(f"Too many keywords: {len(keywords)} > {self.max_keywords}")

    def submit(
        self,
        content_hash: str,
        title: str,
        abstract_text: str,
        doi: str,
        publication_year: int,
        keywords: Iterable[str],
        authors: Iterable[str],
        version: str,
        acting_identity: str,
    ) -> int:
        keywords = list(keywords)
        authors = list(authors)
        self._validate_submission(content_hash, title, abstract_text, doi, publication_year,
                                  keywords, authors, acting_identity)

        with self._index_lock, Session(self.engine) as session:
            if session.get(ContentHashClaim, content_hash) is not None:
                raise ConflictError(f"Content hash {content_hash} already exists")
            if session.exec(select(Paper.id).where(Paper.doi == doi)).first() is not None:
                raise ConflictError(f"DOI {doi} already exists")

            with self._ids.allocate() as paper_id:
                paper = Paper(
                    id=paper_id,
                    content_hash=content_hash,
                    title=sanitize_text(title),
                    abstract_text=sanitize_text(abstract_text),
                    doi=doi,
                    publication_year=publication_year,
                    keywords=json.dumps([sanitize_text(k) for k in keywords]),
                    authors=json.dumps(authors),
                    submitter=acting_identity,
                    version=version or "",
                )
                session.add(paper)
                session.add(ContentHashClaim(content_hash=content_hash, paper_id=paper_id))
                # An identity listed twice is indexed once
                for author in dict.fromkeys(authors):
                    session.add(PaperAuthor(author=author, paper_id=paper_id))

                event = PaperSubmitted(paper_id=paper_id, content_hash=content_hash, submitter=acting_identity)
                self.record_event(session, event)
                self.commit(session)

        logger.info(f"Paper {paper_id} submitted by {acting_identity} (doi={doi})")
        self.events.publish(event)
        return paper_id

    def update(self, paper_id: int, new_content_hash: str, new_version: str, acting_identity: str):
        with self.lock_paper(paper_id), self._index_lock, Session(self.engine) as session:
            paper = self._load(session, paper_id)
            permissions.require_role(paper, acting_identity, permissions.UPDATE, self._admin_identity)
            if is_blank(new_content_hash):
                raise ValidationError("Content hash cannot be empty")
            if is_blank(new_version):
                raise ValidationError("Version cannot be empty")
            if not paper.is_active:
                raise ConflictError(f"Paper {paper_id} is inactive")
            # Claims are never released, so this also rejects the paper's own current hash
            if session.get(ContentHashClaim, new_content_hash) is not None:
                raise ConflictError(f"Content hash {new_content_hash} already exists")

            paper.content_hash = new_content_hash
            paper.version = new_version
            # Embeddings derive from content
            paper.embedding_ref = ""
            paper.embeddings_generated = False
            paper.updated_at = utcnow()
            session.add(paper)
            session.add(ContentHashClaim(content_hash=new_content_hash, paper_id=paper_id))

            event = PaperUpdated(paper_id=paper_id, new_content_hash=new_content_hash, new_version=new_version)
            self.record_event(session, event)
            self.commit(session)

        logger.info(f"Paper {paper_id} updated to version {new_version}")
        self.events.publish(event)

    def deactivate(self, paper_id: int, acting_identity: str):
        with self.lock_paper(paper_id), Session(self.engine) as session:
            paper = self._load(session, paper_id)
            permissions.require_role(paper, acting_identity, permissions.DEACTIVATE, self._admin_identity)
            if not paper.is_active:
                raise ConflictError(f"Paper {paper_id} is already inactive")

            paper.is_active = False
            paper.updated_at = utcnow()
            session.add(paper)

            event = PaperDeactivated(paper_id=paper_id)
            self.record_event(session, event)
            self.commit(session)

        logger.info(f"Paper {paper_id} deactivated")
        self.events.publish(event)

    def store_embedding(self, paper_id: int, embedding_ref: str, acting_identity: str):
        with self.lock_paper(paper_id), Session(self.engine) as session:
            paper = self._load(session, paper_id)
            if is_blank(embedding_ref):
                raise ValidationError("Embedding reference cannot be empty")
            if not paper.is_active:
                raise ConflictError(f"Paper {paper_id} is inactive")
            permissions.require_role(paper, acting_identity, permissions.STORE_EMBEDDING, self._admin_identity)

            paper.embedding_ref = embedding_ref
            paper.embeddings_generated = True
            paper.updated_at = utcnow()
            session.add(paper)

            event = EmbeddingsGenerated(paper_id=paper_id, embedding_ref=embedding_ref, actor=acting_identity)
            self.record_event(session, event)
            self.commit(session)

        logger.info(f"Embeddings stored for paper {paper_id}: {embedding_ref}")
        self.events.publish(event)

    def record_reviewer_assignment(self, session: Session, paper_id: int, reviewer: str) -> ReviewerAssigned:
        """
        Record a reviewer inside the caller's transaction.

        The caller must hold ``lock_paper(paper_id)``, commit the session and
        publish the returned event.
        """
        paper = self._load(session, paper_id)
        if not paper.is_active:
            raise ConflictError(f"Paper {paper_id} is inactive")
        if paper.reviewer_assigned:
            raise ConflictError(f"Paper {paper_id} already has a reviewer")

        paper.assigned_reviewer = reviewer
        paper.reviewer_assigned = True
        paper.updated_at = utcnow()
        session.add(paper)

        event = ReviewerAssigned(paper_id=paper_id, reviewer=reviewer)
        self.record_event(session, event)
        return event

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, paper_id: int) -> Paper:
        with Session(self.engine) as session:
            return self._load(session, paper_id)

    def get_by_author(self, identity: str) -> List[int]:
        with Session(self.engine) as session:
            statement = (
                select(PaperAuthor.paper_id)
                .where(PaperAuthor.author == identity)
                .order_by(PaperAuthor.paper_id)
            )
            return list(session.exec(statement).all())

    def get_by_doi(self, doi: str) -> int:
        with Session(self.engine) as session:
            paper_id = session.exec(select(Paper.id).where(Paper.doi == doi)).first()
        if paper_id is None:
            raise NotFoundError(f"No paper with DOI {doi}")
        return paper_id

    def list_with_embeddings(self, active_only: bool = False) -> Set[int]:
        with Session(self.engine) as session:
            statement = select(Paper.id).where(Paper.embeddings_generated == True)
            if active_only:
                statement = statement.where(Paper.is_active == True)
            return set(session.exec(statement).all())

    def searchable_refs(self) -> Dict[int, str]:
        """Current embedding reference of every active paper that has one."""
        with Session(self.engine) as session:
            statement = select(Paper.id, Paper.embedding_ref).where(
                Paper.is_active == True,
                Paper.embeddings_generated == True,
            )
            return {paper_id: ref for paper_id, ref in session.exec(statement).all()}

    def list_papers(self, active: Optional[bool] = None, limit: int = 50, offset: int = 0) -> List[Paper]:
        with Session(self.engine) as session:
            statement = select(Paper)
            if active is not None:
                statement = statement.where(Paper.is_active == active)
            statement = statement.order_by(Paper.id).offset(offset).limit(limit)
            return list(session.exec(statement).all())

    def get_many(self, paper_ids: Seq[int]) -> List[Paper]:
        with Session(self.engine) as session:
            papers = session.exec(select(Paper).where(Paper.id.in_(list(paper_ids)))).all()
        by_id = {paper.id: paper for paper in papers}
        return [by_id[paper_id] for paper_id in paper_ids if paper_id in by_id]

    def total_papers(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(Paper)).one()

    def events_log(self, name: Optional[str] = None, paper_id: Optional[int] = None) -> List[LedgerEvent]:
        """Replay the event log in commit order."""
        with Session(self.engine) as session:
            statement = select(EventRecord)
            if name:
                statement = statement.where(EventRecord.name == name)
            if paper_id is not None:
                statement = statement.where(EventRecord.paper_id == paper_id)
            records = session.exec(statement.order_by(EventRecord.id)).all()
            return [event_from_record(record) for record in records]
