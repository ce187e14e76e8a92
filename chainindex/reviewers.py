"""
Reviewer assignment: a two-phase protocol with a randomness oracle.

``trigger_assignment`` records a REQUESTED row and hands a correlation token
to the oracle; ``on_randomness_fulfilled`` is called back later with the
random value, derives the reviewer and commits the assignment. Delivery may
be repeated, so fulfilment is a no-op once the request is FULFILLED.

A request that is never fulfilled stays REQUESTED and blocks a new trigger
for that paper; ``pending_requests`` lists them.
"""
import logging
from enum import Enum
from typing import List

from sqlalchemy import func
from sqlmodel import Session, select

from chainindex import permissions
from chainindex.errors import ConflictError, NotFoundError, OracleRequestError, ValidationError
from chainindex.ledger import PaperLedger
from chainindex.models import RequestState, ReviewerRequest, utcnow
from chainindex.researchers import ReviewerPool
from chainindex.sequence import Sequence
from chainindex.services.oracle import RandomnessOracle

logger = logging.getLogger(__name__)


class AssignmentState(str, Enum):
    UNREQUESTED = "UNREQUESTED"
    REQUESTED = "REQUESTED"
    FULFILLED = "FULFILLED"


class ReviewerAssignmentProtocol:
    def __init__(self, ledger: PaperLedger, oracle: RandomnessOracle, pool: ReviewerPool):
        self.ledger = ledger
        self.oracle = oracle
        self.pool = pool
        self._tokens = Sequence(self._highest_token)

    @property
    def engine(self):
        return self.ledger.engine

    def _highest_token(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.max(ReviewerRequest.token))).one() or 0

    def _request_for_paper(self, session: Session, paper_id: int) -> ReviewerRequest | None:
        return session.exec(select(ReviewerRequest).where(ReviewerRequest.paper_id == paper_id)).first()

    def trigger_assignment(self, paper_id: int, acting_identity: str) -> int:
        with self.ledger.lock_paper(paper_id), Session(self.engine) as session:
            paper = self.ledger.get(paper_id)
            permissions.require_role(paper, acting_identity, permissions.TRIGGER_ASSIGNMENT,
                                     self.ledger.admin_identity)
            if not paper.is_active:
                raise ConflictError(f"Paper {paper_id} is inactive")
            if paper.reviewer_assigned:
                raise ConflictError(f"Paper {paper_id} already has a reviewer")
            existing = self._request_for_paper(session, paper_id)
            if existing is not None:
                raise ConflictError(
                    f"Reviewer assignment for paper {paper_id} already {existing.state.value.lower()}"
                )

            token = self._tokens.next()
            session.add(ReviewerRequest(token=token, paper_id=paper_id, requested_by=acting_identity))
            self.ledger.commit(session)

        # Outside the paper lock; the committed row already blocks a second trigger
        try:
            accepted = self.oracle.request(token)
        except Exception as e:
            self._withdraw(paper_id, token)
            raise OracleRequestError(f"Randomness request for paper {paper_id} failed: {e}") from e
        if not accepted:
            self._withdraw(paper_id, token)
            raise OracleRequestError(f"Randomness request for paper {paper_id} was not accepted")

        logger.info(f"Reviewer assignment requested for paper {paper_id} (token {token})")
        return token

    def _withdraw(self, paper_id: int, token: int):
        with self.ledger.lock_paper(paper_id), Session(self.engine) as session:
            request = session.get(ReviewerRequest, token)
            if request is not None and request.state == RequestState.REQUESTED:
                session.delete(request)
                session.commit()
        logger.warning(f"Randomness request {token} withdrawn")

    def on_randomness_fulfilled(self, token: int, random_value: int):
        if random_value < 0:
            raise ValidationError("Random value must be non-negative")

        with Session(self.engine) as session:
            request = session.get(ReviewerRequest, token)
            if request is None:
                raise NotFoundError(f"Unknown randomness request token {token}")
            paper_id = request.paper_id

        with self.ledger.lock_paper(paper_id), Session(self.engine) as session:
            # Re-read under the lock: the request may have been fulfilled or withdrawn meanwhile
            request = session.get(ReviewerRequest, token)
            if request is None:
                raise NotFoundError(f"Unknown randomness request token {token}")
            if request.state == RequestState.FULFILLED:
                logger.info(f"Duplicate fulfilment for token {token} ignored")
                return

            pool_size = self.pool.size()
            if pool_size <= 0:
                raise ConflictError("Reviewer pool is empty")
            reviewer = self.pool.member(random_value % pool_size)

            event = self.ledger.record_reviewer_assignment(session, paper_id, reviewer)
            request.state = RequestState.FULFILLED
            request.random_value = str(random_value)
            request.reviewer = reviewer
            request.fulfilled_at = utcnow()
            session.add(request)
            self.ledger.commit(session)

        logger.info(f"Reviewer {reviewer} assigned to paper {paper_id} (token {token})")
        self.ledger.events.publish(event)

    def state_of(self, paper_id: int) -> AssignmentState:
        self.ledger.get(paper_id)
        with Session(self.engine) as session:
            request = self._request_for_paper(session, paper_id)
        if request is None:
            return AssignmentState.UNREQUESTED
        return AssignmentState(request.state.value)

    def get_request(self, token: int) -> ReviewerRequest:
        with Session(self.engine) as session:
            request = session.get(ReviewerRequest, token)
        if request is None:
            raise NotFoundError(f"Unknown randomness request token {token}")
        return request

    def request_for_paper(self, paper_id: int) -> ReviewerRequest | None:
        with Session(self.engine) as session:
            return self._request_for_paper(session, paper_id)

    def pending_requests(self) -> List[ReviewerRequest]:
        with Session(self.engine) as session:
            statement = (
                select(ReviewerRequest)
                .where(ReviewerRequest.state == RequestState.REQUESTED)
                .order_by(ReviewerRequest.requested_at)
            )
            return list(session.exec(statement).all())
