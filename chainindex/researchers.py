import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from chainindex.errors import ConflictError, ValidationError
from chainindex.models import Researcher
from chainindex.utils import is_blank, sanitize_text

logger = logging.getLogger(__name__)


class ReviewerPool(ABC):
    """Ordered set of identities a reviewer is drawn from."""

    @abstractmethod
    def size(self) -> int:
        pass

    @abstractmethod
    def member(self, index: int) -> str:
        pass


class StaticReviewerPool(ReviewerPool):
    def __init__(self, identities: Sequence[str]):
        # Order preserved, duplicates dropped
        self.identities = list(dict.fromkeys(i for i in identities if not is_blank(i)))

    def size(self) -> int:
        return len(self.identities)

    def member(self, index: int) -> str:
        return self.identities[index]


class ResearcherRegistry(ReviewerPool):
    """Registered researchers; in registration order they also form the reviewer pool."""

    def __init__(self, engine):
        self.engine = engine

    def register(self, identity: str, name: str) -> Researcher:
        if is_blank(identity):
            raise ValidationError("Identity cannot be empty")
        if is_blank(name):
            raise ValidationError("Name cannot be empty")

        with Session(self.engine) as session:
            if session.exec(select(Researcher).where(Researcher.identity == identity)).first():
                raise ConflictError(f"Researcher {identity} already registered")
            researcher = Researcher(identity=identity, name=sanitize_text(name))
            session.add(researcher)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConflictError(f"Researcher {identity} already registered") from e
            session.refresh(researcher)

        logger.info(f"Researcher {identity} registered as {name!r}")
        return researcher

    def get_name(self, identity: str) -> str:
        with Session(self.engine) as session:
            name = session.exec(select(Researcher.name).where(Researcher.identity == identity)).first()
        return name or ""

    def is_registered(self, identity: str) -> bool:
        return self.get_name(identity) != ""

    def list_researchers(self) -> List[Researcher]:
        with Session(self.engine) as session:
            return list(session.exec(select(Researcher).order_by(Researcher.id)).all())

    def size(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(Researcher)).one()

    def member(self, index: int) -> str:
        with Session(self.engine) as session:
            statement = select(Researcher.identity).order_by(Researcher.id).offset(index).limit(1)
            identity = session.exec(statement).first()
        if identity is None:
            raise IndexError(f"No researcher at position {index}")
        return identity
