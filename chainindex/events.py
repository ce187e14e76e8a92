"""
Events emitted by the ledger and the reviewer protocol.

Events are written to the ``EventRecord`` log inside the transaction that
causes them and handed to in-process subscribers once that transaction has
committed.
"""
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Type

from pydantic import BaseModel

from chainindex.models import EventRecord

logger = logging.getLogger(__name__)


class LedgerEvent(BaseModel):
    paper_id: int

    @classmethod
    def event_name(cls) -> str:
        return cls.__name__

    def to_record(self) -> EventRecord:
        return EventRecord(
            name=self.event_name(),
            paper_id=self.paper_id,
            payload=self.model_dump_json(),
        )


class PaperSubmitted(LedgerEvent):
    content_hash: str
    submitter: str


class PaperUpdated(LedgerEvent):
    new_content_hash: str
    new_version: str


class PaperDeactivated(LedgerEvent):
    pass


class EmbeddingsGenerated(LedgerEvent):
    embedding_ref: str
    actor: str


class ReviewerAssigned(LedgerEvent):
    reviewer: str


EVENT_TYPES: Dict[str, Type[LedgerEvent]] = {
    cls.event_name(): cls
    for cls in (PaperSubmitted, PaperUpdated, PaperDeactivated, EmbeddingsGenerated, ReviewerAssigned)
}


def event_from_record(record: EventRecord) -> LedgerEvent:
    return EVENT_TYPES[record.name].model_validate_json(record.payload)


Handler = Callable[[LedgerEvent], None]


class EventBus:
    def __init__(self):
        self._handlers: Dict[Type[LedgerEvent], List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[LedgerEvent], handler: Handler):
        """Subscribe to one event type; ``LedgerEvent`` receives everything."""
        with self._lock:
            self._handlers[event_type].append(handler)

    def publish(self, event: LedgerEvent):
        with self._lock:
            handlers = list(self._handlers[type(event)])
            if type(event) is not LedgerEvent:
                handlers += self._handlers[LedgerEvent]

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # The mutation is already committed
                logger.exception(f"Event handler {handler!r} failed for {event.event_name()} (paper {event.paper_id})")
