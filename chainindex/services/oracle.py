import logging
import secrets
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import httpx

from chainindex.config import Settings

logger = logging.getLogger(__name__)

FulfillCallback = Callable[[int, int], None]

class RandomnessOracle(ABC):
    """
    Accepts randomness requests keyed by a correlation token and later
    delivers ``fulfill(token, random_value)`` out of band.
    """

    @abstractmethod
    def request(self, token: int) -> bool:
        """Return True once the request has been accepted."""
        pass

class LocalRandomnessOracle(RandomnessOracle):
    """
    In-process coordinator: queues requests and fulfils them on demand with
    256 bits from ``secrets``. Fulfilment always happens in a separate call,
    never inside ``request``.
    """

    def __init__(self, callback: Optional[FulfillCallback] = None):
        self.callback = callback
        self._pending: List[int] = []
        self._lock = threading.Lock()

    def bind(self, callback: FulfillCallback):
        self.callback = callback

    def request(self, token: int) -> bool:
        with self._lock:
            self._pending.append(token)
        return True

    @property
    def pending(self) -> List[int]:
        with self._lock:
            return list(self._pending)

    def fulfill_request(self, token: int, random_value: Optional[int] = None):
        """
        Deliver randomness for ``token``. The token stays pending until the
        callback succeeds, so a failed delivery is retried by ``fulfill_pending``.
        """
        if self.callback is None:
            raise RuntimeError("LocalRandomnessOracle has no fulfilment callback bound")
        if random_value is None:
            random_value = secrets.randbits(256)
        self.callback(token, random_value)
        with self._lock:
            if token in self._pending:
                self._pending.remove(token)

    def fulfill_pending(self) -> int:
        """Redeliver every pending token; returns how many were delivered."""
        count = 0
        for token in self.pending:
            try:
                self.fulfill_request(token)
            except Exception as e:
                logger.warning(f"Randomness delivery for token {token} failed, left pending: {e}")
                continue
            count += 1
        return count

class HttpRandomnessOracle(RandomnessOracle):
    """
    Posts the request to a remote oracle; the oracle answers on
    ``POST /oracle/fulfill`` of this service.
    """

    def __init__(self, url: str, callback_url: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.callback_url = callback_url
        self.timeout = timeout

    def request(self, token: int) -> bool:
        payload = {"token": token, "callback_url": self.callback_url}
        with httpx.Client(timeout=self.timeout) as client:
            try:
                response = client.post(self.url, json=payload)
                response.raise_for_status()
                return True
            except httpx.HTTPError as e:
                logger.error(f"Randomness request {token} was not accepted: {e}")
                return False

def get_oracle(settings: Settings) -> RandomnessOracle:
    if settings.ORACLE_URL:
        return HttpRandomnessOracle(settings.ORACLE_URL, settings.ORACLE_CALLBACK_URL)
    return LocalRandomnessOracle()
