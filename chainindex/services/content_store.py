import hashlib
import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from chainindex.errors import NotFoundError

class ContentStore(ABC):
    """Content-addressed blob store: the key of a blob is the hash of its bytes."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        pass

    @abstractmethod
    def get(self, content_hash: str) -> bytes:
        pass

    def exists(self, content_hash: str) -> bool:
        try:
            self.get(content_hash)
            return True
        except NotFoundError:
            return False

class LocalContentStore(ContentStore):
    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def _path(self, content_hash: str) -> Path:
        # Hex digests only; anything else cannot address a blob
        if not content_hash or any(c not in "0123456789abcdef" for c in content_hash):
            raise NotFoundError(f"Invalid content hash: {content_hash!r}")
        return self.directory / content_hash[:2] / content_hash

    def put(self, data: bytes) -> str:
        content_hash = self.hash_bytes(data)
        path = self._path(content_hash)
        with self._lock:
            if not path.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix(".tmp")
                tmp.write_bytes(data)
                tmp.replace(path)
        return content_hash

    def get(self, content_hash: str) -> bytes:
        path = self._path(content_hash)
        if not path.exists():
            raise NotFoundError(f"No content stored under {content_hash}")
        return path.read_bytes()

class EmbeddingStore:
    """
    Stores embedding vectors as JSON documents in a content store.
    The returned content hash is the embedding reference recorded on the paper.
    """

    def __init__(self, content_store: ContentStore):
        self.content_store = content_store

    def save(self, paper_id: int, vector: List[float], model: str = "") -> str:
        document = {
            "paper_id": paper_id,
            "model": model,
            "dimensions": len(vector),
            "vector": [float(x) for x in vector],
        }
        return self.content_store.put(json.dumps(document, sort_keys=True).encode("utf-8"))

    def load(self, embedding_ref: str) -> List[float]:
        document = json.loads(self.content_store.get(embedding_ref))
        return document["vector"]
