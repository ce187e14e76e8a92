from pathlib import Path

from sqlalchemy.engine import make_url
from sqlmodel import SQLModel, create_engine
from chainindex.config import settings

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
)

def init_db(bind=None):
    bind = bind or engine
    url = make_url(str(bind.url))
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    # Import models to register them with SQLModel.metadata
    import chainindex.models
    SQLModel.metadata.create_all(bind)
