from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///data/chainindex.db"
    LOG_LEVEL: str = "INFO"

    # Identity allowed to store embeddings on behalf of any submitter
    ADMIN_IDENTITY: str | None = None

    # Admission rules
    MIN_PUBLICATION_YEAR: int = 1900
    MAX_AUTHORS: int = 10
    MAX_KEYWORDS: int = 20

    # Embeddings: "hashing" works offline, "openai" calls the embeddings API
    EMBEDDING_PROVIDER: str = "hashing"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1024
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = "https://api.openai.com/v1"

    CONTENT_STORE_DIR: str = "data/content"
    SEARCH_SNIPPET_LENGTH: int = 200

    # Reviewer pool; empty means "use the researcher registry"
    REVIEWER_POOL: List[str] = []

    # Randomness oracle. Without ORACLE_URL a local coordinator is used.
    ORACLE_URL: str | None = None
    ORACLE_CALLBACK_URL: str | None = None
    ORACLE_CALLBACK_SECRET: str | None = None
    ORACLE_AUTO_FULFILL: bool = True

    # Embedding back-fill
    ENABLE_EMBEDDING_BACKFILL: bool = False
    EMBEDDING_BACKFILL_TIME: str = "03:00" # UTC

    model_config = SettingsConfigDict(
        # Load from /config/.env (Docker volume) first, then local .env
        env_file=["/config/.env", ".env"],
        env_file_encoding='utf-8',
        extra="ignore"
    )

settings = Settings()
