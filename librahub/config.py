import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Local store
    local_db_file: str = os.getenv("LIBRARY_DB_FILE", "librahub.db")

    # Remote document store (Firestore REST)
    remote_project_id: Optional[str] = os.getenv("FIRESTORE_PROJECT_ID")
    remote_database: str = os.getenv("FIRESTORE_DATABASE", "(default)")
    remote_api_key: Optional[str] = os.getenv("FIRESTORE_API_KEY")
    remote_base_url: str = os.getenv("FIRESTORE_BASE_URL", "https://firestore.googleapis.com/v1")
    remote_timeout: float = float(os.getenv("REMOTE_TIMEOUT", "10"))
    enable_remote_sync: bool = _flag("ENABLE_REMOTE_SYNC", "True")

    # Google Books
    google_books_api_key: Optional[str] = os.getenv("GOOGLE_BOOKS_API_KEY")
    google_books_timeout: float = float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10"))
    enable_google_books: bool = _flag("ENABLE_GOOGLE_BOOKS", "True")

    # Cache
    redis_url: Optional[str] = os.getenv("REDIS_URL")
    cache_ttl: int = int(os.getenv("CACHE_TTL", "300"))  # 5 minutes

    # HTTP API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Application
    app_name: str = os.getenv("APP_NAME", "LibraHub")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _flag("DEBUG", "False")

    @property
    def remote_enabled(self) -> bool:
        return self.enable_remote_sync and bool(self.remote_project_id)


settings = Settings()
