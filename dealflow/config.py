"""
Application configuration. Loads from environment variables (and a local
``.env`` file when present).
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DATA_DIR = Path(__file__).parent / "data"


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached settings instance."""
    return Settings()


class Settings:
    """Application settings loaded from environment."""

    database_url: str = f"sqlite:///{DATA_DIR / 'dealflow.db'}"

    # LLM (column mapping suggestions)
    llm_provider: str = "anthropic"
    llm_model: str = ""
    llm_api_key: str | None = None
    openai_base_url: str | None = None
    llm_max_tokens: int = 4096

    # CSV / XLSX import
    import_batch_size: int = 500
    import_session_ttl_minutes: int = 60
    sample_row_count: int = 5

    # Legal DD uploads
    max_upload_bytes: int = 20 * 1024 * 1024

    # UI state
    scroll_expiry_minutes: int = 30
    ui_session_ttl_minutes: int = 720
    max_ui_sessions: int = 10_000

    log_level: str = "INFO"

    def __init__(self) -> None:
        self.database_url = os.getenv("DATABASE_URL", self.database_url)

        self.llm_provider = os.getenv("LLM_PROVIDER", self.llm_provider)
        self.llm_model = os.getenv("LLM_MODEL", self.llm_model)
        self.llm_api_key = os.getenv("LLM_API_KEY")
        self.openai_base_url = os.getenv("OPENAI_BASE_URL")
        self.llm_max_tokens = int(os.getenv("LLM_MAX_TOKENS", str(self.llm_max_tokens)))

        self.import_batch_size = int(os.getenv("IMPORT_BATCH_SIZE", str(self.import_batch_size)))
        self.import_session_ttl_minutes = int(
            os.getenv("IMPORT_SESSION_TTL_MINUTES", str(self.import_session_ttl_minutes))
        )
        self.sample_row_count = int(os.getenv("SAMPLE_ROW_COUNT", str(self.sample_row_count)))

        self.max_upload_bytes = int(os.getenv("MAX_UPLOAD_BYTES", str(self.max_upload_bytes)))
        self.scroll_expiry_minutes = int(
            os.getenv("SCROLL_EXPIRY_MINUTES", str(self.scroll_expiry_minutes))
        )
        self.ui_session_ttl_minutes = int(
            os.getenv("UI_SESSION_TTL_MINUTES", str(self.ui_session_ttl_minutes))
        )
        self.max_ui_sessions = int(os.getenv("MAX_UI_SESSIONS", str(self.max_ui_sessions)))

        self.log_level = os.getenv("LOG_LEVEL", self.log_level).upper()
