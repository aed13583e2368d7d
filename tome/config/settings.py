"""
Tome - Centralized Configuration
=================================
Uses ``pydantic-settings`` (``BaseSettings``) to load all configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` is typed as ``SecretStr`` and is **optional**.  When
  it is missing the embedding and completion adapters run in mock mode,
  which is only meant for local development and tests.
- ``MONGO_URI`` is ``SecretStr`` and **required**; connection strings carry
  credentials and must never leak into logs.

Paths
-----
All filesystem paths are ``Path.resolve()``-d at class level so they
work identically on Windows, WSL, and Linux.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).
    ``MONGO_URI`` has no default; the app refuses to start without it.

    Attributes
    ----------
    GOOGLE_API_KEY : SecretStr | None
        Gemini key.  ``None`` switches embeddings and completions to mock mode.
    MONGO_URI : SecretStr
        MongoDB connection string for authenticated conversation storage.
    EMBEDDING_DIMENSION : int
        Declared dimensionality of the embedding service (mock vectors use it).
    RELEVANCE_THRESHOLD : float
        Retrieval matches must score strictly above this to enter the context.
    SESSION_STORE_PATH : Path
        JSON file backing the device-local session store.
    PERSONALIZATION_LIMIT_AUTH / PERSONALIZATION_LIMIT_GUEST : int
        How many helpful messages feed the personalization snapshot.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"
    SESSION_STORE_PATH: Path = BASE_DIR / "data" / "session" / "local_storage.json"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"

    # ── API Keys (optional — mock mode when absent) ────────────────────
    GOOGLE_API_KEY: SecretStr | None = None

    # ── MongoDB (REQUIRED — no default) ────────────────────────────────
    MONGO_URI: SecretStr
    MONGO_DB_NAME: str = "tome"
    CONVERSATIONS_COLLECTION: str = "conversations"
    MESSAGES_COLLECTION: str = "messages"

    # ── Model Configuration ────────────────────────────────────────────
    EMBEDDING_MODEL: str = "models/gemini-embedding-001"
    EMBEDDING_DIMENSION: int = 3072
    LLM_MODEL: str = "gemini-2.0-flash"
    LLM_TEMPERATURE: float = 0.3
    LLM_MAX_TOKENS: int = 1000

    # ── LanceDB (pre-built index) ──────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "book_passages"

    # ── Retrieval ──────────────────────────────────────────────────────
    RETRIEVAL_TOP_K: int = 5
    RELEVANCE_THRESHOLD: float = 0.7

    # ── Personalization ────────────────────────────────────────────────
    PERSONALIZATION_LIMIT_AUTH: int = 5
    PERSONALIZATION_LIMIT_GUEST: int = 3

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("RELEVANCE_THRESHOLD")
    @classmethod
    def _threshold_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"RELEVANCE_THRESHOLD must be within 0–1, got {v}")
        return v


    @field_validator("RETRIEVAL_TOP_K")
    @classmethod
    def _top_k_range(cls, v: int) -> int:
        if not 1 <= v <= 50:
            raise ValueError(f"RETRIEVAL_TOP_K must be 1–50, got {v}")
        return v


    @field_validator("EMBEDDING_DIMENSION", "PERSONALIZATION_LIMIT_AUTH", "PERSONALIZATION_LIMIT_GUEST", "LLM_MAX_TOKENS")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be ≥ 1, got {v}")
        return v

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


    @property
    def google_api_key(self) -> str | None:
        """Raw Gemini key, or ``None`` when running in mock mode."""
        if self.GOOGLE_API_KEY is None:
            return None
        raw = self.GOOGLE_API_KEY.get_secret_value().strip()
        return raw or None


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from tome.config.settings import settings
settings = Settings()
