import os
from functools import lru_cache
from typing import List, Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
_ROOT_DIR = os.path.dirname(_PACKAGE_DIR)


class Settings(BaseSettings):
    DATA_DIR: str = Field(default_factory=lambda: os.path.join(_ROOT_DIR, "data"))

    # Knowledge base (precomputed file is what the server reads; raw is the script input).
    # Left empty, both resolve inside DATA_DIR.
    KB_PATH: str = ""
    KB_RAW_PATH: str = ""
    KB_RELOAD_MODE: Literal["startup", "request", "on_change"] = "startup"

    # Retrieval
    TOP_K: int = 5
    PROFILE_VERSION: str = "v2"

    # Embeddings
    EMBEDDING_PROVIDER: str = "openai"  # "openai" | "google" | "sentence-transformers"
    OPENAI_EMBED_MODEL: str = "text-embedding-ada-002"
    GEMINI_EMBED_MODEL: str = "text-embedding-004"
    SENTENCE_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Completion
    COMPLETION_PROVIDER: str = "openai"  # "openai" | "gemini" | "hf" | "rules"
    OPENAI_MODEL: str = "gpt-4o"
    GEMINI_MODEL: str = "gemini-2.5-flash"
    HF_MODEL: str = "distilgpt2"

    # Credentials
    OPENAI_API_KEY: SecretStr = SecretStr("")
    GEMINI_API_KEY: SecretStr = SecretStr("")

    # Logging
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: str = ""

    # CORS
    CORS_ALLOW_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("TOP_K")
    @classmethod
    def _top_k_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"TOP_K must be >= 1, got {v}")
        return v

    @field_validator("EMBEDDING_PROVIDER", "COMPLETION_PROVIDER")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()

    @model_validator(mode="after")
    def _default_kb_paths(self) -> "Settings":
        if not self.KB_PATH:
            self.KB_PATH = os.path.join(self.DATA_DIR, "knowledgeBaseWithEmbeddings.json")
        if not self.KB_RAW_PATH:
            self.KB_RAW_PATH = os.path.join(self.DATA_DIR, "knowledgeBase.json")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings; tests build their own ``Settings`` instead."""
    return Settings()
