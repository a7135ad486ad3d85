from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_echo: bool
    source_dir: str
    refined_dir: str
    index_dir: str
    db_path: str
    chunk_size: int
    chunk_overlap: int
    batch_size: int
    integrity_cache_ttl_seconds: float
    embed_backend: str
    ollama_embed_base_url: str
    ollama_embed_model: str
    embed_batch_size: int
    embed_max_attempts: int
    embed_retry_base_seconds: float
    embed_retry_max_seconds: float
    hashing_embedding_dim: int
    refine_with_llm: bool
    refine_max_section_chars: int
    refine_timeout_seconds: float
    ollama_base_url: str
    ollama_model: str
    ollama_fallback_model: str
    ollama_timeout_seconds: float
    log_level: str
    log_json: bool


@lru_cache
def get_settings() -> Settings:
    index_dir = os.getenv("CORPUS_INDEX_DIR", "/workspace/data/corpus_index")
    ollama_base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")

    return Settings(
        database_url=os.getenv(
            "CORPUS_DATABASE_URL",
            f"sqlite+pysqlite:///{Path(index_dir) / 'manifest.db'}",
        ),
        db_echo=_to_bool(os.getenv("DB_ECHO"), default=False),
        source_dir=os.getenv("CORPUS_SOURCE_DIR", "/workspace/data/raw_documents"),
        refined_dir=os.getenv("CORPUS_REFINED_DIR", "/workspace/data/rag_ready"),
        index_dir=index_dir,
        db_path=os.getenv("CORPUS_DB_PATH", str(Path(index_dir) / "corpus.db")),
        chunk_size=_to_int(os.getenv("CORPUS_CHUNK_SIZE"), default=1500, minimum=100),
        chunk_overlap=_to_int(os.getenv("CORPUS_CHUNK_OVERLAP"), default=150, minimum=0),
        batch_size=_to_int(os.getenv("CORPUS_BATCH_SIZE"), default=10, minimum=1),
        integrity_cache_ttl_seconds=_to_float(
            os.getenv("INTEGRITY_CACHE_TTL_SECONDS"), default=300.0, minimum=1.0
        ),
        embed_backend=os.getenv("EMBED_BACKEND", "ollama").strip().lower(),
        ollama_embed_base_url=os.getenv("OLLAMA_EMBED_BASE_URL", ollama_base_url),
        ollama_embed_model=os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        embed_batch_size=_to_int(os.getenv("EMBED_BATCH_SIZE"), default=16, minimum=1),
        embed_max_attempts=_to_int(os.getenv("EMBED_MAX_ATTEMPTS"), default=3, minimum=1),
        embed_retry_base_seconds=_to_float(
            os.getenv("EMBED_RETRY_BASE_SECONDS"), default=1.0, minimum=0.0
        ),
        embed_retry_max_seconds=_to_float(
            os.getenv("EMBED_RETRY_MAX_SECONDS"), default=30.0, minimum=0.0
        ),
        hashing_embedding_dim=_to_int(os.getenv("HASHING_EMBEDDING_DIM"), default=32, minimum=8),
        refine_with_llm=_to_bool(os.getenv("REFINE_WITH_LLM"), default=True),
        refine_max_section_chars=_to_int(
            os.getenv("REFINE_MAX_SECTION_CHARS"), default=60000, minimum=1000
        ),
        refine_timeout_seconds=float(os.getenv("REFINE_TIMEOUT_SECONDS", "120")),
        ollama_base_url=ollama_base_url,
        ollama_model=os.getenv("OLLAMA_MODEL", "qwen2.5:7b-instruct-q4_K_M"),
        ollama_fallback_model=os.getenv("OLLAMA_FALLBACK_MODEL", "qwen2.5:3b-instruct-q4_K_M"),
        ollama_timeout_seconds=float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=_to_bool(os.getenv("LOG_JSON"), default=False),
    )
