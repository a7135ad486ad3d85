from corpus.config import get_settings


def test_db_path_uses_explicit_env(monkeypatch) -> None:
    monkeypatch.setenv("CORPUS_INDEX_DIR", "data/custom-index")
    monkeypatch.setenv("CORPUS_DB_PATH", "data/override/corpus.db")

    settings = get_settings()

    assert settings.index_dir == "data/custom-index"
    assert settings.db_path == "data/override/corpus.db"


def test_db_path_and_manifest_url_default_to_index_dir(monkeypatch) -> None:
    monkeypatch.setenv("CORPUS_INDEX_DIR", "data/custom-index")
    monkeypatch.delenv("CORPUS_DB_PATH", raising=False)
    monkeypatch.delenv("CORPUS_DATABASE_URL", raising=False)

    settings = get_settings()

    assert settings.db_path.endswith("data/custom-index/corpus.db")
    assert settings.database_url.endswith("data/custom-index/manifest.db")
    assert settings.database_url.startswith("sqlite+pysqlite:///")


def test_tunable_defaults(monkeypatch) -> None:
    for name in (
        "CORPUS_CHUNK_SIZE",
        "CORPUS_CHUNK_OVERLAP",
        "CORPUS_BATCH_SIZE",
        "EMBED_MAX_ATTEMPTS",
        "EMBED_BATCH_SIZE",
        "INTEGRITY_CACHE_TTL_SECONDS",
        "EMBED_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.chunk_size == 1500
    assert settings.chunk_overlap == 150
    assert settings.batch_size == 10
    assert settings.embed_max_attempts == 3
    assert settings.embed_batch_size == 16
    assert settings.integrity_cache_ttl_seconds == 300.0
    assert settings.embed_backend == "ollama"


def test_numeric_settings_are_clamped_to_minimums(monkeypatch) -> None:
    monkeypatch.setenv("CORPUS_CHUNK_SIZE", "10")
    monkeypatch.setenv("CORPUS_BATCH_SIZE", "0")
    monkeypatch.setenv("EMBED_MAX_ATTEMPTS", "-2")

    settings = get_settings()

    assert settings.chunk_size == 100
    assert settings.batch_size == 1
    assert settings.embed_max_attempts == 1


def test_boolean_flags_parse_common_spellings(monkeypatch) -> None:
    monkeypatch.setenv("REFINE_WITH_LLM", "off")
    monkeypatch.setenv("LOG_JSON", "yes")

    settings = get_settings()

    assert settings.refine_with_llm is False
    assert settings.log_json is True
