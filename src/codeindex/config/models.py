"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (CODEINDEX__SECTION__KEY)
3. Workspace YAML (<workspace>/.codeindex/config.yaml)
4. Global YAML (~/.config/codeindex/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    CODEINDEX__<SECTION>__<KEY>=<VALUE>

Examples:
    CODEINDEX__LOGGING__LEVEL=DEBUG
    CODEINDEX__INDEX__CLOUD_ENABLED=true
    CODEINDEX__INDEXER__MAX_WORKERS=4
    CODEINDEX__CLOUD__VOYAGE_API_KEY=...
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

HASH_MODEL_ID = "hash"
DEFAULT_LOCAL_MODEL = "BAAI/bge-small-en-v1.5"


class LogOutputConfig(BaseModel):
    """Single logging output configuration.

    Env vars: Not directly configurable via env (use YAML for multi-output).
    """

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        CODEINDEX__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every file processed.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class StorageConfig(BaseModel):
    """Per-workspace database storage.

    Env vars:
        CODEINDEX__STORAGE__ROOT: Directory holding one sub-directory per workspace
        CODEINDEX__STORAGE__MAX_RETRIES: Max retry attempts for locked DB
    """

    root: str = Field(
        default="~/.codeindex/workspaces",
        description="Storage root. Each workspace gets <root>/<workspace_id>/index.db.",
    )
    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout (ms). How long to wait for locks. "
        "RISK: Too low causes failures under contention; too high delays errors.",
    )
    max_retries: int = Field(
        default=3,
        description="Max retry attempts for locked database errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()


class IndexConfig(BaseModel):
    """What gets indexed and which backend serves it.

    Env vars:
        CODEINDEX__INDEX__LOCAL_ENABLED: Enable the local (SQLite + local embeddings) backend
        CODEINDEX__INDEX__CLOUD_ENABLED: Prefer the cloud backend (remote embeddings + vectors)
        CODEINDEX__INDEX__CHUNK_SIZE_LINES: Lines per chunk
        CODEINDEX__INDEX__MAX_FILE_SIZE_KB: Files above this are truncated
    """

    local_enabled: bool = Field(
        default=True,
        description="Local indexing backend. Disabling both backends disables the feature.",
    )
    cloud_enabled: bool = Field(
        default=False,
        description="Cloud indexing backend. Takes precedence over local when enabled.",
    )
    graph_enabled: bool = Field(
        default=True,
        description="Persist the symbol graph. When off, an in-memory graph is used.",
    )
    chunk_size_lines: int = Field(
        default=200,
        description="Lines per chunk. Smaller chunks give tighter snippets but more rows.",
    )
    max_file_size_kb: int = Field(
        default=1024,
        description="Files larger than this are truncated (not skipped) before chunking.",
    )
    max_files: int = Field(
        default=20000,
        description="Upper bound on files enumerated per workspace.",
    )
    excluded_extensions: list[str] = Field(
        default_factory=lambda: [".min.js", ".min.css", ".map", ".lock"],
        description="File suffixes excluded from indexing.",
    )

    @field_validator("chunk_size_lines", "max_file_size_kb", "max_files")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Must be positive, got {v}")
        return v


class IndexerConfig(BaseModel):
    """Worker pool and change-queue configuration.

    Env vars:
        CODEINDEX__INDEXER__MAX_WORKERS: Files processed concurrently
        CODEINDEX__INDEXER__DEBOUNCE_SEC: Change debounce window
        CODEINDEX__INDEXER__BATCH_SIZE: Paths per refresh batch
    """

    max_workers: int = Field(
        default=4,
        description="Bounded worker pool size. "
        "RISK: High values hit embedding-provider rate limits and SQLite contention.",
    )
    debounce_sec: float = Field(
        default=0.5,
        description="Debounce window before queued file changes are flushed.",
    )
    batch_size: int = Field(
        default=20,
        description="Max paths handed to a single refresh.",
    )
    queue_max_size: int = Field(
        default=10000,
        description="Max queued file paths. Excess paths are dropped (logged).",
    )

    @field_validator("max_workers", "batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Must be positive, got {v}")
        return v


class EmbeddingConfig(BaseModel):
    """Local embedding runtime.

    Env vars:
        CODEINDEX__EMBEDDING__MODEL: fastembed model name, or "hash" for the hash runtime
        CODEINDEX__EMBEDDING__CACHE_DIR: Model artifact cache directory
    """

    model: str = Field(
        default=DEFAULT_LOCAL_MODEL,
        description='fastembed model identifier, or "hash" to skip the heavy model entirely.',
    )
    cache_dir: str = Field(
        default="~/.codeindex/models",
        description="Where model artifacts are installed.",
    )
    auto_install: bool = Field(
        default=True,
        description="Download the model on first build. When off, a missing model falls back to hashing.",
    )
    batch_size: int = Field(
        default=64,
        description="Texts per embedding batch; cancellation is checked between batches.",
    )

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser()


class CloudConfig(BaseModel):
    """Remote embedding provider and vector store.

    Env vars:
        CODEINDEX__CLOUD__VOYAGE_API_KEY: Embedding provider key
        CODEINDEX__CLOUD__PINECONE_API_KEY: Vector store key
        CODEINDEX__CLOUD__PINECONE_INDEX_HOST: Vector store data-plane host
        CODEINDEX__CLOUD__USER_ID: Account id used in namespace derivation
    """

    voyage_api_key: SecretStr | None = None
    voyage_base_url: str = "https://api.voyageai.com/v1"
    voyage_model: str = "voyage-code-3"
    dimension: int = Field(
        default=1024,
        description="Vector dimension shared by the embedding model and the vector index.",
    )
    embedding_batch_size: int = Field(
        default=50,
        description="Chunks per embedding request (provider hard limit is 128).",
    )
    rate_limit_rpm: int = Field(
        default=300,
        description="Client-side request budget per minute.",
    )
    pinecone_api_key: SecretStr | None = None
    pinecone_index_host: str | None = Field(
        default=None,
        description="Data-plane host of the vector index, e.g. https://my-index-abc123.svc.pinecone.io",
    )
    user_id: str | None = Field(
        default=None,
        description="Account id for namespaces. Defaults to a hash of the home directory.",
    )
    request_timeout_sec: float = 30.0

    @field_validator("embedding_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not (1 <= v <= 128):
            raise ValueError(f"Batch size must be 1-128, got {v}")
        return v


class SearchConfig(BaseModel):
    """Hybrid ranking and context budgets.

    Env vars:
        CODEINDEX__SEARCH__MAX_SNIPPETS: Default snippet budget for context bundles
        CODEINDEX__SEARCH__MAX_TOKENS: Default token budget for context bundles
    """

    max_results: int = 20
    max_snippets: int = 10
    max_tokens: int = 4000
    semantic_weight: float = 0.65
    lexical_weight: float = 0.25
    recency_weight: float = 0.10
    lexical_only_weight: float = 0.75
    lexical_only_recency_weight: float = 0.25
    recency_half_life_hours: float = Field(
        default=168.0,
        description="Age at which the recency signal halves (default one week).",
    )
    graph_score_decay: float = Field(
        default=0.5,
        description="Score multiplier applied to snippets reached through graph expansion.",
    )


class TimeoutsConfig(BaseModel):
    """Timeouts for host-facing calls.

    Env vars:
        CODEINDEX__TIMEOUTS__STATUS_SEC: Bound on get_status latency
    """

    status_sec: float = Field(
        default=5.0,
        description="get_status races the backend against this timeout and returns a default status.",
    )


class CodeIndexConfig(BaseModel):
    """Root configuration for codeindex.

    All settings can be configured via:
    1. Environment variables: CODEINDEX__SECTION__KEY
    2. YAML config files (workspace or global)
    3. Direct kwargs to load_config()
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    cloud: CloudConfig = Field(default_factory=CloudConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
