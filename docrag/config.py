"""Application configuration with sensible defaults."""
import os
from pathlib import Path


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
DOCS_DIR = Path(os.getenv("DOCS_DIR", str(BASE_DIR / "docs")))

# Environment
APP_ENV = os.getenv("APP_ENV", "development")

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")

# Chunking (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "2400"))          # ≈600 tokens
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "320"))     # ≈80 tokens

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "8"))
SIMILARITY_METRIC = os.getenv("SIMILARITY_METRIC", "cosine")  # cosine | dot | l2
RETRIEVAL_INDEX = os.getenv("RETRIEVAL_INDEX", "scan")        # scan | faiss

# Generation
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "6000"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "512"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "60.0"))
QUERY_CACHE_SIZE = int(os.getenv("QUERY_CACHE_SIZE", "256"))
RECORD_QUERIES = _flag("RECORD_QUERIES", True)

# Embedding calls (the provider is the rate-limited resource)
EMBED_TIMEOUT = float(os.getenv("EMBED_TIMEOUT", "30.0"))
EMBED_CONCURRENCY = int(os.getenv("EMBED_CONCURRENCY", "4"))
EMBED_RETRY_ATTEMPTS = int(os.getenv("EMBED_RETRY_ATTEMPTS", "3"))

# Retries at pipeline entry (never inside an open transaction)
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5"))

# Ingestion workers
INGEST_WORKERS = int(os.getenv("INGEST_WORKERS", "4"))
# Finished job records kept for status polling
INGEST_JOB_HISTORY = int(os.getenv("INGEST_JOB_HISTORY", "1000"))

# Database
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "docrag.sqlite")))
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
DB_ACQUIRE_TIMEOUT = float(os.getenv("DB_ACQUIRE_TIMEOUT", "5.0"))
DB_PROCEDURE_TIMEOUT = float(os.getenv("DB_PROCEDURE_TIMEOUT", "30.0"))
# Unresolved transactions fail loudly outside production
STRICT_TRANSACTIONS = _flag("STRICT_TRANSACTIONS", APP_ENV != "production")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
