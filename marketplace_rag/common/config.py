"""
Configuration Management for Marketplace RAG

Loads configuration from ~/.marketplace-rag/config.json and environment variables.
"""

import os
import json
import math
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("marketplace_rag.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".marketplace-rag"
CONFIG_PATH = CONFIG_DIR / "config.json"

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_LLM_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-haiku-latest"
DEFAULT_LLM_TIMEOUT_MS = 10_000

DEFAULT_TOP_K = 5
MAX_TOP_K = 20
DEFAULT_SIMILARITY_THRESHOLD = 0.3
GLOBAL_DEADLINE_MS = 12_000
DEFAULT_EF_SEARCH = 40
MAX_QUERY_LENGTH = 500
MAX_LISTING_DESCRIPTION_CHARS = 220


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration"""
    model: str = DEFAULT_EMBEDDING_MODEL
    openai_api_key: str = ""


@dataclass
class LLMConfig:
    """Ranking LLM configuration"""
    provider: str = "openai"
    model: str = DEFAULT_LLM_MODEL
    timeout_ms: int = DEFAULT_LLM_TIMEOUT_MS
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    anthropic_model: str = DEFAULT_ANTHROPIC_MODEL

    @property
    def resolved_model(self) -> str:
        if self.provider == "anthropic":
            return self.anthropic_model
        return self.model


@dataclass
class SearchConfig:
    """Retrieval and deadline configuration"""
    default_top_k: int = DEFAULT_TOP_K
    max_top_k: int = MAX_TOP_K
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    deadline_ms: int = GLOBAL_DEADLINE_MS
    ef_search: int = DEFAULT_EF_SEARCH
    max_query_length: int = MAX_QUERY_LENGTH
    max_description_chars: int = MAX_LISTING_DESCRIPTION_CHARS


@dataclass
class CacheConfig:
    """Process-wide cache bounds (0 ttl means never expires)"""
    embedding_max_entries: int = 200
    embedding_ttl_ms: int = 5 * 60_000
    response_max_entries: int = 100
    response_ttl_ms: int = 2 * 60_000


@dataclass
class StorageConfig:
    """Vector storage (Postgres + pgvector) configuration"""
    database_url: str = ""
    min_pool_size: int = 1
    max_pool_size: int = 10


@dataclass
class ServerConfig:
    """HTTP calling layer configuration"""
    enabled: bool = False
    port: int = 8090
    log_level: str = "INFO"


@dataclass
class RagConfig:
    """Main configuration"""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def parse_positive_int_env(name: str, fallback: int) -> int:
    """
    Parse an environment variable as a positive integer.

    Returns ``fallback`` if the variable is unset or empty.
    Raises ValueError if it is set but is not a positive integer.
    """
    value = os.getenv(name)
    if not value:
        return fallback

    try:
        parsed = int(value)
    except ValueError:
        raise ValueError(f"{name} must be a positive integer") from None

    if parsed <= 0:
        raise ValueError(f"{name} must be a positive integer")
    return parsed


def parse_non_negative_int_env(name: str, fallback: int) -> int:
    """Like parse_positive_int_env, but 0 is accepted (used for TTLs, 0 = never expires)."""
    value = os.getenv(name)
    if not value:
        return fallback

    try:
        parsed = int(value)
    except ValueError:
        raise ValueError(f"{name} must be a non-negative integer") from None

    if parsed < 0:
        raise ValueError(f"{name} must be a non-negative integer")
    return parsed


def parse_similarity_threshold(value) -> float:
    """Validate a similarity threshold in [0, 1]."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValueError("RAG_SIMILARITY_THRESHOLD must be a number between 0 and 1") from None

    if not math.isfinite(parsed) or parsed < 0 or parsed > 1:
        raise ValueError("RAG_SIMILARITY_THRESHOLD must be a number between 0 and 1")
    return parsed


def _parse_default_top_k(value, max_top_k: int) -> int:
    """Configured default topK; anything unusable falls back to DEFAULT_TOP_K."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return DEFAULT_TOP_K
    if isinstance(value, float) and not value.is_integer():
        return DEFAULT_TOP_K
    if parsed <= 0:
        return DEFAULT_TOP_K
    return min(max_top_k, parsed)


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    return EmbeddingConfig(
        model=embedding_data.get("model", DEFAULT_EMBEDDING_MODEL),
        openai_api_key=embedding_data.get("openai_api_key", ""),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        provider=llm_data.get("provider", "openai"),
        model=llm_data.get("model", DEFAULT_LLM_MODEL),
        timeout_ms=llm_data.get("timeout_ms", DEFAULT_LLM_TIMEOUT_MS),
        openai_api_key=llm_data.get("openai_api_key", ""),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", DEFAULT_ANTHROPIC_MODEL),
    )


def _parse_search_config(data: dict) -> SearchConfig:
    """Parse search section from config dict"""
    search_data = data.get("search", {})
    return SearchConfig(
        default_top_k=_parse_default_top_k(search_data.get("default_top_k", DEFAULT_TOP_K), MAX_TOP_K),
        similarity_threshold=parse_similarity_threshold(
            search_data.get("similarity_threshold", DEFAULT_SIMILARITY_THRESHOLD)
        ),
        deadline_ms=search_data.get("deadline_ms", GLOBAL_DEADLINE_MS),
        ef_search=search_data.get("ef_search", DEFAULT_EF_SEARCH),
    )


def _parse_cache_config(data: dict) -> CacheConfig:
    """Parse cache section from config dict"""
    cache_data = data.get("cache", {})
    defaults = CacheConfig()
    return CacheConfig(
        embedding_max_entries=cache_data.get("embedding_max_entries", defaults.embedding_max_entries),
        embedding_ttl_ms=cache_data.get("embedding_ttl_ms", defaults.embedding_ttl_ms),
        response_max_entries=cache_data.get("response_max_entries", defaults.response_max_entries),
        response_ttl_ms=cache_data.get("response_ttl_ms", defaults.response_ttl_ms),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    """Parse storage section from config dict"""
    storage_data = data.get("storage", {})
    return StorageConfig(
        database_url=storage_data.get("database_url", ""),
        min_pool_size=storage_data.get("min_pool_size", 1),
        max_pool_size=storage_data.get("max_pool_size", 10),
    )


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server section from config dict"""
    server_data = data.get("server", {})
    return ServerConfig(
        enabled=_parse_bool(server_data.get("enabled", False)),
        port=server_data.get("port", 8090),
        log_level=server_data.get("log_level", "INFO"),
    )


def _config_path() -> Path:
    override = os.getenv("MARKETPLACE_RAG_CONFIG")
    return Path(override).expanduser() if override else CONFIG_PATH


def load_config() -> RagConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.marketplace-rag/config.json)
    3. Default values

    Raises:
        ValueError: if a value is present but invalid
    """
    config = RagConfig()

    path = _config_path()
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file %s: %s", path, e)
        else:
            config.embedding = _parse_embedding_config(data)
            config.llm = _parse_llm_config(data)
            config.search = _parse_search_config(data)
            config.cache = _parse_cache_config(data)
            config.storage = _parse_storage_config(data)
            config.server = _parse_server_config(data)

    # Environment variable overrides
    openai_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_key:
        config.embedding.openai_api_key = openai_key
        config.llm.openai_api_key = openai_key
    anthropic_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if anthropic_key:
        config.llm.anthropic_api_key = anthropic_key

    if (os.getenv("RAG_EMBEDDING_MODEL") or "").strip():
        config.embedding.model = os.getenv("RAG_EMBEDDING_MODEL").strip()
    if (os.getenv("RAG_LLM_MODEL") or "").strip():
        config.llm.model = os.getenv("RAG_LLM_MODEL").strip()
    if (os.getenv("ANTHROPIC_MODEL") or "").strip():
        config.llm.anthropic_model = os.getenv("ANTHROPIC_MODEL").strip()
    if os.getenv("RAG_LLM_PROVIDER"):
        config.llm.provider = os.getenv("RAG_LLM_PROVIDER").strip().lower()
    config.llm.timeout_ms = parse_positive_int_env("RAG_LLM_TIMEOUT_MS", config.llm.timeout_ms)

    if os.getenv("RAG_TOP_K"):
        config.search.default_top_k = _parse_default_top_k(os.getenv("RAG_TOP_K"), config.search.max_top_k)
    if os.getenv("RAG_SIMILARITY_THRESHOLD"):
        config.search.similarity_threshold = parse_similarity_threshold(os.getenv("RAG_SIMILARITY_THRESHOLD"))
    config.search.deadline_ms = parse_positive_int_env("RAG_DEADLINE_MS", config.search.deadline_ms)
    config.search.ef_search = parse_positive_int_env("RAG_EF_SEARCH", config.search.ef_search)

    config.cache.embedding_max_entries = parse_positive_int_env(
        "RAG_EMBEDDING_CACHE_SIZE", config.cache.embedding_max_entries
    )
    config.cache.embedding_ttl_ms = parse_non_negative_int_env(
        "RAG_EMBEDDING_CACHE_TTL_MS", config.cache.embedding_ttl_ms
    )
    config.cache.response_max_entries = parse_positive_int_env(
        "RAG_RESPONSE_CACHE_SIZE", config.cache.response_max_entries
    )
    config.cache.response_ttl_ms = parse_non_negative_int_env(
        "RAG_RESPONSE_CACHE_TTL_MS", config.cache.response_ttl_ms
    )

    if os.getenv("DATABASE_URL"):
        config.storage.database_url = os.getenv("DATABASE_URL")

    if os.getenv("RAG_ENABLED"):
        config.server.enabled = _parse_bool(os.getenv("RAG_ENABLED"))
    config.server.port = parse_positive_int_env("RAG_SERVER_PORT", config.server.port)
    if os.getenv("RAG_LOG_LEVEL"):
        config.server.log_level = os.getenv("RAG_LOG_LEVEL")

    if config.llm.provider not in ("openai", "anthropic"):
        raise ValueError(f"Unsupported RAG_LLM_PROVIDER: {config.llm.provider}")

    return config
