import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# Load .env once when module is imported. `override=True` keeps local
# development values ahead of whatever the host environment exports.
load_dotenv(override=True)


def _get_raw_env(name: str) -> Optional[str]:
    """Return the raw environment value for ``name``.

    The lookup order is:
    1. Regular environment variable
    2. ``GITHUB_SECRET_<NAME>`` for workflows that export secrets with that prefix.
    """

    if name in os.environ:
        return os.environ[name]
    prefixed = f"GITHUB_SECRET_{name}"
    if prefixed in os.environ:
        return os.environ[prefixed]
    return None


def get_env_value(name: str, default: Optional[str] = None) -> Optional[str]:
    """Fetch an environment value honouring prefixed secrets and defaults."""

    value = _get_raw_env(name)
    if value is None:
        return default
    return value


def _get_bool_env(name: str, default: str = "false") -> bool:
    value = get_env_value(name)
    if value is None:
        value = default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: str) -> int:
    value = get_env_value(name)
    try:
        return int(value if value is not None else default)
    except (TypeError, ValueError):
        return int(default)


def _get_float_env(name: str, default: str) -> float:
    value = get_env_value(name)
    try:
        return float(value if value is not None else default)
    except (TypeError, ValueError):
        return float(default)


# =============================
# LLM / embedding providers
# =============================


@lru_cache(maxsize=1)
def get_openai_api_key() -> Optional[str]:
    return get_env_value("OPENAI_API_KEY")


@lru_cache(maxsize=1)
def get_xai_api_key() -> Optional[str]:
    return get_env_value("XAI_API_KEY")


@lru_cache(maxsize=1)
def get_xai_base_url() -> str:
    return get_env_value("XAI_BASE_URL", "https://api.x.ai/v1") or "https://api.x.ai/v1"


@lru_cache(maxsize=1)
def get_llm_provider() -> str:
    val = (get_env_value("LLM_PROVIDER", "openai") or "openai").strip().lower()
    # Normalize alias "grok" to canonical provider name "xai"
    if val == "grok":
        return "xai"
    return val


@lru_cache(maxsize=1)
def is_llm_configured() -> bool:
    provider = get_llm_provider()
    if provider == "openai":
        key = get_openai_api_key() or ""
        return key.strip() != ""
    if provider == "xai":
        key = get_xai_api_key() or ""
        return key.strip() != ""
    return False


@lru_cache(maxsize=1)
def get_embedding_model_name() -> str:
    return get_env_value("EMBEDDING_MODEL", "text-embedding-3-small") or "text-embedding-3-small"


@lru_cache(maxsize=1)
def get_embedding_dimensions() -> int:
    return _get_int_env("EMBEDDING_DIMENSIONS", "1024")


@lru_cache(maxsize=1)
def get_narrative_model_name() -> str:
    env_val = get_env_value("NARRATIVE_MODEL")
    if env_val and env_val.strip() != "":
        return env_val
    if get_llm_provider() == "xai":
        return "grok-4-fast-reasoning"
    return "gpt-4o-mini"


# =============================
# Vector store (Chroma) + lifecycle
# =============================


@lru_cache(maxsize=1)
def get_chroma_host() -> str:
    return get_env_value("CHROMA_HOST", "localhost") or "localhost"


@lru_cache(maxsize=1)
def get_chroma_port() -> int:
    return _get_int_env("CHROMA_PORT", "8000")


@lru_cache(maxsize=1)
def get_chroma_tenant() -> str:
    return get_env_value("CHROMA_TENANT", "default_tenant") or "default_tenant"


@lru_cache(maxsize=1)
def get_chroma_database() -> str:
    return get_env_value("CHROMA_DATABASE", "default_database") or "default_database"


@lru_cache(maxsize=1)
def get_decision_collection_name() -> str:
    return get_env_value("DECISION_COLLECTION", "decisions_1024") or "decisions_1024"


@lru_cache(maxsize=1)
def get_store_backend_kind() -> str:
    """Which lifecycle backend controls the vector store: ``static`` or ``ecs``."""
    return (get_env_value("STORE_BACKEND", "static") or "static").strip().lower()


@lru_cache(maxsize=1)
def get_store_ecs_cluster() -> Optional[str]:
    return get_env_value("STORE_ECS_CLUSTER")


@lru_cache(maxsize=1)
def get_store_ecs_service() -> Optional[str]:
    return get_env_value("STORE_ECS_SERVICE")


@lru_cache(maxsize=1)
def get_aws_region() -> str:
    return get_env_value("AWS_REGION", "us-east-1") or "us-east-1"


@lru_cache(maxsize=1)
def get_store_idle_after_minutes() -> float:
    return _get_float_env("STORE_IDLE_AFTER_MINUTES", "30")


@lru_cache(maxsize=1)
def get_store_stop_after_minutes() -> float:
    return _get_float_env("STORE_STOP_AFTER_MINUTES", "90")


@lru_cache(maxsize=1)
def get_store_start_timeout_seconds() -> float:
    return _get_float_env("STORE_START_TIMEOUT_SECONDS", "120")


@lru_cache(maxsize=1)
def get_store_status_poll_seconds() -> float:
    return _get_float_env("STORE_STATUS_POLL_SECONDS", "5")


@lru_cache(maxsize=1)
def get_store_idle_check_minutes() -> int:
    return _get_int_env("STORE_IDLE_CHECK_MINUTES", "15")


# =============================
# Redis (transport, cache, activity)
# =============================


@lru_cache(maxsize=1)
def get_redis_url() -> Optional[str]:
    return get_env_value("REDIS_URL")


@lru_cache(maxsize=1)
def get_redis_socket_timeout_seconds() -> float:
    """Bounds every Redis connect and command so a hung Redis cannot stall callers."""
    return _get_float_env("REDIS_SOCKET_TIMEOUT_SECONDS", "2")


@lru_cache(maxsize=1)
def get_namespace() -> str:
    return get_env_value("DECISION_MEMORY_NAMESPACE", "decision_memory") or "decision_memory"


@lru_cache(maxsize=1)
def get_memory_scope() -> str:
    return get_env_value("DECISION_MEMORY_SCOPE", "default") or "default"


# =============================
# Retrieval / ingestion tunables
# =============================


@lru_cache(maxsize=1)
def get_retrieval_top_k() -> int:
    return _get_int_env("RETRIEVAL_TOP_K", "5")


@lru_cache(maxsize=1)
def get_retrieval_timeout_ms() -> int:
    return _get_int_env("RETRIEVAL_TIMEOUT_MS", "1500")


@lru_cache(maxsize=1)
def get_embedding_max_attempts() -> int:
    return _get_int_env("EMBEDDING_MAX_ATTEMPTS", "3")


@lru_cache(maxsize=1)
def get_ingestion_max_deliveries() -> int:
    return _get_int_env("INGESTION_MAX_DELIVERIES", "5")


@lru_cache(maxsize=1)
def get_ingestion_redelivery_seconds() -> float:
    return _get_float_env("INGESTION_REDELIVERY_SECONDS", "15")


@lru_cache(maxsize=1)
def get_ingestion_visibility_seconds() -> float:
    return _get_float_env("INGESTION_VISIBILITY_SECONDS", "60")


@lru_cache(maxsize=1)
def get_ingestion_batch_size() -> int:
    return _get_int_env("INGESTION_BATCH_SIZE", "10")


@lru_cache(maxsize=1)
def get_ingestion_concurrency() -> int:
    return _get_int_env("INGESTION_CONCURRENCY", "4")


@lru_cache(maxsize=1)
def get_ingestion_poll_seconds() -> float:
    return _get_float_env("INGESTION_POLL_SECONDS", "1.0")


@lru_cache(maxsize=1)
def is_ingestion_worker_enabled() -> bool:
    return _get_bool_env("INGESTION_WORKER_ENABLED", "true")


# =============================
# Profile builder
# =============================


@lru_cache(maxsize=1)
def get_profile_cron() -> str:
    return get_env_value("PROFILE_CRON", "0 3 * * 0") or "0 3 * * 0"


@lru_cache(maxsize=1)
def get_profile_style_examples() -> int:
    return _get_int_env("PROFILE_STYLE_EXAMPLES", "10")


@lru_cache(maxsize=1)
def get_profile_lock_ttl_seconds() -> int:
    return _get_int_env("PROFILE_LOCK_TTL_SECONDS", "900")


@lru_cache(maxsize=1)
def is_scheduler_enabled() -> bool:
    """Control the weekly profile build and the idle-stop timer.

    Primary flag: SCHEDULER_ENABLED (default: true)
    """
    return _get_bool_env("SCHEDULER_ENABLED", "true")


# Langfuse Configuration
def get_langfuse_public_key() -> str:
        """Get Langfuse public key from environment."""
        return get_env_value("LANGFUSE_PUBLIC_KEY", "") or ""


def get_langfuse_secret_key() -> str:
        """Get Langfuse secret key from environment."""
        return get_env_value("LANGFUSE_SECRET_KEY", "") or ""


def get_langfuse_host() -> str:
        """Get Langfuse host URL from environment."""
        return get_env_value("LANGFUSE_HOST", "https://us.cloud.langfuse.com") or "https://us.cloud.langfuse.com"


def is_langfuse_enabled() -> bool:
    """Check if Langfuse tracing is enabled."""
    return bool(get_langfuse_public_key() and get_langfuse_secret_key())
