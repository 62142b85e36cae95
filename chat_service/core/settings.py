import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    log_level: str
    redis_url: str
    conversation_ttl_sec: int
    identity_ttl_sec: int
    history_max_entries: int
    snippet_max_chars: int
    search_url: str
    search_top_k: int
    search_timeout_sec: float
    llm_url: str
    llm_model: str
    llm_timeout_sec: float
    quiescence_initial_sec: float
    quiescence_confirm_sec: float
    quiescence_retry_sec: float
    quiescence_max_retries: int
    cors_allow_origins: list[str]
    expose_history_endpoint: bool
    host: str
    port: int


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def load_settings() -> Settings:
    week = 7 * 24 * 3600
    return Settings(
        log_level=os.getenv("CHAT_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        redis_url=os.getenv("REDIS_URL", "").strip(),
        conversation_ttl_sec=max(1, int(os.getenv("CHAT_CONVERSATION_TTL_SEC", str(week)))),
        identity_ttl_sec=max(1, int(os.getenv("CHAT_IDENTITY_TTL_SEC", str(week)))),
        history_max_entries=max(2, int(os.getenv("CHAT_HISTORY_MAX_ENTRIES", "20"))),
        snippet_max_chars=max(1, int(os.getenv("CHAT_SNIPPET_MAX_CHARS", "300"))),
        search_url=os.getenv("CHAT_SEARCH_URL", "http://localhost:8001").rstrip("/"),
        search_top_k=max(1, int(os.getenv("CHAT_SEARCH_TOP_K", "5"))),
        search_timeout_sec=float(os.getenv("CHAT_SEARCH_TIMEOUT_SEC", "5.0")),
        llm_url=os.getenv("CHAT_LLM_URL", "http://localhost:8010").rstrip("/"),
        llm_model=os.getenv("CHAT_LLM_MODEL", "deepseek-chat").strip(),
        llm_timeout_sec=float(os.getenv("CHAT_LLM_TIMEOUT_SEC", "60.0")),
        quiescence_initial_sec=float(os.getenv("CHAT_QUIESCENCE_INITIAL_SEC", "3.0")),
        quiescence_confirm_sec=float(os.getenv("CHAT_QUIESCENCE_CONFIRM_SEC", "2.0")),
        quiescence_retry_sec=float(os.getenv("CHAT_QUIESCENCE_RETRY_SEC", "5.0")),
        quiescence_max_retries=max(0, int(os.getenv("CHAT_QUIESCENCE_MAX_RETRIES", "5"))),
        cors_allow_origins=_split_origins(os.getenv("CORS_ALLOW_ORIGINS", "")),
        expose_history_endpoint=_env_bool("CHAT_EXPOSE_HISTORY_ENDPOINT", "true"),
        host=os.getenv("CHAT_HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=int(os.getenv("CHAT_PORT", "8000")),
    )


SETTINGS = load_settings()
