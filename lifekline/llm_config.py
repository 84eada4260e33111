"""Environment-driven LLM settings and client construction."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
from openai import AsyncOpenAI

from lifekline.llm_executor import (
    DEFAULT_BACKOFF_BASE_SEC,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SEC,
    is_transient_llm_error,
    is_transient_or_payload_error,
)

DEFAULT_BASE_URL = "https://api.deepseek.com"
DEFAULT_MODEL = "deepseek-chat"


def _is_truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _first_nonempty_env(*keys: str) -> Optional[str]:
    for key in keys:
        value = os.getenv(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


def _env_int(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class LLMSettings:
    api_key: str
    base_url: str
    model: str
    timeout_sec: float
    max_retries: int
    backoff_base_sec: float
    retry_parse_errors: bool
    proxy_url: Optional[str] = None

    @property
    def transient_predicate(self) -> Callable[[BaseException], bool]:
        return is_transient_or_payload_error if self.retry_parse_errors else is_transient_llm_error

    def describe(self) -> dict[str, Any]:
        return {
            "llm_configured": bool(self.api_key),
            "model": self.model,
            "base_url": self.base_url,
            "timeout_sec": self.timeout_sec,
            "max_retries": self.max_retries,
            "retry_parse_errors": self.retry_parse_errors,
        }


def _resolve_base_url(log: logging.Logger) -> str:
    configured = _first_nonempty_env("LLM_BASE_URL", "DEEPSEEK_BASE_URL", "OPENAI_BASE_URL")
    if not configured:
        return DEFAULT_BASE_URL
    lowered = configured.lower()
    if "localhost" in lowered or "127.0.0.1" in lowered:
        log.error("Invalid LLM base URL '%s' detected; falling back to %s", configured, DEFAULT_BASE_URL)
        return DEFAULT_BASE_URL
    return configured


def load_llm_settings(logger: logging.Logger | None = None) -> LLMSettings:
    log = logger or logging.getLogger("life_kline")
    return LLMSettings(
        api_key=_first_nonempty_env("DEEPSEEK_API_KEY", "OPENAI_API_KEY") or "",
        base_url=_resolve_base_url(log),
        model=_first_nonempty_env("LLM_MODEL") or DEFAULT_MODEL,
        timeout_sec=_env_float("LLM_TIMEOUT_SEC", DEFAULT_TIMEOUT_SEC, minimum=1.0),
        max_retries=_env_int("LLM_MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=0),
        backoff_base_sec=_env_float("LLM_BACKOFF_BASE_SEC", DEFAULT_BACKOFF_BASE_SEC, minimum=0.0),
        retry_parse_errors=_is_truthy(os.getenv("LLM_RETRY_PARSE_ERRORS", "0")),
        proxy_url=_first_nonempty_env("LLM_PROXY_URL", "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"),
    )


def build_openai_client(
    settings: LLMSettings,
    logger: logging.Logger | None = None,
) -> tuple[Optional[AsyncOpenAI], Optional[httpx.AsyncClient]]:
    """Build the chat-completions client, or (None, None) without a credential.

    The SDK's own retries are disabled; call_with_retry owns the retry budget.
    """
    log = logger or logging.getLogger("life_kline")
    if not settings.api_key:
        return None, None

    # The per-attempt budget is enforced by call_with_retry; the transport read
    # timeout only has to outlast it.
    read_timeout = settings.timeout_sec + 5.0
    timeout = httpx.Timeout(connect=10.0, read=read_timeout, write=read_timeout, pool=read_timeout)

    try:
        if settings.proxy_url:
            http_client = httpx.AsyncClient(timeout=timeout, trust_env=True, proxy=settings.proxy_url)
        else:
            http_client = httpx.AsyncClient(timeout=timeout, trust_env=True)
        client = AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            http_client=http_client,
            max_retries=0,
        )
        log.info(
            "LLM client initialized base_url=%s model=%s proxy_configured=%s",
            settings.base_url,
            settings.model,
            "True" if settings.proxy_url else "False",
        )
        return client, http_client
    except Exception as e:
        log.warning("LLM client initialization failed: %s", e)
        return None, None
