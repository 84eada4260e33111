"""Timeout-bounded retry executor and all-or-nothing join for LLM calls."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Sequence, TypeVar

import httpx
import openai

logger = logging.getLogger("life_kline")

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_TIMEOUT_SEC = 180.0
DEFAULT_BACKOFF_BASE_SEC = 1.0

TRANSIENT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TransportError,
    openai.APIConnectionError,
)


class LLMTimeoutError(TimeoutError):
    """An attempt did not settle within its timeout."""


class LLMPayloadError(ValueError):
    """The backend answered, but not with the structure that was asked for."""


def is_transient_llm_error(exc: BaseException) -> bool:
    """Timeouts and network-layer failures. Malformed payloads are permanent."""
    return isinstance(exc, TRANSIENT_ERROR_TYPES)


def is_transient_or_payload_error(exc: BaseException) -> bool:
    return is_transient_llm_error(exc) or isinstance(exc, LLMPayloadError)


async def _run_with_timeout(operation: Callable[[], Awaitable[T]], timeout: float) -> T:
    # wait_for cancels the pending call, so a timed-out request does not keep
    # running against the backend.
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise LLMTimeoutError(f"Request timed out after {timeout:g}s") from exc


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str = "llm",
    max_retries: int = DEFAULT_MAX_RETRIES,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    is_transient: Callable[[BaseException], bool] = is_transient_llm_error,
    backoff_base: float = DEFAULT_BACKOFF_BASE_SEC,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `operation` with a per-attempt timeout and bounded retries.

    Transient failures wait `backoff_base * 2**attempt` seconds and retry, up to
    `max_retries` retries (max_retries + 1 attempts). Anything else, or the
    failure of the final attempt, propagates unchanged.
    """
    total_attempts = max(0, int(max_retries)) + 1
    for attempt in range(total_attempts):
        started = time.monotonic()
        logger.info("LLM request started label=%s attempt=%s/%s", label, attempt + 1, total_attempts)
        try:
            result = await _run_with_timeout(operation, timeout)
        except Exception as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            transient = is_transient(exc)
            logger.warning(
                "LLM request failed label=%s attempt=%s/%s elapsed_ms=%s transient=%s error_type=%s error=%s",
                label,
                attempt + 1,
                total_attempts,
                elapsed_ms,
                transient,
                type(exc).__name__,
                str(exc),
            )
            if not transient:
                raise
            if attempt + 1 >= total_attempts:
                logger.error("LLM retries exhausted label=%s attempts=%s", label, total_attempts)
                raise
            wait_sec = backoff_base * (2 ** attempt)
            logger.warning("LLM retry scheduled label=%s wait_sec=%s", label, wait_sec)
            await sleep(wait_sec)
            continue

        logger.info(
            "LLM request succeeded label=%s attempt=%s/%s elapsed_ms=%s",
            label,
            attempt + 1,
            total_attempts,
            int((time.monotonic() - started) * 1000),
        )
        return result

    raise RuntimeError(f"call_with_retry made no attempt label={label}")


async def gather_all_or_fail(awaitables: Sequence[Awaitable[T]]) -> list[T]:
    """Await every awaitable; results come back in submission order.

    The first failure cancels the siblings still in flight, waits for them to
    settle, and is then re-raised. No partial result is ever returned.
    """
    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    if not tasks:
        return []

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    failed = next(
        (task for task in tasks if task in done and not task.cancelled() and task.exception() is not None),
        None,
    )
    if failed is not None:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise failed.exception()

    return [task.result() for task in tasks]
