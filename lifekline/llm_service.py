import asyncio
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from lifekline.bazi_context import BaziInput, bazi_chart_hash, build_bazi_context
from lifekline.kline_engine import ChartPoint, build_life_kline_series
from lifekline.llm_config import LLMSettings
from lifekline.llm_executor import LLMPayloadError, call_with_retry, gather_all_or_fail
from lifekline.prompts import build_chunk_system_prompt, build_summary_system_prompt

logger = logging.getLogger("life_kline")
llm_audit_logger = logging.getLogger("llm_audit")

T = TypeVar("T")

AGE_CHUNKS: tuple[tuple[int, int], ...] = ((1, 25), (26, 50), (51, 75), (76, 100))
EXPECTED_POINT_COUNT = AGE_CHUNKS[-1][1] - AGE_CHUNKS[0][0] + 1
SUMMARY_LABEL = "summary"

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*\n?|\n?\s*```", re.IGNORECASE)
_LEADING_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


class KLineGenerationError(RuntimeError):
    """The generation could not produce a complete report."""


class SummaryReport(BaseModel):
    """Global narrative fields. Lenient: the assembler merges whatever arrives."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    bazi: list[str] = []
    summary: Optional[str] = None
    summary_score: Optional[float] = None
    personality: Optional[str] = None
    personality_score: Optional[float] = None
    industry: Optional[str] = None
    industry_score: Optional[float] = None
    feng_shui: Optional[str] = None
    feng_shui_score: Optional[float] = None
    wealth: Optional[str] = None
    wealth_score: Optional[float] = None
    marriage: Optional[str] = None
    marriage_score: Optional[float] = None
    health: Optional[str] = None
    health_score: Optional[float] = None
    family: Optional[str] = None
    family_score: Optional[float] = None
    crypto: Optional[str] = None
    crypto_score: Optional[float] = None
    crypto_year: Optional[str] = None
    crypto_style: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def coerce_score_text(cls, value: Any, info: ValidationInfo) -> Any:
        # "8/10" -> 8.0; unreadable or non-finite scores become None.
        if not info.field_name.endswith("_score"):
            return value
        if isinstance(value, float) and not math.isfinite(value):
            return None
        if isinstance(value, str):
            match = _LEADING_NUMBER_RE.search(value)
            return float(match.group(0)) if match else None
        return value


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _emit_llm_audit_event(
    *,
    request_id: str,
    chart_hash: str,
    label: str,
    model_used: str,
    attempts: int,
    status: str,
) -> dict[str, Any]:
    event = {
        "request_id": request_id,
        "chart_hash": chart_hash,
        "label": label,
        "model_used": model_used,
        "attempts": attempts,
        "status": status,
        "timestamp_utc": _utc_iso_now(),
    }
    llm_audit_logger.info(json.dumps(event, ensure_ascii=False, sort_keys=True, separators=(",", ":")))
    return event


def parse_llm_json_payload(text: Any) -> dict[str, Any]:
    """Parse a single JSON object, tolerating Markdown code fences around it."""
    if not isinstance(text, str) or not text.strip():
        raise LLMPayloadError("LLM returned an empty response")
    cleaned = _CODE_FENCE_RE.sub("", text).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise LLMPayloadError(f"LLM response is not valid JSON: {e.msg} (pos {e.pos})") from e
    if not isinstance(payload, dict):
        raise LLMPayloadError(f"LLM response is a JSON {type(payload).__name__}, expected an object")
    return payload


def parse_summary_payload(payload: dict[str, Any]) -> dict[str, Any]:
    try:
        report = SummaryReport.model_validate(payload)
    except ValidationError as e:
        raise LLMPayloadError(f"Summary payload failed validation: {e.error_count()} error(s)") from e
    return report.model_dump(by_alias=True, exclude_none=True)


def parse_chart_chunk(payload: dict[str, Any], start_age: int, end_age: int) -> list[ChartPoint]:
    raw_points = payload.get("chartPoints")
    if not isinstance(raw_points, list):
        raise LLMPayloadError(f"Chunk {start_age}-{end_age} payload has no chartPoints array")
    try:
        points = [ChartPoint.model_validate(item) for item in raw_points]
    except ValidationError as e:
        raise LLMPayloadError(
            f"Chunk {start_age}-{end_age} chartPoints failed validation: {e.error_count()} error(s)"
        ) from e

    expected = end_age - start_age + 1
    stray = [p.age for p in points if not start_age <= p.age <= end_age]
    if len(points) != expected or stray:
        logger.warning(
            "Chart chunk shape mismatch range=%s-%s expected=%s received=%s stray_ages=%s",
            start_age,
            end_age,
            expected,
            len(points),
            stray[:10],
        )
    return points


def _build_chat_payload(*, model: str, system_message: str, user_message: str) -> dict[str, Any]:
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": system_message},
            {"role": "user", "content": user_message},
        ],
        "response_format": {"type": "json_object"},
    }


async def _complete_json(async_client: Any, payload: dict[str, Any]) -> dict[str, Any]:
    response = await async_client.chat.completions.create(**payload)
    text = response.choices[0].message.content if response and response.choices else ""
    return parse_llm_json_payload(text)


async def _request_with_audit(
    *,
    async_client: Any,
    payload: dict[str, Any],
    parse: Callable[[dict[str, Any]], T],
    label: str,
    settings: LLMSettings,
    request_id: str,
    chart_hash: str,
    sleep: Callable[[float], Awaitable[Any]],
) -> T:
    attempts = 0

    async def _attempt() -> T:
        nonlocal attempts
        attempts += 1
        return parse(await _complete_json(async_client, payload))

    status = "failed"
    try:
        result = await call_with_retry(
            _attempt,
            label=f"{label} request_id={request_id}",
            max_retries=settings.max_retries,
            timeout=settings.timeout_sec,
            is_transient=settings.transient_predicate,
            backoff_base=settings.backoff_base_sec,
            sleep=sleep,
        )
        status = "ok"
        return result
    except asyncio.CancelledError:
        status = "cancelled"
        raise
    finally:
        _emit_llm_audit_event(
            request_id=request_id,
            chart_hash=chart_hash,
            label=label,
            model_used=settings.model,
            attempts=attempts,
            status=status,
        )


async def request_summary_report(
    *,
    async_client: Any,
    bazi_context: str,
    settings: LLMSettings,
    request_id: str,
    chart_hash: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> dict[str, Any]:
    payload = _build_chat_payload(
        model=settings.model,
        system_message=build_summary_system_prompt(),
        user_message=bazi_context,
    )
    return await _request_with_audit(
        async_client=async_client,
        payload=payload,
        parse=parse_summary_payload,
        label=SUMMARY_LABEL,
        settings=settings,
        request_id=request_id,
        chart_hash=chart_hash,
        sleep=sleep,
    )


async def request_chart_chunk(
    *,
    async_client: Any,
    bazi_context: str,
    start_age: int,
    end_age: int,
    settings: LLMSettings,
    request_id: str,
    chart_hash: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[ChartPoint]:
    payload = _build_chat_payload(
        model=settings.model,
        system_message=build_chunk_system_prompt(start_age, end_age),
        user_message=bazi_context,
    )
    return await _request_with_audit(
        async_client=async_client,
        payload=payload,
        parse=lambda data: parse_chart_chunk(data, start_age, end_age),
        label=f"chunk_{start_age}_{end_age}",
        settings=settings,
        request_id=request_id,
        chart_hash=chart_hash,
        sleep=sleep,
    )


def assemble_report(summary: dict[str, Any], chart_points: list[ChartPoint]) -> dict[str, Any]:
    """Shallow merge: summary fields plus `chartPoints`, which always wins."""
    return {**summary, "chartPoints": [point.to_payload() for point in chart_points]}


async def generate_life_kline_report(
    *,
    async_client: Any,
    bazi: BaziInput,
    settings: LLMSettings,
    request_id: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> dict[str, Any]:
    """Fan out one summary and four age-range requests, then stitch and normalize.

    All five requests must succeed; any terminal failure aborts the whole
    generation with KLineGenerationError.
    """
    if async_client is None:
        raise KLineGenerationError("Generation aborted: LLM client is not configured")

    bazi_context = build_bazi_context(bazi)
    chart_hash = bazi_chart_hash(bazi)
    shared = {
        "async_client": async_client,
        "bazi_context": bazi_context,
        "settings": settings,
        "request_id": request_id,
        "chart_hash": chart_hash,
        "sleep": sleep,
    }
    logger.info(
        "Life K-line generation started request_id=%s chart_hash=%s model=%s chunks=%s",
        request_id,
        chart_hash,
        settings.model,
        len(AGE_CHUNKS),
    )

    try:
        summary, *chunks = await gather_all_or_fail(
            [
                request_summary_report(**shared),
                *(request_chart_chunk(start_age=start, end_age=end, **shared) for start, end in AGE_CHUNKS),
            ]
        )
    except Exception as e:
        logger.error(
            "Life K-line generation failed request_id=%s error_type=%s error=%s",
            request_id,
            type(e).__name__,
            str(e),
        )
        raise KLineGenerationError(f"Generation aborted: {str(e) or type(e).__name__}") from e

    logger.info("Life K-line requests settled request_id=%s; stitching chunks", request_id)
    chart_points = build_life_kline_series(chunks)
    if len(chart_points) != EXPECTED_POINT_COUNT:
        logger.warning(
            "Life K-line point count mismatch request_id=%s expected=%s received=%s",
            request_id,
            EXPECTED_POINT_COUNT,
            len(chart_points),
        )
    return assemble_report(summary, chart_points)
