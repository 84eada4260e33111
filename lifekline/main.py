#!/usr/bin/env python3
"""Life K-line backend (FastAPI).

- Birth-chart input: four pillars and the first luck cycle, computed upstream
- Generation: DeepSeek/OpenAI-compatible chat completions, one summary request
  and four age-range requests in flight together
- Output: summary report plus 100 stitched, normalized yearly candles
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from uuid import uuid4

from dotenv import load_dotenv

# Priority: existing process env > lifekline/.env > repo/.env
MODULE_DIR = Path(__file__).resolve().parent
REPO_ROOT = MODULE_DIR.parent
load_dotenv(dotenv_path=MODULE_DIR / ".env", override=False)
load_dotenv(dotenv_path=REPO_ROOT / ".env", override=False)

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import Field

from lifekline.bazi_context import BaziInput, bazi_chart_hash
from lifekline.cache_manager import report_cache, report_cache_key
from lifekline.llm_config import build_openai_client, load_llm_settings
from lifekline.llm_service import KLineGenerationError, generate_life_kline_report

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s - %(message)s",
)

logger = logging.getLogger("life_kline")


class AnalysisRequest(BaziInput):
    use_cache: bool = Field(True, description="Serve an identical chart from the report cache")


def _resolve_request_id(request: Optional[Request], explicit_request_id: Optional[str] = None) -> str:
    explicit = explicit_request_id.strip() if isinstance(explicit_request_id, str) else ""
    if explicit:
        return explicit
    if request is not None:
        for header in ("x-request-id", "x-correlation-id"):
            value = (request.headers.get(header) or "").strip()
            if value:
                return value
    return str(uuid4())


# ------------------------------------------------------------------------------
# LLM client initialization
# ------------------------------------------------------------------------------
LLM_SETTINGS = load_llm_settings(logger)
async_client, LLM_HTTP_CLIENT = build_openai_client(LLM_SETTINGS, logger)
if async_client is None:
    logger.warning("LLM client is None. Generation is disabled. Check DEEPSEEK_API_KEY in .env")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if LLM_HTTP_CLIENT is not None:
        await LLM_HTTP_CLIENT.aclose()


app = FastAPI(title="Life K-Line Backend", lifespan=lifespan)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------------------------------------------------------------
# API endpoints
# ------------------------------------------------------------------------------
@app.get("/health")
def health():
    return {
        "status": "ok",
        "client_initialized": async_client is not None,
        **LLM_SETTINGS.describe(),
        "report_cache_items": len(report_cache),
        "report_cache_ttl_sec": report_cache.ttl_sec,
    }


@app.post("/analysis")
async def analyze_life_kline(
    request: Request,
    payload: AnalysisRequest = Body(...),
    request_id: Optional[str] = Query(None, include_in_schema=False),
):
    """Generate the life K-line report for one birth chart."""
    request_id_value = _resolve_request_id(request, request_id)
    if async_client is None:
        raise HTTPException(status_code=500, detail="LLM client is not configured.")

    cache_key = report_cache_key(bazi_chart_hash(payload), LLM_SETTINGS.model)
    if payload.use_cache:
        cached = report_cache.get(cache_key)
        if cached:
            logger.info("Report cache hit request_id=%s key=%s", request_id_value, cache_key)
            return {**cached, "cached": True, "request_id": request_id_value}

    try:
        report = await generate_life_kline_report(
            async_client=async_client,
            bazi=payload,
            settings=LLM_SETTINGS,
            request_id=request_id_value,
        )
    except KLineGenerationError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e

    if payload.use_cache:
        report_cache.set(cache_key, report)
    return {**report, "cached": False, "request_id": request_id_value}
