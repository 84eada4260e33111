"""Uvicorn launcher for the life K-line backend."""

import os

import uvicorn


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


if __name__ == "__main__":
    uvicorn.run(
        "lifekline.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=_env_int("PORT", 8000),
        workers=_env_int("WEB_CONCURRENCY", 1),
        backlog=_env_int("UVICORN_BACKLOG", 2048, minimum=16),
        timeout_keep_alive=_env_int("UVICORN_TIMEOUT_KEEP_ALIVE", 5),
        log_level=os.getenv("UVICORN_LOG_LEVEL", "info").strip() or "info",
    )
