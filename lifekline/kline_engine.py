"""Life K-line series engine.

Chunked generation returns yearly candles that disagree at chunk boundaries.
`stitch_chart_points` re-anchors every candle on the previous close while
keeping its own body and wick sizes, and `normalize_chart_points` rescales the
stitched series into the display band. Both are pure functions: they never
mutate the points they are given.
"""

from __future__ import annotations

import math
from typing import Any, Iterable, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MIN_WICK = 2
FLAT_RANGE_THRESHOLD = 5
TARGET_MIN = 15
TARGET_MAX = 95
FLAT_PROFILE: dict[str, int] = {"open": 50, "close": 50, "high": 55, "low": 45, "score": 50}

Score = Union[int, float]


class ChartPoint(BaseModel):
    """One yearly candle. Wire names are camelCase (`daYun`, `ganZhi`)."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        allow_inf_nan=False,
    )

    age: int = Field(..., ge=1)
    year: int
    da_yun: str = ""
    gan_zhi: str = ""
    open: Score
    close: Score
    high: Score
    low: Score
    score: Score = 0
    reason: str = ""

    @field_validator("da_yun", "gan_zhi", "reason", mode="before")
    @classmethod
    def null_label_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def flatten_chunks(chunks: Iterable[Iterable[ChartPoint]]) -> list[ChartPoint]:
    return [point for chunk in chunks for point in chunk]


def stitch_chart_points(points: Iterable[ChartPoint]) -> list[ChartPoint]:
    """Sort by age and force `open[i] == close[i-1]`.

    The first candle keeps its own open. Every candle keeps its original body
    delta (close - open) and its wick offsets, with each wick floored at
    MIN_WICK so collapsed or inverted wicks stay visible.
    """
    ordered = sorted(points, key=lambda p: p.age)
    if not ordered:
        return []

    stitched: list[ChartPoint] = []
    previous_close: Score = ordered[0].open
    for index, point in enumerate(ordered):
        body_delta = point.close - point.open
        high_offset = point.high - max(point.open, point.close)
        low_offset = min(point.open, point.close) - point.low

        open_value = point.open if index == 0 else previous_close
        close_value = open_value + body_delta
        stitched.append(
            point.model_copy(
                update={
                    "open": open_value,
                    "close": close_value,
                    "high": max(open_value, close_value) + max(high_offset, MIN_WICK),
                    "low": min(open_value, close_value) - max(low_offset, MIN_WICK),
                    "score": close_value,
                }
            )
        )
        previous_close = close_value
    return stitched


def normalize_chart_points(
    points: list[ChartPoint],
    *,
    target_min: int = TARGET_MIN,
    target_max: int = TARGET_MAX,
) -> list[ChartPoint]:
    """Linearly map [min(low), max(high)] onto [target_min, target_max].

    A series whose total range is under FLAT_RANGE_THRESHOLD is replaced by
    FLAT_PROFILE. After rounding, wicks are pushed back out to MIN_WICK, so
    values can land up to MIN_WICK outside the target band.

    Not idempotent: the mapping is relative to the input's own extrema, and
    wick corrections change those extrema on a second pass.
    """
    if not points:
        return []

    min_val = min(p.low for p in points)
    max_val = max(p.high for p in points)
    current_range = max_val - min_val
    if current_range < FLAT_RANGE_THRESHOLD:
        return [p.model_copy(update=dict(FLAT_PROFILE)) for p in points]

    target_range = target_max - target_min

    def scale(value: float) -> int:
        return _round_half_up((value - min_val) / current_range * target_range + target_min)

    normalized: list[ChartPoint] = []
    for point in points:
        scaled_open = scale(point.open)
        scaled_close = scale(point.close)
        body_max = max(scaled_open, scaled_close)
        body_min = min(scaled_open, scaled_close)
        normalized.append(
            point.model_copy(
                update={
                    "open": scaled_open,
                    "close": scaled_close,
                    "high": max(scale(point.high), body_max + MIN_WICK),
                    "low": min(scale(point.low), body_min - MIN_WICK),
                    "score": scaled_close,
                }
            )
        )
    return normalized


def build_life_kline_series(chunks: Iterable[Iterable[ChartPoint]]) -> list[ChartPoint]:
    return normalize_chart_points(stitch_chart_points(flatten_chunks(chunks)))
