"""Birth-chart input contract for life K-line generation.

Pillars, start age and the first luck cycle come from an external calendar
calculator; this module only validates them and renders the context text the
generation requests share.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

YANG_STEMS = ("甲", "丙", "戊", "庚", "壬")


def resolve_is_forward(year_pillar: str, gender: str) -> bool:
    """Luck cycles run forward for a yang-year male or a yin-year female."""
    stem = (year_pillar or "").strip()[:1]
    is_yang_year = stem in YANG_STEMS
    is_male = str(gender).strip().lower() == "male"
    return is_yang_year if is_male else not is_yang_year


class BaziInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field("", max_length=64, description="Display name")
    gender: Literal["Male", "Female"] = Field(..., description="Male | Female")
    birth_year: int = Field(..., ge=1, le=9999, description="Gregorian birth year")
    year_pillar: str = Field(..., min_length=1, max_length=8)
    month_pillar: str = Field(..., min_length=1, max_length=8)
    day_pillar: str = Field(..., min_length=1, max_length=8)
    hour_pillar: str = Field(..., min_length=1, max_length=8)
    start_age: int = Field(..., ge=0, le=100, description="Age at which the first luck cycle starts")
    first_da_yun: str = Field(..., min_length=1, max_length=8, description="First 10-year luck cycle")
    is_forward: Optional[bool] = Field(None, description="Luck-cycle direction; derived when omitted")

    @field_validator("gender", mode="before")
    @classmethod
    def normalize_gender(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"male", "m"}:
                return "Male"
            if lowered in {"female", "f"}:
                return "Female"
        return value

    @model_validator(mode="after")
    def fill_direction(self) -> "BaziInput":
        if self.is_forward is None:
            self.is_forward = resolve_is_forward(self.year_pillar, self.gender)
        return self

    @property
    def pillars(self) -> list[str]:
        return [self.year_pillar, self.month_pillar, self.day_pillar, self.hour_pillar]


def build_bazi_context(bazi: BaziInput) -> str:
    direction = "forward" if bazi.is_forward else "backward"
    name = bazi.name.strip() or "anonymous"
    return (
        "[Chart]\n"
        f"Name: {name} ({bazi.gender}), born {bazi.birth_year}\n"
        f"Four pillars: {' '.join(bazi.pillars)}\n"
        f"Luck cycles start at age {bazi.start_age}, first cycle {bazi.first_da_yun}, running {direction}.\n"
    )


def bazi_chart_hash(bazi: BaziInput) -> str:
    fields = bazi.model_dump(include=set(BaziInput.model_fields))
    canonical = json.dumps(fields, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
