"""
Data valuation arithmetic.

    total        = sum(yearly valuations)
    reliance     = total * reliance% / 100
    after_decay  = reliance * (1 - 12.5 / 100)
    upper        = after_decay * avg(scarcity, ownership, uniqueness) / 100
    lower        = upper * (1 - 30 / 100)

Both bounds are rounded half-up to whole currency units. The decay-only
variant (upper = after_decay) is kept behind ``apply_quality=False``; it was
the formula before quality discounting was introduced and is superseded.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

DATA_DECAY_PERCENT = 12.5
LOWER_BOUND_DISCOUNT_PERCENT = 30.0
DEFAULT_FALLBACK_PERCENT = 50.0
DEFAULT_SCARCITY = 50.0
DEFAULT_OWNERSHIP = 80.0
DEFAULT_UNIQUENESS = 50.0


def round_half_up(value: float) -> int:
    if not math.isfinite(value):
        raise ValueError(f"valuation is not a finite number: {value}")
    return int(math.floor(value + 0.5))


def sanitize_percent(value: Optional[float], fallback: Optional[float] = None) -> float:
    """Replace an unrealistic percentage (<= 0, >= 100 or missing) with the fallback, or 50."""
    replacement = DEFAULT_FALLBACK_PERCENT if fallback is None else float(fallback)
    if value is None:
        return replacement
    try:
        value = float(value)
    except (TypeError, ValueError):
        return replacement
    if math.isnan(value) or value <= 0 or value >= 100:
        return replacement
    return value


class ValuationInputs(BaseModel):
    """Numbers extracted from the questionnaire answers."""

    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    years_collecting: int = Field(alias="yearsCollectingData")
    attributable_percent: float = Field(alias="dataAttributablePercent")
    reliance_percent: float = Field(alias="dataReliancePercent")
    current_value: float = Field(alias="currentCompanyValue")
    yearly_valuations: List[float] = Field(alias="yearlyValuations")

    @field_validator("years_collecting", mode="before")
    @classmethod
    def _coerce_years(cls, v):
        try:
            return int(round(float(v)))
        except OverflowError as e:
            raise ValueError(f"yearsCollectingData out of range: {v!r}") from e


@dataclass
class ValuationResult:
    total_valuation: float
    reliance_valuation: float
    after_decay: float
    quality_multiplier: float
    upper: int
    lower: int


def compute_valuation(
    yearly_valuations: Sequence[float],
    reliance_percent: float,
    scarcity: float = DEFAULT_SCARCITY,
    ownership: float = DEFAULT_OWNERSHIP,
    uniqueness: float = DEFAULT_UNIQUENESS,
    decay_percent: float = DATA_DECAY_PERCENT,
    lower_discount_percent: float = LOWER_BOUND_DISCOUNT_PERCENT,
    apply_quality: bool = True,
) -> ValuationResult:
    total = float(sum(yearly_valuations))
    reliance_valuation = total * reliance_percent / 100
    after_decay = reliance_valuation * (100 - decay_percent) / 100
    quality_avg = (scarcity + ownership + uniqueness) / 3 if apply_quality else 100.0
    upper = after_decay * quality_avg / 100
    lower = upper * (100 - lower_discount_percent) / 100
    return ValuationResult(
        total_valuation=total,
        reliance_valuation=reliance_valuation,
        after_decay=after_decay,
        quality_multiplier=quality_avg / 100,
        upper=round_half_up(upper),
        lower=round_half_up(lower),
    )


def format_millions(amount: float) -> str:
    return f"${amount / 1_000_000:.1f}M"


def _share_of(amount: float, current_value: float) -> str:
    if not current_value:
        return "n/a"
    return f"{amount / current_value * 100:.1f}%"


def build_valuation_report(
    inputs: ValuationInputs,
    answers: List[Dict[str, str]],
    reliance_fallback: Optional[float] = None,
    attributable_fallback: Optional[float] = None,
    scarcity: Optional[float] = None,
    ownership: Optional[float] = None,
    uniqueness: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Sanitize the extracted inputs, run the valuation and shape the stored
    ``ADVdata`` document plus its display ranges.
    """
    reliance = sanitize_percent(inputs.reliance_percent, reliance_fallback)
    attributable = sanitize_percent(inputs.attributable_percent, attributable_fallback)
    scarcity = DEFAULT_SCARCITY if scarcity is None else scarcity
    ownership = DEFAULT_OWNERSHIP if ownership is None else ownership
    uniqueness = DEFAULT_UNIQUENESS if uniqueness is None else uniqueness

    result = compute_valuation(inputs.yearly_valuations, reliance, scarcity, ownership, uniqueness)

    adv_data = {
        "lowerADV": result.lower,
        "upperADV": result.upper,
        "chartData": {
            "labels": ["Bottom PDV Range", "Top PDV Range"],
            "values": [result.lower, result.upper],
            "percentages": {
                "lower": _share_of(result.lower, inputs.current_value),
                "upper": _share_of(result.upper, inputs.current_value),
            },
        },
        "calculationDetails": {
            "totalValuation": result.total_valuation,
            "dataRelianceValuation": result.reliance_valuation,
            "valuationAfterDecay": result.after_decay,
            "qualityMultiplier": result.quality_multiplier,
            "dataDecayPercent": DATA_DECAY_PERCENT,
            "lowerBoundDiscountPercent": LOWER_BOUND_DISCOUNT_PERCENT,
            "yearsCollectingData": inputs.years_collecting,
            "dataReliancePercent": reliance,
            "dataAttributablePercent": attributable,
            "dataScarcityPercent": scarcity,
            "dataOwnershipPercent": ownership,
            "dataUniquenessPercent": uniqueness,
            "currentCompanyValue": inputs.current_value,
        },
        "qaTable": [{"question": a["question"], "answer": a["answer"]} for a in answers],
    }
    return {
        "advData": adv_data,
        "lowerADVRange": format_millions(result.lower),
        "upperADVRange": format_millions(result.upper),
    }
