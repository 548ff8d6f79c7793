"""
Rating formulas for the supported games.

Each formula is a pure function of a RatingInput and returns a float, or None
when the chart lacks the inputs the formula needs. Formulas are looked up by
name through RATING_FORMULAS so game declarations can refer to them.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional

from scoretracker.utils.ordinals import OrderedEnum


@dataclass(frozen=True)
class RatingInput:
    """Everything a rating formula may look at"""
    score: float
    percent: float
    lamp: str
    lamp_index: int
    grade: str
    lamps: OrderedEnum
    level_num: Optional[float] = None
    optional: Mapping[str, object] = field(default_factory=dict)
    chart_data: Mapping[str, object] = field(default_factory=dict)


RatingFormula = Callable[[RatingInput], Optional[float]]

# Volforce (SDVX 6 / USC)
VF6_LAMP_COEFFICIENTS = MappingProxyType({
    "PERFECT ULTIMATE CHAIN": 1.1,
    "ULTIMATE CHAIN": 1.05,
    "EXCESSIVE CLEAR": 1.02,
    "CLEAR": 1.0,
    "FAILED": 0.5,
})

# (minimum score, coefficient), best first
VF6_GRADE_COEFFICIENTS = (
    (9_900_000, 1.05),
    (9_800_000, 1.02),
    (9_700_000, 1.0),
    (9_500_000, 0.97),
    (9_300_000, 0.94),
    (9_000_000, 0.91),
    (8_700_000, 0.88),
    (7_500_000, 0.85),
    (6_500_000, 0.82),
)
VF6_GRADE_FLOOR = 0.8

# maimai DX rate factors by grade
MAIMAI_RATE_FACTORS = MappingProxyType({
    "SSS+": 22.4,
    "SSS": 21.6,
    "SS+": 21.1,
    "SS": 20.8,
    "S+": 20.3,
    "S": 20.0,
    "AAA": 16.8,
    "AA": 15.2,
    "A": 13.6,
    "BBB": 12.0,
    "BB": 11.2,
    "B": 9.6,
    "C": 8.0,
    "D": 0.0,
})
MAIMAI_PERCENT_CAP = 100.5


def _vf6_grade_coefficient(score: float) -> float:
    for minimum, coefficient in VF6_GRADE_COEFFICIENTS:
        if score >= minimum:
            return coefficient
    return VF6_GRADE_FLOOR


def calculate_vf6(inp: RatingInput) -> Optional[float]:
    """
    Volforce for a single chart.

    floor(level * score/10M * grade coefficient * lamp coefficient * 20) / 1000
    """
    if inp.level_num is None:
        return None

    lamp_coefficient = VF6_LAMP_COEFFICIENTS.get(inp.lamp)
    if lamp_coefficient is None:
        return None

    value = (
        inp.level_num
        * (inp.score / 10_000_000)
        * _vf6_grade_coefficient(inp.score)
        * lamp_coefficient
        * 20
    )
    return math.floor(value) / 1000


def calculate_lamp_rating(inp: RatingInput) -> Optional[float]:
    """Chart level once the chart is at least easy-cleared, otherwise 0."""
    if inp.level_num is None:
        return None
    if inp.lamp_index >= inp.lamps.index_of("EASY CLEAR"):
        return float(inp.level_num)
    return 0.0


def calculate_sieglinde(inp: RatingInput) -> Optional[float]:
    """Fixed per-chart clear difficulty from the chart's sgl_ec/sgl_hc constants."""
    ec = inp.chart_data.get("sgl_ec")
    hc = inp.chart_data.get("sgl_hc")
    if ec is None or hc is None:
        return None

    if inp.lamp_index >= inp.lamps.index_of("HARD CLEAR"):
        return float(max(ec, hc))
    if inp.lamp_index >= inp.lamps.index_of("EASY CLEAR"):
        return float(ec)
    return 0.0


def calculate_maimai_rate(inp: RatingInput) -> Optional[float]:
    if inp.level_num is None:
        return None
    factor = MAIMAI_RATE_FACTORS.get(inp.grade, 0.0)
    percent = min(inp.percent, MAIMAI_PERCENT_CAP)
    return float(math.floor(inp.level_num * (percent / 100) * factor))


_FORMULAS: Dict[str, RatingFormula] = {
    "VF6": calculate_vf6,
    "lampRating": calculate_lamp_rating,
    "sieglinde": calculate_sieglinde,
    "rate": calculate_maimai_rate,
}

RATING_FORMULAS: Mapping[str, RatingFormula] = MappingProxyType(_FORMULAS)


def get_formula(name: str) -> RatingFormula:
    try:
        return RATING_FORMULAS[name]
    except KeyError:
        raise ValueError(f"Unknown rating formula '{name}'") from None
