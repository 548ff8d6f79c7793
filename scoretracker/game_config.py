"""
Game declaration table.

One GameDeclaration per (game, playtype) describes everything the validator and
the consolidation engine need to know about a game: its ordered lamps and
grades, how the primary metric is bounded, which optional metrics exist, which
fields follow the lamp, which fields are tracked as independent bests, and which
rating formulas apply. The table is built once at import time and is immutable.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from scoretracker.utils.ordinals import OrderedEnum
from scoretracker.utils.ratings import RatingInput, get_formula
from scoretracker.utils.score_exceptions import (
    ChartMetadataMissingError,
    UnknownGameError,
)

MAXIMIZE = "maximize"
MINIMIZE = "minimize"

# Tolerance when comparing a percent to a grade boundary
GRADE_EPSILON = 1e-9


@dataclass(frozen=True)
class MetricSpec:
    """Declared shape and bounds of an optional metric."""
    kind: str = "number"  # number, integer, sequence, mapping, choice
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuxiliaryField:
    """An optional metric tracked as its own best across all of a user's scores."""
    name: str
    direction: str
    label: str


@dataclass(frozen=True)
class GameDeclaration:
    game: str
    playtype: str
    lamps: OrderedEnum
    grades: OrderedEnum
    grade_boundaries: Tuple[float, ...]
    primary_metric: str
    max_score: Callable[[Any], float]
    percent_max: float = 100.0
    optional_metrics: Mapping[str, MetricSpec] = field(default_factory=dict)
    lamp_fields: Tuple[str, ...] = ()
    auxiliary_fields: Tuple[AuxiliaryField, ...] = ()
    rating_formulas: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.game}:{self.playtype}"

    def derive_percent(self, score: float, chart) -> float:
        """Percent from the primary score. Percent-primary games score in percent."""
        if self.primary_metric == "percent":
            return float(score)
        maximum = self.max_score(chart)
        if maximum <= 0:
            raise ChartMetadataMissingError(chart.chart_id, "has a non-positive max score")
        return 100.0 * score / maximum

    def derive_grade(self, percent: float) -> Tuple[str, int]:
        """Highest grade whose boundary the percent reaches."""
        index = 0
        for i, boundary in enumerate(self.grade_boundaries):
            if percent + GRADE_EPSILON >= boundary:
                index = i
        return self.grades.value_at(index), index

    def calculate_ratings(self, score: float, percent: float, lamp: str,
                          grade: str, optional: Mapping[str, Any], chart) -> Dict[str, Optional[float]]:
        """Evaluate every declared rating formula on the given state."""
        inp = RatingInput(
            score=score,
            percent=percent,
            lamp=lamp,
            lamp_index=self.lamps.index_of(lamp),
            grade=grade,
            lamps=self.lamps,
            level_num=chart.level_num,
            optional=dict(optional or {}),
            chart_data=dict(chart.data or {}),
        )
        return {name: get_formula(name)(inp) for name in self.rating_formulas}


# ---------------------------------------------------------------------------
# Max score helpers
# ---------------------------------------------------------------------------

def _notecount_max_score(chart) -> float:
    """EX score maximum: two points per note."""
    notecount = (chart.data or {}).get("notecount")
    if not isinstance(notecount, int) or notecount <= 0:
        raise ChartMetadataMissingError(chart.chart_id, "has no notecount")
    return notecount * 2


def _fixed_max_score(maximum: float) -> Callable[[Any], float]:
    def max_score(chart) -> float:
        return maximum
    return max_score


# ---------------------------------------------------------------------------
# Ordered enumerations
# ---------------------------------------------------------------------------

IIDX_LAMPS = OrderedEnum("IIDX lamp", (
    "NO PLAY", "FAILED", "ASSIST CLEAR", "EASY CLEAR", "CLEAR",
    "HARD CLEAR", "EX HARD CLEAR", "FULL COMBO",
))
IIDX_GRADES = OrderedEnum("IIDX grade", ("F", "E", "D", "C", "B", "A", "AA", "AAA"))
# 0, 2/9, 3/9 ... 8/9 of the max EX score; F is the floor
IIDX_GRADE_BOUNDARIES = (0.0,) + tuple(100.0 * n / 9 for n in range(2, 9))

SDVX_LAMPS = OrderedEnum("SDVX lamp", (
    "FAILED", "CLEAR", "EXCESSIVE CLEAR", "ULTIMATE CHAIN", "PERFECT ULTIMATE CHAIN",
))
SDVX_GRADES = OrderedEnum("SDVX grade", (
    "D", "C", "B", "A", "A+", "AA", "AA+", "AAA", "AAA+", "S", "PUC",
))
SDVX_GRADE_BOUNDARIES = (0.0, 70.0, 80.0, 87.0, 90.0, 93.0, 95.0, 97.0, 98.0, 99.0, 100.0)

POPN_LAMPS = OrderedEnum("pop'n lamp", ("FAILED", "EASY CLEAR", "CLEAR", "FULL COMBO", "PERFECT"))
POPN_GRADES = OrderedEnum("pop'n grade", ("E", "D", "C", "B", "A", "AA", "AAA", "S"))
POPN_GRADE_BOUNDARIES = (0.0, 50.0, 62.0, 72.0, 82.0, 90.0, 95.0, 98.0)
POPN_CLEAR_TYPES = (
    "failedCircle", "failedDiamond", "failedStar",
    "easyClear", "clearCircle", "clearDiamond", "clearStar",
    "fullComboCircle", "fullComboDiamond", "fullComboStar", "perfect",
)

MAIMAIDX_LAMPS = OrderedEnum("maimai DX lamp", (
    "FAILED", "CLEAR", "FULL COMBO", "FULL COMBO+", "ALL PERFECT", "ALL PERFECT+",
))
MAIMAIDX_GRADES = OrderedEnum("maimai DX grade", (
    "D", "C", "B", "BB", "BBB", "A", "AA", "AAA",
    "S", "S+", "SS", "SS+", "SSS", "SSS+",
))
MAIMAIDX_GRADE_BOUNDARIES = (
    0.0, 50.0, 60.0, 70.0, 75.0, 80.0, 90.0, 94.0,
    97.0, 98.0, 99.0, 99.5, 100.0, 100.5,
)

# ---------------------------------------------------------------------------
# Optional metric declarations
# ---------------------------------------------------------------------------

_COUNTER = MetricSpec("integer", minimum=0)
_GAUGE = MetricSpec("number", minimum=0, maximum=100)

JUDGEMENT_METRICS = MappingProxyType({
    "fast": _COUNTER,
    "slow": _COUNTER,
    "max_combo": _COUNTER,
})

IIDX_METRICS = MappingProxyType(dict(JUDGEMENT_METRICS, **{
    "bp": _COUNTER,
    "gauge": _GAUGE,
    "gsm": MetricSpec("mapping"),
    "gauge_history": MetricSpec("sequence"),
    "combo_break": _COUNTER,
}))

SDVX_METRICS = MappingProxyType(dict(JUDGEMENT_METRICS, **{
    "ex_score": _COUNTER,
    "gauge": _GAUGE,
}))

USC_METRICS = MappingProxyType(dict(JUDGEMENT_METRICS, **{
    "gauge": _GAUGE,
}))

BMS_METRICS = MappingProxyType(dict(JUDGEMENT_METRICS, **{
    "bp": _COUNTER,
    "gauge": _GAUGE,
    "gauge_history": MetricSpec("sequence"),
}))

PMS_METRICS = MappingProxyType(dict(JUDGEMENT_METRICS, **{
    "bp": _COUNTER,
    "gauge": _GAUGE,
}))

POPN_METRICS = MappingProxyType(dict(JUDGEMENT_METRICS, **{
    "gauge": _GAUGE,
    "specific_clear_type": MetricSpec("choice", choices=POPN_CLEAR_TYPES),
}))

BEST_BP = AuxiliaryField("bp", MINIMIZE, "Best BP")
BEST_EX_SCORE = AuxiliaryField("ex_score", MAXIMIZE, "exScorePB")


def _declare(*declarations: GameDeclaration) -> Mapping[Tuple[str, str], GameDeclaration]:
    table = {}
    for decl in declarations:
        table[(decl.game, decl.playtype)] = decl
    return MappingProxyType(table)


def _iidx(playtype: str) -> GameDeclaration:
    return GameDeclaration(
        game="iidx",
        playtype=playtype,
        lamps=IIDX_LAMPS,
        grades=IIDX_GRADES,
        grade_boundaries=IIDX_GRADE_BOUNDARIES,
        primary_metric="score",
        max_score=_notecount_max_score,
        optional_metrics=IIDX_METRICS,
        lamp_fields=("gauge", "gsm", "gauge_history", "combo_break"),
        auxiliary_fields=(BEST_BP,),
        rating_formulas=("lampRating",),
    )


def _usc(playtype: str) -> GameDeclaration:
    return GameDeclaration(
        game="usc",
        playtype=playtype,
        lamps=SDVX_LAMPS,
        grades=SDVX_GRADES,
        grade_boundaries=SDVX_GRADE_BOUNDARIES,
        primary_metric="score",
        max_score=_fixed_max_score(10_000_000),
        optional_metrics=USC_METRICS,
        rating_formulas=("VF6",),
    )


def _bms(playtype: str) -> GameDeclaration:
    return GameDeclaration(
        game="bms",
        playtype=playtype,
        lamps=IIDX_LAMPS,
        grades=IIDX_GRADES,
        grade_boundaries=IIDX_GRADE_BOUNDARIES,
        primary_metric="score",
        max_score=_notecount_max_score,
        optional_metrics=BMS_METRICS,
        lamp_fields=("gauge", "gauge_history"),
        auxiliary_fields=(BEST_BP,),
        rating_formulas=("sieglinde",),
    )


def _pms(playtype: str) -> GameDeclaration:
    return GameDeclaration(
        game="pms",
        playtype=playtype,
        lamps=IIDX_LAMPS,
        grades=IIDX_GRADES,
        grade_boundaries=IIDX_GRADE_BOUNDARIES,
        primary_metric="score",
        max_score=_notecount_max_score,
        optional_metrics=PMS_METRICS,
        auxiliary_fields=(BEST_BP,),
        rating_formulas=("sieglinde",),
    )


GAMES = _declare(
    _iidx("SP"),
    _iidx("DP"),
    GameDeclaration(
        game="sdvx",
        playtype="Single",
        lamps=SDVX_LAMPS,
        grades=SDVX_GRADES,
        grade_boundaries=SDVX_GRADE_BOUNDARIES,
        primary_metric="score",
        max_score=_fixed_max_score(10_000_000),
        optional_metrics=SDVX_METRICS,
        auxiliary_fields=(BEST_EX_SCORE,),
        rating_formulas=("VF6",),
    ),
    _usc("Controller"),
    _usc("Keyboard"),
    _bms("7K"),
    _bms("14K"),
    _pms("Controller"),
    _pms("Keyboard"),
    GameDeclaration(
        game="popn",
        playtype="9B",
        lamps=POPN_LAMPS,
        grades=POPN_GRADES,
        grade_boundaries=POPN_GRADE_BOUNDARIES,
        primary_metric="score",
        max_score=_fixed_max_score(100_000),
        optional_metrics=POPN_METRICS,
        lamp_fields=("specific_clear_type",),
    ),
    GameDeclaration(
        game="maimaidx",
        playtype="Single",
        lamps=MAIMAIDX_LAMPS,
        grades=MAIMAIDX_GRADES,
        grade_boundaries=MAIMAIDX_GRADE_BOUNDARIES,
        primary_metric="percent",
        max_score=_fixed_max_score(101.0),
        percent_max=101.0,
        optional_metrics=JUDGEMENT_METRICS,
        rating_formulas=("rate",),
    ),
)


def get_game_declaration(game: str, playtype: str) -> GameDeclaration:
    try:
        return GAMES[(game, playtype)]
    except KeyError:
        raise UnknownGameError(game, playtype) from None


def is_finite_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )
