"""
Score Validation Operations

Turns a converter's raw payload into a ValidatedScore, or fails with a
ScoreValidationError describing why the submission cannot be accepted.

Checks performed, in order:
- the game/playtype is declared
- the chart resolves in the catalog, and its song exists
- the lamp is one of the game's lamps
- the primary metric is present, finite and within the chart's bounds
- every optional metric is declared and within its bounds
- the timestamp parses

Only catalog reads happen here; nothing is written.
"""

import hashlib
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from scoretracker.data_models.score_import import ChartIdentity, ValidatedScore
from scoretracker.game_config import GameDeclaration, MetricSpec, get_game_declaration, is_finite_number
from scoretracker.utils.logger import setup_logger
from scoretracker.utils.score_exceptions import (
    OutOfRangeMetricError,
    ScoreValidationError,
    UnknownOrdinalValueError,
)
from scoretracker.utils.time_parser import parse_score_timestamp

logger = setup_logger(__name__)


def compute_score_id(user_id: int, chart_id: str, primary: float, lamp: str,
                     optional: Mapping[str, Any], time_achieved) -> str:
    """Deterministic identity of a score: same play, same id."""
    material = json.dumps(
        {
            'user_id': user_id,
            'chart_id': chart_id,
            'primary': primary,
            'lamp': lamp,
            'optional': optional,
            'time_achieved': time_achieved.isoformat() if time_achieved else None,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(material.encode('utf-8')).hexdigest()


class ScoreValidator:
    """Validates submissions against the game declaration table and the catalog."""

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        if session:
            yield session
        else:
            async with self.db.get_session() as new_session:
                yield new_session

    async def validate(
        self,
        user_id: int,
        game: str,
        playtype: str,
        identity: ChartIdentity,
        payload: Mapping[str, Any],
        import_type: str,
        service: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> ValidatedScore:
        """
        Validate one submission.

        Raises:
            ScoreValidationError: the submission is rejected
            SongChartDesyncError: the catalog is inconsistent
        """
        decl = get_game_declaration(game, playtype)

        async with self._get_session_context(session) as s:
            chart = await self.db.resolve_chart(game, playtype, identity, session=s)
            song = await self.db.resolve_song(chart, session=s)

        lamp = payload.get('lamp')
        if lamp is None:
            raise ScoreValidationError("Missing lamp", "The score has no lamp.")
        if not isinstance(lamp, str):
            raise UnknownOrdinalValueError(decl.lamps.name, lamp)
        lamp_index = decl.lamps.index_of(lamp)

        score, percent = self._validate_primary(decl, chart, payload)
        optional = self._validate_optional(decl, payload.get('optional') or {})
        time_achieved = parse_score_timestamp(payload.get('time_achieved'))
        grade, grade_index = decl.derive_grade(percent)
        calculated = decl.calculate_ratings(score, percent, lamp, grade, optional, chart)

        primary_value = percent if decl.primary_metric == 'percent' else score
        score_id = compute_score_id(user_id, chart.chart_id, primary_value, lamp, optional, time_achieved)

        return ValidatedScore(
            score_id=score_id,
            user_id=user_id,
            chart_id=chart.chart_id,
            song_id=song.id,
            game=game,
            playtype=playtype,
            score=score,
            percent=percent,
            lamp=lamp,
            lamp_index=lamp_index,
            grade=grade,
            grade_index=grade_index,
            optional=optional,
            calculated=calculated,
            time_achieved=time_achieved,
            import_type=import_type,
            service=service or payload.get('service'),
        )

    def _validate_primary(self, decl: GameDeclaration, chart, payload: Mapping[str, Any]):
        metric = decl.primary_metric
        if metric not in payload or payload[metric] is None:
            raise ScoreValidationError(
                f"Missing primary metric '{metric}' for {decl.key}",
                f"The score has no {metric}."
            )

        value = payload[metric]
        if metric == 'percent':
            maximum = decl.percent_max
        else:
            maximum = decl.max_score(chart)

        if not is_finite_number(value) or not 0 <= value <= maximum:
            raise OutOfRangeMetricError(metric, value, 0, maximum)

        if metric == 'percent':
            return float(value), float(value)
        return float(value), decl.derive_percent(value, chart)

    def _validate_optional(self, decl: GameDeclaration, optional: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(optional, Mapping):
            raise ScoreValidationError("Optional metrics must be a mapping")

        cleaned = {}
        for name, value in optional.items():
            spec = decl.optional_metrics.get(name)
            if spec is None:
                raise ScoreValidationError(
                    f"Unknown optional metric '{name}' for {decl.key}",
                    f"'{name}' is not tracked for {decl.game}."
                )
            if value is None:
                continue
            self._check_metric(name, value, spec)
            cleaned[name] = value
        return cleaned

    def _check_metric(self, name: str, value: Any, spec: MetricSpec):
        if spec.kind == 'sequence':
            if not isinstance(value, (list, tuple)):
                raise ScoreValidationError(f"Optional metric '{name}' must be a list")
            if any(v is not None and not is_finite_number(v) for v in value):
                raise OutOfRangeMetricError(name, value, spec.minimum, spec.maximum)
            return
        if spec.kind == 'mapping':
            if not isinstance(value, Mapping):
                raise ScoreValidationError(f"Optional metric '{name}' must be a mapping")
            return
        if spec.kind == 'choice':
            if value not in spec.choices:
                raise UnknownOrdinalValueError(name, value)
            return

        if not is_finite_number(value):
            raise OutOfRangeMetricError(name, value, spec.minimum, spec.maximum)
        if spec.kind == 'integer' and int(value) != value:
            raise OutOfRangeMetricError(name, value, spec.minimum, spec.maximum)
        if spec.minimum is not None and value < spec.minimum:
            raise OutOfRangeMetricError(name, value, spec.minimum, spec.maximum)
        if spec.maximum is not None and value > spec.maximum:
            raise OutOfRangeMetricError(name, value, spec.minimum, spec.maximum)
