"""
Personal best consolidation.

For one (user, chart) the personal best is a pure function of the user's scores
on that chart. Different scores may supply different parts of it:

- score-dimension fields come from the score with the best primary metric
- lamp-dimension fields come from the score with the best lamp
- each auxiliary field (e.g. best BP) comes from whichever score optimizes it

Ties are broken by newest time_achieved (scores without one count as oldest),
then by greatest score_id, so the result never depends on insertion order.

This service is the only writer of personal_bests. Callers hold the
per-(user, chart) scope from KeyedLockManager around consolidate_in_scope();
consolidate() takes the scope itself.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from scoretracker.constants import ImportConstants
from scoretracker.data_models.personal_best import ComposedFromEntry, MergedPersonalBest
from scoretracker.database.models import Chart, PersonalBest, Score
from scoretracker.game_config import MINIMIZE, GameDeclaration, get_game_declaration
from scoretracker.services.base import BaseService, backoff_delay
from scoretracker.services.locks import KeyedLockManager
from scoretracker.utils.score_exceptions import (
    ChartMetadataMissingError,
    StaleRecordSetError,
    TransactionError,
)

logger = logging.getLogger(__name__)


def _time_key(record) -> datetime:
    return record.time_achieved or datetime.min


def _primary_value(decl: GameDeclaration, record) -> float:
    return record.percent if decl.primary_metric == 'percent' else record.score


def select_score_best(decl: GameDeclaration, records: Sequence[Any]):
    return max(records, key=lambda r: (_primary_value(decl, r), _time_key(r), r.score_id))


def select_lamp_best(records: Sequence[Any]):
    return max(records, key=lambda r: (r.lamp_index, _time_key(r), r.score_id))


def select_auxiliary_best(records: Sequence[Any], name: str, direction: str):
    """Record that optimizes an auxiliary field, or None if no record has it."""
    candidates = [r for r in records if (r.optional or {}).get(name) is not None]
    if not candidates:
        return None
    sign = -1 if direction == MINIMIZE else 1
    return max(candidates, key=lambda r: (sign * r.optional[name], _time_key(r), r.score_id))


def record_fingerprint(records: Iterable[Any]) -> Tuple[str, ...]:
    return tuple(sorted(r.score_id for r in records))


def merge_personal_best(decl: GameDeclaration, chart, records: Sequence[Any]) -> MergedPersonalBest:
    """
    Fold a user's complete record set on one chart into a personal best.

    `records` must be non-empty and belong to one (user, chart). Records only
    need the Score attributes; nothing here touches the database.
    """
    score_pb = select_score_best(decl, records)
    lamp_pb = select_lamp_best(records)

    optional = dict(score_pb.optional or {})
    lamp_optional = lamp_pb.optional or {}
    for name in decl.lamp_fields:
        if lamp_optional.get(name) is not None:
            optional[name] = lamp_optional[name]
        else:
            optional.pop(name, None)

    contributors = [score_pb, lamp_pb]
    other: List[ComposedFromEntry] = []
    for aux in decl.auxiliary_fields:
        best = select_auxiliary_best(records, aux.name, aux.direction)
        if best is None:
            optional.pop(aux.name, None)
            logger.debug(
                f"No {aux.label} for user {score_pb.user_id} on {chart.chart_id}; "
                f"no score has '{aux.name}'"
            )
            continue
        if best.score_id == score_pb.score_id:
            continue
        optional[aux.name] = best.optional[aux.name]
        if best.score_id == lamp_pb.score_id:
            continue
        other.append(ComposedFromEntry(name=aux.label, score_id=best.score_id))
        contributors.append(best)

    calculated = decl.calculate_ratings(
        score_pb.score, score_pb.percent, lamp_pb.lamp, score_pb.grade, optional, chart
    )
    score_ratings = {
        r.score_id: decl.calculate_ratings(r.score, r.percent, r.lamp, r.grade, r.optional or {}, chart)
        for r in records
    }

    timestamps = [r.time_achieved for r in contributors if r.time_achieved is not None]

    return MergedPersonalBest(
        user_id=score_pb.user_id,
        chart_id=chart.chart_id,
        song_id=chart.song_id,
        game=decl.game,
        playtype=decl.playtype,
        score=score_pb.score,
        percent=score_pb.percent,
        grade=score_pb.grade,
        grade_index=score_pb.grade_index,
        lamp=lamp_pb.lamp,
        lamp_index=lamp_pb.lamp_index,
        optional=optional,
        score_pb_id=score_pb.score_id,
        lamp_pb_id=lamp_pb.score_id,
        other=tuple(other),
        calculated=calculated,
        time_achieved=max(timestamps) if timestamps else None,
        fingerprint=record_fingerprint(records),
        score_ratings=score_ratings,
    )


class PBConsolidationService(BaseService):
    """Recomputes and persists personal bests."""

    # Full recomputations allowed when the record set keeps changing under a write
    MAX_RECOMPUTES = 3

    def __init__(self, session_factory, lock_manager: KeyedLockManager, config_service=None):
        super().__init__(session_factory)
        self.lock_manager = lock_manager
        self.config_service = config_service

    def _max_write_retries(self) -> int:
        if self.config_service is None:
            return ImportConstants.DEFAULT_MAX_RETRIES
        return max(1, self.config_service.get(
            'import.score_submission_max_retries', ImportConstants.DEFAULT_MAX_RETRIES
        ))

    async def consolidate(self, user_id: int, chart_id: str) -> Optional[PersonalBest]:
        """Take the (user, chart) scope and consolidate."""
        async with self.lock_manager.hold(user_id, chart_id):
            return await self.consolidate_in_scope(user_id, chart_id)

    async def consolidate_in_scope(self, user_id: int, chart_id: str) -> Optional[PersonalBest]:
        """
        Recompute the personal best from the user's current scores on the chart.

        Must be called with the (user, chart) scope held. Returns None when the
        user has no scores left on the chart, in which case any existing personal
        best is deleted.

        Raises:
            ChartMetadataMissingError: the chart is gone; the personal best is left untouched
            TransactionError: the write kept failing
        """
        for attempt in range(self.MAX_RECOMPUTES):
            merged, fingerprint = await self._compute(user_id, chart_id)
            try:
                return await self.execute_with_retry(
                    lambda: self._write(user_id, chart_id, merged, fingerprint),
                    max_retries=self._max_write_retries(),
                )
            except StaleRecordSetError:
                logger.info(
                    f"Record set for user {user_id} on {chart_id} changed during write, "
                    f"recomputing (attempt {attempt + 1})"
                )
            except IntegrityError as e:
                logger.warning(f"Integrity error writing PB for user {user_id} on {chart_id}: {e}")
                await asyncio.sleep(backoff_delay(attempt))
            except OperationalError as e:
                logger.error(f"PB write for user {user_id} on {chart_id} failed after retries: {e}")
                raise TransactionError("personal best write", self._max_write_retries()) from e

        logger.error(f"Consolidation for user {user_id} on {chart_id} did not settle")
        raise TransactionError("personal best consolidation", self.MAX_RECOMPUTES)

    async def _compute(self, user_id: int, chart_id: str) -> Tuple[Optional[MergedPersonalBest], Tuple[str, ...]]:
        async with self.get_session() as session:
            chart = await session.scalar(select(Chart).where(Chart.chart_id == chart_id))
            if chart is None:
                logger.critical(f"Chart {chart_id} disappeared underfoot while consolidating user {user_id}")
                raise ChartMetadataMissingError(chart_id)

            result = await session.execute(
                select(Score).where(Score.user_id == user_id, Score.chart_id == chart_id)
            )
            records = result.scalars().all()

        if not records:
            return None, ()

        decl = get_game_declaration(chart.game, chart.playtype)
        merged = merge_personal_best(decl, chart, records)
        return merged, merged.fingerprint

    async def _write(self, user_id: int, chart_id: str,
                     merged: Optional[MergedPersonalBest],
                     fingerprint: Tuple[str, ...]) -> Optional[PersonalBest]:
        async with self.get_session() as session:
            async with session.begin():
                current = await session.execute(
                    select(Score.score_id).where(Score.user_id == user_id, Score.chart_id == chart_id)
                )
                if tuple(sorted(current.scalars().all())) != fingerprint:
                    raise StaleRecordSetError(user_id, chart_id)

                pb = await session.scalar(
                    select(PersonalBest).where(
                        PersonalBest.user_id == user_id,
                        PersonalBest.chart_id == chart_id,
                    ).with_for_update()
                )

                if merged is None:
                    if pb is not None:
                        await session.delete(pb)
                        logger.info(f"Deleted PB for user {user_id} on {chart_id}: no scores remain")
                    return None

                row = merged.to_row()
                if pb is None:
                    pb = PersonalBest(**row)
                    session.add(pb)
                else:
                    for key, value in row.items():
                        setattr(pb, key, value)

                for score_id, calculated in merged.score_ratings.items():
                    await session.execute(
                        update(Score).where(Score.score_id == score_id).values(calculated=dict(calculated))
                    )

                await session.flush()

        logger.debug(
            f"Consolidated PB for user {user_id} on {chart_id}: "
            f"score_pb={merged.score_pb_id} lamp_pb={merged.lamp_pb_id} other={len(merged.other)}"
        )
        return pb

    # Read accessors

    async def get_personal_best(self, user_id: int, chart_id: str) -> Optional[PersonalBest]:
        async with self.get_session() as session:
            return await session.scalar(
                select(PersonalBest).where(
                    PersonalBest.user_id == user_id,
                    PersonalBest.chart_id == chart_id,
                )
            )

    async def get_user_personal_bests(self, user_id: int, game: str, playtype: str) -> List[PersonalBest]:
        async with self.get_session() as session:
            result = await session.execute(
                select(PersonalBest).where(
                    PersonalBest.user_id == user_id,
                    PersonalBest.game == game,
                    PersonalBest.playtype == playtype,
                ).order_by(PersonalBest.chart_id)
            )
            return list(result.scalars().all())

    async def get_user_scores(self, user_id: int, chart_id: str) -> List[Score]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Score).where(Score.user_id == user_id, Score.chart_id == chart_id)
                .order_by(Score.id)
            )
            return list(result.scalars().all())

