"""
Session delta tracking.

When a score is imported into a session, record how it moved the user's
standing on that chart compared with the personal best as it stood right
before the score was merged in. The pre-image is read inside the same
per-(user, chart) scope and the same transaction that stores the score, so
it can never observe the consolidation pass for that score.
"""

import logging
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scoretracker.constants import SessionConstants
from scoretracker.data_models.personal_best import PersonalBestSnapshot, SessionSummary
from scoretracker.database.models import ImportSession, PersonalBest, Score, SessionScoreInfo
from scoretracker.game_config import get_game_declaration
from scoretracker.services.base import BaseService
from scoretracker.utils.score_exceptions import SessionMismatchError, SessionNotFoundError

logger = logging.getLogger(__name__)


def compute_deltas(score, pre_image: Optional[PersonalBestSnapshot]) -> Dict[str, Any]:
    """
    Signed change a score makes against the pre-import personal best.

    With no pre-image the baseline is zero for numeric metrics and index 0
    for lamps and grades.
    """
    if pre_image is None:
        return {
            'is_new_score': True,
            'score_delta': score.score,
            'percent_delta': score.percent,
            'lamp_delta': score.lamp_index,
            'grade_delta': score.grade_index,
        }
    return {
        'is_new_score': False,
        'score_delta': score.score - pre_image.score,
        'percent_delta': score.percent - pre_image.percent,
        'lamp_delta': score.lamp_index - pre_image.lamp_index,
        'grade_delta': score.grade_index - pre_image.grade_index,
    }


class SessionTrackerService(BaseService):
    """Records per-score session deltas and maintains sessions."""

    def __init__(self, session_factory, config_service=None):
        super().__init__(session_factory)
        self.config_service = config_service

    def _config(self, key: str, default):
        if self.config_service is None:
            return default
        return self.config_service.get(key, default)

    async def snapshot_personal_best(self, session: AsyncSession, user_id: int,
                                     chart_id: str) -> Optional[PersonalBestSnapshot]:
        pb = await session.scalar(
            select(PersonalBest).where(
                PersonalBest.user_id == user_id,
                PersonalBest.chart_id == chart_id,
            ).with_for_update()
        )
        if pb is None:
            return None
        return PersonalBestSnapshot(
            score=pb.score,
            percent=pb.percent,
            lamp_index=pb.lamp_index,
            grade_index=pb.grade_index,
        )

    async def record_import(self, session_id: int, score: Score,
                            session: Optional[AsyncSession] = None) -> SessionScoreInfo:
        """
        Append the session entry for a newly accepted score.

        Must run before the consolidation pass for the score's chart. When a
        session is passed in, the entry is written inside the caller's
        transaction; otherwise a transaction is opened here.

        Returns the existing entry unchanged if (session_id, score) was
        already recorded.

        Raises:
            SessionNotFoundError: no session with that id exists
            SessionMismatchError: the session belongs to another user, game or playtype
        """
        if session is not None:
            return await self._record_import(session, session_id, score)

        async with self.get_session() as own_session:
            async with own_session.begin():
                return await self._record_import(own_session, session_id, score)

    async def _record_import(self, session: AsyncSession, session_id: int, score: Score) -> SessionScoreInfo:
        import_session = await session.get(ImportSession, session_id, with_for_update=True)
        if import_session is None:
            raise SessionNotFoundError(session_id)
        owner = (import_session.user_id, import_session.game, import_session.playtype)
        if owner != (score.user_id, score.game, score.playtype):
            raise SessionMismatchError(
                session_id,
                f"user {owner[0]} on {owner[1]}:{owner[2]}",
                f"user {score.user_id} on {score.game}:{score.playtype}",
            )

        existing = await session.scalar(
            select(SessionScoreInfo).where(
                SessionScoreInfo.session_id == session_id,
                SessionScoreInfo.score_id == score.score_id,
            )
        )
        if existing is not None:
            logger.debug(f"Score {score.score_id} already recorded in session {session_id}")
            return existing

        pre_image = await self.snapshot_personal_best(session, score.user_id, score.chart_id)
        info = SessionScoreInfo(session_id=session_id, score_id=score.score_id, **compute_deltas(score, pre_image))
        session.add(info)

        if score.time_achieved is not None:
            if score.time_achieved < import_session.time_started:
                import_session.time_started = score.time_achieved
            if score.time_achieved > import_session.time_ended:
                import_session.time_ended = score.time_achieved

        await session.flush()
        await self._update_session_ratings(session, import_session)

        logger.debug(
            f"Session {session_id} += {score.score_id}: new={info.is_new_score} "
            f"score_delta={info.score_delta} lamp_delta={info.lamp_delta}"
        )
        return info

    @property
    def gap(self) -> timedelta:
        return timedelta(minutes=self._config('session.gap_minutes', SessionConstants.DEFAULT_GAP_MINUTES))

    async def find_session(self, session: AsyncSession, user_id: int, game: str,
                           playtype: str, time_achieved: datetime) -> Optional[ImportSession]:
        """Stored session whose span, widened by the gap, covers `time_achieved`."""
        gap = self.gap
        return await session.scalar(
            select(ImportSession).where(
                ImportSession.user_id == user_id,
                ImportSession.game == game,
                ImportSession.playtype == playtype,
                ImportSession.time_started <= time_achieved + gap,
                ImportSession.time_ended >= time_achieved - gap,
            ).order_by(ImportSession.time_ended.desc())
        )

    async def get_or_create_session(self, session: AsyncSession, user_id: int, game: str,
                                    playtype: str, time_achieved: datetime) -> Tuple[ImportSession, bool]:
        """
        Session a score played at `time_achieved` belongs to.

        A session accepts scores up to `session.gap_minutes` either side of its
        current span; otherwise a new session is opened. Returns the session and
        whether it was just opened.
        """
        candidate = await self.find_session(session, user_id, game, playtype, time_achieved)
        if candidate is not None:
            return candidate, False

        import_session = ImportSession(
            user_id=user_id,
            game=game,
            playtype=playtype,
            name=f"{game} {playtype} session {time_achieved:%Y-%m-%d %H:%M}",
            time_started=time_achieved,
            time_ended=time_achieved,
            calculated={},
        )
        session.add(import_session)
        await session.flush()
        logger.info(f"Opened session {import_session.id} for user {user_id} on {game}:{playtype}")
        return import_session, True

    async def create_session(self, user_id: int, game: str, playtype: str,
                             name: Optional[str] = None, started: Optional[datetime] = None) -> ImportSession:
        started = started or datetime.now(timezone.utc).replace(tzinfo=None)
        async with self.get_session() as session:
            import_session = ImportSession(
                user_id=user_id,
                game=game,
                playtype=playtype,
                name=name,
                time_started=started,
                time_ended=started,
                calculated={},
            )
            session.add(import_session)
        return import_session

    async def _update_session_ratings(self, session: AsyncSession, import_session: ImportSession):
        """Mean of the best N ratings per formula across the session's scores."""
        decl = get_game_declaration(import_session.game, import_session.playtype)
        if not decl.rating_formulas:
            return

        sample_size = self._config('session.rating_sample_size', SessionConstants.DEFAULT_RATING_SAMPLE_SIZE)
        result = await session.execute(
            select(Score.calculated)
            .join(SessionScoreInfo, SessionScoreInfo.score_id == Score.score_id)
            .where(SessionScoreInfo.session_id == import_session.id)
        )
        score_ratings = [calculated or {} for calculated in result.scalars().all()]

        ratings = {}
        for name in decl.rating_formulas:
            values = sorted(
                (r[name] for r in score_ratings if r.get(name) is not None),
                reverse=True,
            )[:sample_size]
            ratings[name] = mean(values) if values else None
        import_session.calculated = ratings

    async def remove_score(self, session: AsyncSession, score_id: str) -> List[int]:
        """Drop a deleted score's session entries and refresh those sessions' ratings."""
        result = await session.execute(
            select(SessionScoreInfo).where(SessionScoreInfo.score_id == score_id)
        )
        infos = result.scalars().all()
        session_ids = sorted({info.session_id for info in infos})
        for info in infos:
            await session.delete(info)
        await session.flush()

        for session_id in session_ids:
            import_session = await session.get(ImportSession, session_id)
            if import_session is not None:
                await self._update_session_ratings(session, import_session)
        return session_ids

    # Read accessors

    async def get_session_score_infos(self, session_id: int) -> List[SessionScoreInfo]:
        async with self.get_session() as session:
            result = await session.execute(
                select(SessionScoreInfo)
                .where(SessionScoreInfo.session_id == session_id)
                .order_by(SessionScoreInfo.id)
            )
            return list(result.scalars().all())

    async def get_session_summary(self, session_id: int) -> SessionSummary:
        async with self.get_session() as session:
            import_session = await session.get(ImportSession, session_id)
            if import_session is None:
                raise SessionNotFoundError(session_id)
            result = await session.execute(
                select(SessionScoreInfo)
                .where(SessionScoreInfo.session_id == session_id)
                .order_by(SessionScoreInfo.id)
            )
            infos = [info.to_dict() for info in result.scalars().all()]

        return SessionSummary(
            session_id=import_session.id,
            user_id=import_session.user_id,
            game=import_session.game,
            playtype=import_session.playtype,
            name=import_session.name,
            time_started=import_session.time_started,
            time_ended=import_session.time_ended,
            calculated=dict(import_session.calculated or {}),
            score_infos=infos,
        )
