"""
Score import pipeline.

import_score() runs one submission through:

    validate -> take (user, chart) scope -> one transaction {
        dedupe on score_id, insert score, snapshot pre-image, record session entry
    } -> consolidate -> release scope

Validation failures come back as REJECTED results and write nothing. A score
that was stored but whose consolidation pass failed comes back as
CONSOLIDATION_FAILED; it stays stored and the next pass on that chart picks
it up.
"""

import asyncio
import logging
from datetime import datetime
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError

from scoretracker.constants import ImportConstants
from scoretracker.data_models.score_import import (
    BatchImportSummary,
    ChartIdentity,
    ImportResult,
    ImportStatus,
    ScoreSubmission,
    ValidatedScore,
)
from scoretracker.database.models import ImportSession, PersonalBest, Score, SessionScoreInfo
from scoretracker.operations.score_validation import ScoreValidator
from scoretracker.services.base import BaseService, backoff_delay
from scoretracker.services.locks import KeyedLockManager
from scoretracker.services.pb_consolidation import PBConsolidationService
from scoretracker.services.session_tracker import SessionTrackerService
from scoretracker.utils.score_exceptions import (
    DataIntegrityError,
    DatabaseError,
    LockTimeoutError,
    ScoreValidationError,
    TransactionError,
    UnparsableTimestampError,
)
from scoretracker.utils.time_parser import parse_score_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")


def divide_chunks(values: List[T], n: int) -> Iterator[List[T]]:
    for i in range(0, len(values), n):
        yield values[i : i + n]


class ScoreImportService(BaseService):
    """Imports scores, keeps sessions and personal bests current."""

    def __init__(self, database, config_service=None, lock_manager: Optional[KeyedLockManager] = None):
        super().__init__(database.async_session)
        self.db = database
        self.config_service = config_service
        self.lock_manager = lock_manager or KeyedLockManager()
        self.validator = ScoreValidator(database)
        self.consolidation = PBConsolidationService(database.async_session, self.lock_manager, config_service)
        self.tracker = SessionTrackerService(database.async_session, config_service)

    def _config(self, key: str, default):
        if self.config_service is None:
            return default
        return self.config_service.get(key, default)

    async def import_score(
        self,
        user_id: int,
        game: str,
        playtype: str,
        identity: ChartIdentity,
        payload: Mapping[str, Any],
        import_type: str,
        session_id: Optional[int] = None,
        service: Optional[str] = None,
        assign_session: bool = False,
    ) -> ImportResult:
        """
        Import one score.

        Raises:
            LockTimeoutError: the (user, chart) scope could not be acquired
            TransactionError: the score could not be stored after retries
            DatabaseError: storage failed for another reason
        """
        try:
            validated = await self.validator.validate(
                user_id, game, playtype, identity, payload, import_type, service=service
            )
        except ScoreValidationError as e:
            logger.info(f"Rejected score for user {user_id} on {game}:{playtype}: {e}")
            return ImportResult(
                status=ImportStatus.REJECTED,
                error=type(e).__name__,
                reason=e.user_message,
            )
        except DataIntegrityError as e:
            logger.critical(f"Catalog integrity failure importing for user {user_id}: {e}")
            return ImportResult(
                status=ImportStatus.REJECTED,
                error=type(e).__name__,
                reason=e.user_message,
            )

        async with self.lock_manager.hold(user_id, validated.chart_id):
            try:
                score, session_id = await self._store_with_retry(validated, session_id, assign_session)
            except ScoreValidationError as e:
                logger.info(f"Rejected score {validated.score_id[:12]} for user {user_id}: {e}")
                return ImportResult(
                    status=ImportStatus.REJECTED,
                    error=type(e).__name__,
                    reason=e.user_message,
                )
            if score is None:
                logger.debug(f"Duplicate score {validated.score_id} for user {user_id}")
                return ImportResult(
                    status=ImportStatus.DUPLICATE,
                    score_id=validated.score_id,
                    chart_id=validated.chart_id,
                )

            try:
                await self.consolidation.consolidate_in_scope(user_id, validated.chart_id)
            except (DataIntegrityError, TransactionError) as e:
                logger.error(f"Consolidation failed for score {validated.score_id}: {e}")
                return ImportResult(
                    status=ImportStatus.CONSOLIDATION_FAILED,
                    score_id=validated.score_id,
                    chart_id=validated.chart_id,
                    session_id=session_id,
                    error=type(e).__name__,
                    reason=e.user_message,
                )

        logger.info(
            f"Imported score {validated.score_id[:12]} for user {user_id} on {validated.chart_id} "
            f"({validated.lamp}, {validated.score})"
        )
        return ImportResult(
            status=ImportStatus.IMPORTED,
            score_id=validated.score_id,
            chart_id=validated.chart_id,
            session_id=session_id,
        )

    async def _store_with_retry(self, validated: ValidatedScore, session_id: Optional[int],
                                assign_session: bool):
        """Store a score with retry logic for race conditions."""
        max_retries = max(1, self._config(
            'import.score_submission_max_retries', ImportConstants.DEFAULT_MAX_RETRIES
        ))

        for attempt in range(max_retries):
            try:
                return await self._store_attempt(validated, session_id, assign_session)
            except IntegrityError as e:
                if attempt == max_retries - 1:
                    logger.error(f"Score storage failed after {max_retries} attempts: {e}")
                    raise TransactionError("score submission", max_retries) from e
                await asyncio.sleep(backoff_delay(attempt))
                logger.warning(f"Score storage retry {attempt + 1} for {validated.score_id}")
            except OperationalError as e:
                if attempt == max_retries - 1:
                    logger.error(f"Database error during score storage: {e}")
                    raise DatabaseError("score submission", str(e)) from e
                await asyncio.sleep(backoff_delay(attempt))
                logger.warning(f"Score storage retry {attempt + 1} for {validated.score_id}: {e}")

    async def _store_attempt(self, validated: ValidatedScore, session_id: Optional[int],
                             assign_session: bool):
        """Single attempt: dedupe, insert, snapshot and record in one transaction."""
        async with self.get_session() as session:
            async with session.begin():
                existing = await session.scalar(
                    select(Score.id).where(Score.score_id == validated.score_id)
                )
                if existing is not None:
                    return None, session_id

                score = Score(**validated.to_row())
                session.add(score)
                await session.flush()

                if session_id is None and assign_session and validated.time_achieved is not None:
                    import_session, _ = await self.tracker.get_or_create_session(
                        session, validated.user_id, validated.game, validated.playtype,
                        validated.time_achieved,
                    )
                    session_id = import_session.id

                if session_id is not None:
                    # Reads the pre-image PB; consolidation has not run for this score yet
                    await self.tracker.record_import(session_id, score, session=session)

        return score, session_id

    async def import_batch(
        self,
        user_id: int,
        game: str,
        playtype: str,
        submissions: Sequence[ScoreSubmission],
        import_type: str,
        service: Optional[str] = None,
        assign_sessions: bool = True,
    ) -> BatchImportSummary:
        """
        Import many scores for one user and game.

        Submissions naming the same chart run one after another in time order;
        different charts run concurrently, `import.batch_size` charts at a time.
        Sessions are assigned up front so concurrent chart groups agree on them.
        """
        batch_size = self._config('import.batch_size', ImportConstants.DEFAULT_BATCH_SIZE)

        session_ids: List[Optional[int]] = [None] * len(submissions)
        opened: List[int] = []
        if assign_sessions:
            session_ids, opened = await self._assign_sessions(user_id, game, playtype, submissions)

        groups: "OrderedDict[ChartIdentity, List[int]]" = OrderedDict()
        for index, submission in enumerate(submissions):
            groups.setdefault(submission.identity, []).append(index)

        results: List[Optional[ImportResult]] = [None] * len(submissions)

        async def run_group(indices: List[int]):
            for index in sorted(indices, key=lambda i: self._sort_time(submissions[i])):
                submission = submissions[index]
                try:
                    results[index] = await self.import_score(
                        user_id, game, playtype, submission.identity, submission.payload,
                        import_type, session_id=session_ids[index], service=service,
                    )
                except (LockTimeoutError, TransactionError, DatabaseError) as e:
                    logger.error(f"Import of submission {index} for user {user_id} failed: {e}")
                    results[index] = ImportResult(
                        status=ImportStatus.FAILED,
                        error=type(e).__name__,
                        reason=e.user_message,
                    )

        for chunk in divide_chunks(list(groups.values()), batch_size):
            await asyncio.gather(*(run_group(indices) for indices in chunk))

        if opened:
            await self._settle_opened_sessions(opened)

        summary = BatchImportSummary.from_results(results)
        logger.info(f"Batch import for user {user_id} on {game}:{playtype}: {summary.counts}")
        return summary

    @staticmethod
    def _sort_time(submission: ScoreSubmission):
        try:
            time_achieved = parse_score_timestamp(submission.payload.get('time_achieved'))
        except UnparsableTimestampError:
            time_achieved = None
        return time_achieved or datetime.min

    async def _assign_sessions(self, user_id: int, game: str, playtype: str,
                               submissions: Sequence[ScoreSubmission]):
        """
        Pick or open a session for every timestamped submission, oldest first.

        Spans grow in memory while grouping; stored spans only grow as scores
        are recorded, so a submission rejected later never moves a session.
        """
        assigned: List[Optional[int]] = [None] * len(submissions)
        timed = []
        for index, submission in enumerate(submissions):
            try:
                time_achieved = parse_score_timestamp(submission.payload.get('time_achieved'))
            except UnparsableTimestampError:
                continue
            if time_achieved is not None:
                timed.append((time_achieved, index))

        gap = self.tracker.gap
        spans: Dict[int, List[datetime]] = {}
        opened = []
        async with self.get_session() as session:
            async with session.begin():
                for time_achieved, index in sorted(timed):
                    covering = [
                        (end, session_id) for session_id, (start, end) in spans.items()
                        if start - gap <= time_achieved <= end + gap
                    ]
                    if covering:
                        session_id = max(covering)[1]
                    else:
                        import_session, created = await self.tracker.get_or_create_session(
                            session, user_id, game, playtype, time_achieved
                        )
                        session_id = import_session.id
                        if created:
                            opened.append(session_id)
                        spans.setdefault(session_id, [import_session.time_started, import_session.time_ended])

                    span = spans[session_id]
                    span[0] = min(span[0], time_achieved)
                    span[1] = max(span[1], time_achieved)
                    assigned[index] = session_id

        return assigned, opened

    async def _settle_opened_sessions(self, session_ids: List[int]):
        """Drop sessions this batch opened but never filled; fit the rest to their scores."""
        async with self.get_session() as session:
            async with session.begin():
                for session_id in session_ids:
                    import_session = await session.get(ImportSession, session_id)
                    if import_session is None:
                        continue
                    started, ended, count = (await session.execute(
                        select(func.min(Score.time_achieved), func.max(Score.time_achieved),
                               func.count(SessionScoreInfo.id))
                        .select_from(SessionScoreInfo)
                        .join(Score, Score.score_id == SessionScoreInfo.score_id)
                        .where(SessionScoreInfo.session_id == session_id)
                    )).one()
                    if count == 0:
                        await session.delete(import_session)
                        logger.debug(f"Dropped empty session {session_id}")
                    elif started is not None:
                        import_session.time_started = started
                        import_session.time_ended = ended

    async def delete_score(self, score_id: str) -> Optional[PersonalBest]:
        """
        Delete a score and its session entries, then re-consolidate its chart.

        Returns the recomputed personal best, or None if no scores remain.

        Raises:
            ScoreValidationError: no score with that id exists
        """
        async with self.get_session() as session:
            target = await session.scalar(select(Score).where(Score.score_id == score_id))
        if target is None:
            raise ScoreValidationError(f"Score {score_id} does not exist", "That score could not be found.")

        user_id, chart_id = target.user_id, target.chart_id
        async with self.lock_manager.hold(user_id, chart_id):
            async with self.get_session() as session:
                async with session.begin():
                    score = await session.scalar(select(Score).where(Score.score_id == score_id))
                    if score is not None:
                        await self.tracker.remove_score(session, score_id)
                        await session.delete(score)
            logger.info(f"Deleted score {score_id} for user {user_id} on {chart_id}")
            return await self.consolidation.consolidate_in_scope(user_id, chart_id)

    async def reconsolidate_chart(self, chart_id: str) -> Dict[str, int]:
        """Re-run consolidation for every user with scores on a chart."""
        user_ids = await self.db.get_chart_user_ids(chart_id)
        counts = {'updated': 0, 'deleted': 0}
        for user_id in user_ids:
            pb = await self.consolidation.consolidate(user_id, chart_id)
            counts['updated' if pb is not None else 'deleted'] += 1
        logger.info(f"Re-consolidated {chart_id} for {len(user_ids)} users: {counts}")
        return counts
