"""
End-to-end import pipeline tests.

Covers single imports, deduplication, rejection, batches, concurrent imports
on one chart, deletion and chart re-consolidation.
"""

import asyncio
from datetime import timedelta

import pytest

from scoretracker.data_models.score_import import (
    BatchImportSummary,
    ChartIdentity,
    ImportResult,
    ImportStatus,
    MatchType,
    ScoreSubmission,
)
from scoretracker.services.locks import KeyedLockManager
from scoretracker.services.score_import import ScoreImportService, divide_chunks
from scoretracker.utils.score_exceptions import ChartMetadataMissingError, ScoreValidationError

from conftest import (
    IIDX_CHART,
    SDVX_CHART,
    USER_ID,
    chart_identity,
    score_payload,
)

IIDX_HYPER = "iidx-511-sp-hyper"


def stamp(when):
    return when.strftime("%Y-%m-%d %H:%M:%S")


async def import_iidx(import_service, score, lamp, when="2024-03-01 20:00:00", chart_id=IIDX_CHART, **kwargs):
    return await import_service.import_score(
        USER_ID, "iidx", "SP", chart_identity(chart_id), score_payload(score, lamp, when),
        "file/batch-manual", **kwargs
    )


class TestImportScore:

    async def test_imported(self, db, import_service):
        result = await import_iidx(import_service, 1800, "CLEAR", service="test-suite")

        assert result.status == ImportStatus.IMPORTED
        assert result.chart_id == IIDX_CHART
        assert result.accepted
        assert await db.count_scores(USER_ID, IIDX_CHART) == 1

        score = (await import_service.consolidation.get_user_scores(USER_ID, IIDX_CHART))[0]
        assert score.score_id == result.score_id
        assert score.service == "test-suite"
        assert score.import_type == "file/batch-manual"

        pb = await import_service.consolidation.get_personal_best(USER_ID, IIDX_CHART)
        assert pb.composed_from["score_pb"] == result.score_id

    async def test_duplicate_is_not_stored_twice(self, db, import_service):
        first = await import_iidx(import_service, 1800, "CLEAR")
        second = await import_iidx(import_service, 1800, "CLEAR")

        assert first.status == ImportStatus.IMPORTED
        assert second.status == ImportStatus.DUPLICATE
        assert second.score_id == first.score_id
        assert not second.accepted
        assert await db.count_scores(USER_ID, IIDX_CHART) == 1

    async def test_rejected_writes_nothing(self, db, import_service):
        result = await import_iidx(import_service, 5000, "CLEAR")

        assert result.status == ImportStatus.REJECTED
        assert result.error == "OutOfRangeMetricError"
        assert result.reason.startswith("❌")
        assert await db.count_scores(USER_ID, IIDX_CHART) == 0
        assert await import_service.consolidation.get_personal_best(USER_ID, IIDX_CHART) is None

    async def test_catalog_desync_rejected(self, import_service):
        result = await import_service.import_score(
            USER_ID, "iidx", "SP", ChartIdentity(MatchType.IN_GAME_ID, "4242", "HYPER"),
            score_payload(300, "CLEAR"), "file/batch-manual",
        )

        assert result.status == ImportStatus.REJECTED
        assert result.error == "SongChartDesyncError"

    async def test_consolidation_failure_keeps_score(self, db, import_service, monkeypatch):
        async def chart_vanished(user_id, chart_id):
            raise ChartMetadataMissingError(chart_id)

        monkeypatch.setattr(import_service.consolidation, "consolidate_in_scope", chart_vanished)
        result = await import_iidx(import_service, 1800, "CLEAR")

        assert result.status == ImportStatus.CONSOLIDATION_FAILED
        assert result.error == "ChartMetadataMissingError"
        assert result.accepted
        assert await db.count_scores(USER_ID, IIDX_CHART) == 1
        assert await import_service.consolidation.get_personal_best(USER_ID, IIDX_CHART) is None

        monkeypatch.undo()
        pb = await import_service.consolidation.consolidate(USER_ID, IIDX_CHART)
        assert pb.composed_from["score_pb"] == result.score_id

    async def test_concurrent_imports_on_one_chart(self, db, import_service, t0):
        scores = [1500, 1750, 1200, 1900, 1650]
        results = await asyncio.gather(*(
            import_iidx(import_service, score, "CLEAR", stamp(t0 + timedelta(minutes=i)))
            for i, score in enumerate(scores)
        ))

        assert all(r.status == ImportStatus.IMPORTED for r in results)
        assert await db.count_scores(USER_ID, IIDX_CHART) == len(scores)

        pb = await import_service.consolidation.get_personal_best(USER_ID, IIDX_CHART)
        assert pb.score == 1900
        assert pb.composed_from["score_pb"] == results[3].score_id
        assert import_service.lock_manager.active_keys == 0

    async def test_concurrent_sessions_see_consistent_pre_images(self, import_service, t0):
        session = await import_service.tracker.create_session(USER_ID, "iidx", "SP", started=t0)
        scores = [1000, 1200, 1400, 1600]
        await asyncio.gather(*(
            import_iidx(import_service, score, "CLEAR", stamp(t0 + timedelta(minutes=i)),
                        session_id=session.id)
            for i, score in enumerate(scores)
        ))

        infos = await import_service.tracker.get_session_score_infos(session.id)
        assert sum(1 for info in infos if info.is_new_score) == 1
        # Improvements telescope to the final best
        assert sum(info.score_delta for info in infos if info.score_delta > 0) == 1600


class TestImportBatch:

    async def test_groups_run_in_time_order(self, import_service, t0):
        submissions = [
            ScoreSubmission(chart_identity(IIDX_CHART), score_payload(1700, "HARD CLEAR", stamp(t0 + timedelta(minutes=20)))),
            ScoreSubmission(chart_identity(IIDX_HYPER), score_payload(1300, "CLEAR", stamp(t0 + timedelta(minutes=5)))),
            ScoreSubmission(chart_identity(IIDX_CHART), score_payload(1500, "CLEAR", stamp(t0))),
            ScoreSubmission(chart_identity(IIDX_CHART), score_payload(1600, "EASY CLEAR", stamp(t0 + timedelta(minutes=10)))),
        ]

        summary = await import_service.import_batch(USER_ID, "iidx", "SP", submissions, "file/batch-manual")

        assert summary.counts["imported"] == 4
        assert len(summary.session_ids) == 1
        infos = await import_service.tracker.get_session_score_infos(summary.session_ids[0])
        by_score = {info.score_id: info for info in infos}

        oldest = by_score[summary.results[2].score_id]
        middle = by_score[summary.results[3].score_id]
        newest = by_score[summary.results[0].score_id]
        assert oldest.is_new_score is True
        assert middle.score_delta == 100
        assert middle.lamp_delta == -1
        assert newest.score_delta == 100
        assert newest.lamp_delta == 1
        assert by_score[summary.results[1].score_id].is_new_score is True

    async def test_mixed_outcomes(self, import_service):
        submissions = [
            ScoreSubmission(chart_identity(IIDX_CHART), score_payload(1800, "CLEAR")),
            ScoreSubmission(chart_identity(IIDX_CHART), score_payload(1800, "CLEAR")),
            ScoreSubmission(chart_identity("iidx-missing"), score_payload(1800, "CLEAR")),
            ScoreSubmission(chart_identity(IIDX_HYPER), score_payload(1300, "BAD LAMP")),
        ]

        summary = await import_service.import_batch(
            USER_ID, "iidx", "SP", submissions, "file/batch-manual", assign_sessions=False
        )

        assert summary.counts == {
            "imported": 1,
            "rejected": 2,
            "duplicate": 1,
            "consolidation_failed": 0,
            "failed": 0,
        }
        assert summary.session_ids == []

    async def test_lock_timeout_fails_only_that_chart(self, db, t0):
        service = ScoreImportService(db, lock_manager=KeyedLockManager(timeout=0.05))
        submissions = [
            ScoreSubmission(chart_identity(IIDX_CHART), score_payload(1800, "CLEAR", stamp(t0))),
            ScoreSubmission(chart_identity(IIDX_HYPER), score_payload(1300, "CLEAR", stamp(t0))),
        ]

        async with service.lock_manager.hold(USER_ID, IIDX_CHART):
            summary = await service.import_batch(USER_ID, "iidx", "SP", submissions, "file/batch-manual")

        blocked, free = summary.results
        assert blocked.status == ImportStatus.FAILED
        assert blocked.error == "LockTimeoutError"
        assert blocked.session_id is None
        assert free.status == ImportStatus.IMPORTED
        assert await db.count_scores(USER_ID, IIDX_CHART) == 0

    async def test_small_batch_size(self, db, lock_manager, config_service, t0):
        await config_service.set('import.batch_size', 1)
        service = ScoreImportService(db, config_service=config_service, lock_manager=lock_manager)
        submissions = [
            ScoreSubmission(chart_identity(chart_id), score_payload(1300, "CLEAR", stamp(t0)))
            for chart_id in (IIDX_CHART, IIDX_HYPER)
        ]

        summary = await service.import_batch(USER_ID, "iidx", "SP", submissions, "file/batch-manual")

        assert summary.counts["imported"] == 2

    def test_divide_chunks(self):
        assert list(divide_chunks([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_summary_from_results(self):
        summary = BatchImportSummary.from_results([
            ImportResult(ImportStatus.IMPORTED, session_id=3),
            ImportResult(ImportStatus.IMPORTED, session_id=3),
            ImportResult(ImportStatus.REJECTED),
        ])

        assert summary.counts["imported"] == 2
        assert summary.counts["rejected"] == 1
        assert summary.session_ids == [3]


class TestDeleteScore:

    async def test_delete_falls_back_to_next_best(self, db, import_service, t0):
        best = await import_iidx(import_service, 1800, "CLEAR", stamp(t0))
        runner_up = await import_iidx(import_service, 1600, "HARD CLEAR", stamp(t0 + timedelta(minutes=2)))

        pb = await import_service.delete_score(best.score_id)

        assert pb.score == 1600
        assert pb.composed_from == {"score_pb": runner_up.score_id, "lamp_pb": runner_up.score_id, "other": []}
        assert await db.count_scores(USER_ID, IIDX_CHART) == 1

    async def test_delete_removes_session_entries(self, import_service, t0):
        result = await import_iidx(import_service, 1800, "CLEAR", stamp(t0), assign_session=True)

        await import_service.delete_score(result.score_id)

        summary = await import_service.tracker.get_session_summary(result.session_id)
        assert summary.score_infos == []

    async def test_delete_unknown(self, import_service):
        with pytest.raises(ScoreValidationError):
            await import_service.delete_score("0" * 64)


class TestReconsolidateChart:

    async def test_level_change_updates_ratings(self, db, import_service):
        await import_service.import_score(
            USER_ID, "sdvx", "Single", chart_identity(SDVX_CHART),
            score_payload(9_900_000, "PERFECT ULTIMATE CHAIN"), "file/batch-manual",
        )
        pb = await import_service.consolidation.get_personal_best(USER_ID, SDVX_CHART)
        assert pb.calculated["VF6"] == pytest.approx(0.411)

        async with db.transaction() as session:
            await db.update_chart(SDVX_CHART, session, level="19", level_num=19)

        counts = await import_service.reconsolidate_chart(SDVX_CHART)

        assert counts == {"updated": 1, "deleted": 0}
        pb = await import_service.consolidation.get_personal_best(USER_ID, SDVX_CHART)
        assert pb.calculated["VF6"] == pytest.approx(0.434)

    async def test_untouched_chart(self, import_service):
        assert await import_service.reconsolidate_chart(SDVX_CHART) == {"updated": 0, "deleted": 0}
