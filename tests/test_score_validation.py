"""Score validation against the game declarations and the test catalog."""

from datetime import datetime

import pytest

from scoretracker.data_models.score_import import ChartIdentity, MatchType
from scoretracker.operations.score_validation import ScoreValidator
from scoretracker.utils.score_exceptions import (
    ChartNotFoundError,
    DataIntegrityError,
    OutOfRangeMetricError,
    ScoreValidationError,
    SongChartDesyncError,
    UnknownGameError,
    UnknownOrdinalValueError,
    UnparsableTimestampError,
)

from conftest import (
    BMS_CHART,
    IIDX_CHART,
    MAIMAI_CHART,
    POPN_CHART,
    SDVX_CHART,
    USER_ID,
    chart_identity,
    score_payload,
)


@pytest.fixture
def validator(db):
    return ScoreValidator(db)


async def validate(validator, payload, chart_id=IIDX_CHART, game="iidx", playtype="SP", identity=None):
    return await validator.validate(
        USER_ID, game, playtype, identity or chart_identity(chart_id), payload, "file/batch-manual"
    )


class TestAcceptedScores:

    async def test_iidx_score(self, validator):
        score = await validate(validator, score_payload(1800, "HARD CLEAR", bp=12, gauge=74.2))

        assert score.chart_id == IIDX_CHART
        assert score.song_id == 1
        assert score.percent == pytest.approx(90.0)
        assert (score.grade, score.grade_index) == ("AAA", 7)
        assert score.lamp_index == 5
        assert score.optional == {"bp": 12, "gauge": 74.2}
        assert score.calculated == {"lampRating": 12.0}
        assert score.time_achieved == datetime(2024, 3, 1, 20, 0)

    async def test_score_id_is_deterministic(self, validator):
        first = await validate(validator, score_payload(1800, "CLEAR"))
        second = await validate(validator, score_payload(1800, "CLEAR"))
        other = await validate(validator, score_payload(1801, "CLEAR"))

        assert first.score_id == second.score_id
        assert first.score_id != other.score_id

    async def test_none_optional_values_dropped(self, validator):
        score = await validate(validator, score_payload(1800, "CLEAR", bp=None, gauge=50))
        assert score.optional == {"gauge": 50}

    async def test_missing_timestamp_allowed(self, validator):
        score = await validate(validator, score_payload(1800, "CLEAR", time_achieved=None))
        assert score.time_achieved is None

    async def test_match_by_in_game_id(self, validator):
        identity = ChartIdentity(MatchType.IN_GAME_ID, 1000, "HYPER")
        score = await validate(validator, score_payload(1400, "CLEAR"), identity=identity)

        assert score.chart_id == "iidx-511-sp-hyper"
        assert score.percent == pytest.approx(100.0)

    async def test_match_by_song_title_ignores_case(self, validator):
        identity = ChartIdentity(MatchType.SONG_TITLE, "oshama scramble!", "Master")
        score = await validate(
            validator, {"percent": 100.6, "lamp": "CLEAR"},
            game="maimaidx", playtype="Single", identity=identity,
        )

        assert score.chart_id == MAIMAI_CHART
        assert score.score == score.percent == 100.6
        assert score.grade == "SSS+"
        assert score.calculated == {"rate": 308.0}

    async def test_sieglinde_from_chart_constants(self, validator):
        score = await validate(validator, score_payload(900, "HARD CLEAR"),
                               chart_id=BMS_CHART, game="bms", playtype="7K")
        assert score.calculated == {"sieglinde": 12.0}

    async def test_popn_clear_type(self, validator):
        score = await validate(validator, score_payload(98_500, "CLEAR", specific_clear_type="clearStar"),
                               chart_id=POPN_CHART, game="popn", playtype="9B")
        assert score.grade == "S"
        assert score.calculated == {}

    async def test_score_at_maximum(self, validator):
        score = await validate(validator, score_payload(10_000_000, "PERFECT ULTIMATE CHAIN"),
                               chart_id=SDVX_CHART, game="sdvx", playtype="Single")
        assert score.grade == "PUC"


class TestRejectedScores:

    async def test_unknown_game(self, validator):
        with pytest.raises(UnknownGameError):
            await validate(validator, score_payload(1800, "CLEAR"), game="ddr")

    async def test_unknown_chart(self, validator):
        with pytest.raises(ChartNotFoundError, match="Could not find chart with chartID nope"):
            await validate(validator, score_payload(1800, "CLEAR"), chart_id="nope")

    async def test_chart_of_another_game(self, validator):
        with pytest.raises(ChartNotFoundError):
            await validate(validator, score_payload(1800, "CLEAR"), chart_id=SDVX_CHART)

    async def test_unknown_in_game_difficulty(self, validator):
        identity = ChartIdentity(MatchType.IN_GAME_ID, "1000", "LEGGENDARIA")
        with pytest.raises(ChartNotFoundError):
            await validate(validator, score_payload(1000, "CLEAR"), identity=identity)

    async def test_song_chart_desync(self, validator):
        identity = ChartIdentity(MatchType.IN_GAME_ID, "4242", "HYPER")
        with pytest.raises(SongChartDesyncError, match="Song-Chart Desync on songID 999"):
            await validate(validator, score_payload(600, "CLEAR"), identity=identity)

    async def test_desync_is_integrity_not_validation(self, validator):
        identity = ChartIdentity(MatchType.IN_GAME_ID, "4242", "HYPER")
        with pytest.raises(DataIntegrityError) as exc_info:
            await validate(validator, score_payload(600, "CLEAR"), identity=identity)
        assert not isinstance(exc_info.value, ScoreValidationError)

    @pytest.mark.parametrize("value", [2001, -1, float("nan"), float("inf"), "1800", True])
    async def test_primary_out_of_range(self, validator, value):
        with pytest.raises(OutOfRangeMetricError):
            await validate(validator, score_payload(value, "CLEAR"))

    async def test_missing_primary(self, validator):
        with pytest.raises(ScoreValidationError, match="Missing primary metric 'score'"):
            await validate(validator, {"lamp": "CLEAR"})

    async def test_percent_above_game_maximum(self, validator):
        with pytest.raises(OutOfRangeMetricError):
            await validate(validator, {"percent": 101.5, "lamp": "CLEAR"},
                           chart_id=MAIMAI_CHART, game="maimaidx", playtype="Single")

    async def test_unknown_lamp(self, validator):
        with pytest.raises(UnknownOrdinalValueError):
            await validate(validator, score_payload(1800, "ULTIMATE CHAIN"))

    async def test_missing_lamp(self, validator):
        with pytest.raises(ScoreValidationError):
            await validate(validator, {"score": 1800})

    async def test_unknown_optional_metric(self, validator):
        with pytest.raises(ScoreValidationError, match="Unknown optional metric 'ex_score'"):
            await validate(validator, score_payload(1800, "CLEAR", ex_score=1800))

    @pytest.mark.parametrize("optional", [
        {"gauge": 150}, {"bp": -1}, {"bp": 2.5}, {"fast": float("nan")},
    ])
    async def test_optional_out_of_range(self, validator, optional):
        with pytest.raises(OutOfRangeMetricError):
            await validate(validator, score_payload(1800, "CLEAR", **optional))

    async def test_optional_wrong_shape(self, validator):
        with pytest.raises(ScoreValidationError):
            await validate(validator, score_payload(1800, "CLEAR", gauge_history=42))

    async def test_unknown_clear_type(self, validator):
        with pytest.raises(UnknownOrdinalValueError):
            await validate(validator, score_payload(90_000, "CLEAR", specific_clear_type="clearMoon"),
                           chart_id=POPN_CHART, game="popn", playtype="9B")

    async def test_unparsable_timestamp(self, validator):
        with pytest.raises(UnparsableTimestampError):
            await validate(validator, score_payload(1800, "CLEAR", time_achieved="last tuesday"))
