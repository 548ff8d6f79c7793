"""Rating formulas and grade derivation."""

import pytest

from scoretracker.game_config import IIDX_LAMPS, SDVX_LAMPS, get_game_declaration
from scoretracker.utils.ratings import (
    RatingInput,
    calculate_lamp_rating,
    calculate_maimai_rate,
    calculate_sieglinde,
    calculate_vf6,
    get_formula,
)

from conftest import make_chart


def sdvx_input(score, lamp, level_num=18):
    return RatingInput(
        score=score, percent=score / 100_000, lamp=lamp, lamp_index=SDVX_LAMPS.index_of(lamp),
        grade="S", lamps=SDVX_LAMPS, level_num=level_num,
    )


def iidx_input(lamp, level_num=12, chart_data=None):
    return RatingInput(
        score=0, percent=0, lamp=lamp, lamp_index=IIDX_LAMPS.index_of(lamp),
        grade="F", lamps=IIDX_LAMPS, level_num=level_num, chart_data=chart_data or {},
    )


class TestVF6:

    def test_puc_s_rank(self):
        assert calculate_vf6(sdvx_input(9_900_000, "PERFECT ULTIMATE CHAIN")) == pytest.approx(0.411)

    def test_clear_a_plus(self):
        assert calculate_vf6(sdvx_input(9_000_000, "CLEAR", level_num=17)) == pytest.approx(0.278)

    def test_failed_floor_coefficients(self):
        assert calculate_vf6(sdvx_input(5_000_000, "FAILED", level_num=10)) == pytest.approx(0.04)

    def test_needs_level(self):
        assert calculate_vf6(sdvx_input(9_900_000, "CLEAR", level_num=None)) is None

    def test_better_lamp_never_lowers_vf6(self):
        values = [calculate_vf6(sdvx_input(9_500_000, lamp)) for lamp in SDVX_LAMPS]
        assert values == sorted(values)


class TestLampRating:

    def test_easy_clear_or_better_gives_level(self):
        assert calculate_lamp_rating(iidx_input("EASY CLEAR")) == 12.0
        assert calculate_lamp_rating(iidx_input("FULL COMBO")) == 12.0

    def test_below_easy_clear_is_zero(self):
        assert calculate_lamp_rating(iidx_input("ASSIST CLEAR")) == 0.0
        assert calculate_lamp_rating(iidx_input("FAILED")) == 0.0


class TestSieglinde:

    DATA = {"sgl_ec": 10.5, "sgl_hc": 12.0}

    def test_hard_clear_uses_harder_constant(self):
        assert calculate_sieglinde(iidx_input("HARD CLEAR", chart_data=self.DATA)) == 12.0
        assert calculate_sieglinde(iidx_input("FULL COMBO", chart_data=self.DATA)) == 12.0

    def test_easy_clear_uses_ec_constant(self):
        assert calculate_sieglinde(iidx_input("EASY CLEAR", chart_data=self.DATA)) == 10.5
        assert calculate_sieglinde(iidx_input("CLEAR", chart_data=self.DATA)) == 10.5

    def test_fail(self):
        assert calculate_sieglinde(iidx_input("FAILED", chart_data=self.DATA)) == 0.0

    def test_missing_constants(self):
        assert calculate_sieglinde(iidx_input("HARD CLEAR", chart_data={})) is None


class TestMaimaiRate:

    def _input(self, percent, grade, level_num=13.7):
        return RatingInput(
            score=percent, percent=percent, lamp="CLEAR", lamp_index=1, grade=grade,
            lamps=get_game_declaration("maimaidx", "Single").lamps, level_num=level_num,
        )

    def test_sss_plus(self):
        assert calculate_maimai_rate(self._input(100.5, "SSS+")) == 308.0

    def test_percent_capped(self):
        assert calculate_maimai_rate(self._input(101.0, "SSS+")) == 308.0

    def test_s_rank(self):
        assert calculate_maimai_rate(self._input(97.0, "S")) == 265.0


class TestGradeDerivation:

    def test_iidx_boundaries(self):
        decl = get_game_declaration("iidx", "SP")
        assert decl.derive_grade(90.0) == ("AAA", 7)
        assert decl.derive_grade(80.0) == ("AA", 6)
        assert decl.derive_grade(75.0) == ("A", 5)
        assert decl.derive_grade(10.0) == ("F", 0)

    def test_exact_boundary_counts(self):
        decl = get_game_declaration("iidx", "SP")
        assert decl.derive_grade(100.0 * 8 / 9) == ("AAA", 7)

    def test_sdvx(self):
        decl = get_game_declaration("sdvx", "Single")
        assert decl.derive_grade(99.0) == ("S", 9)
        assert decl.derive_grade(98.0) == ("AAA+", 8)
        assert decl.derive_grade(100.0) == ("PUC", 10)

    def test_popn(self):
        assert get_game_declaration("popn", "9B").derive_grade(98.0) == ("S", 7)

    def test_maimai(self):
        decl = get_game_declaration("maimaidx", "Single")
        assert decl.derive_grade(100.5) == ("SSS+", 13)
        assert decl.derive_grade(99.7) == ("SS+", 11)


class TestDeclarationRatings:

    def test_iidx_calculates_lamp_rating(self):
        decl = get_game_declaration("iidx", "SP")
        ratings = decl.calculate_ratings(1800, 90.0, "HARD CLEAR", "AAA", {}, make_chart())
        assert ratings == {"lampRating": 12.0}

    def test_percent_from_notecount(self):
        decl = get_game_declaration("iidx", "SP")
        assert decl.derive_percent(1800, make_chart()) == pytest.approx(90.0)

    def test_unknown_formula(self):
        with pytest.raises(ValueError):
            get_formula("skill")
