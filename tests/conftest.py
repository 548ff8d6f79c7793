"""
Shared test fixtures for score tracker tests.

- temporary SQLite database per test, with a small catalog loaded
- service objects wired the way ScoreTracker.setup() wires them
- plain record/chart factories for the pure merge functions
"""

import os
import tempfile
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="scoretracker-logs-"))

import pytest

from scoretracker.data_models.score_import import ChartIdentity, MatchType
from scoretracker.database.database import Database
from scoretracker.services.configuration import ConfigurationService
from scoretracker.services.locks import KeyedLockManager
from scoretracker.services.score_import import ScoreImportService


USER_ID = 1
OTHER_USER_ID = 2

IIDX_CHART = "iidx-511-sp-another"
SDVX_CHART = "sdvx-lachryma-exh"
BMS_CHART = "bms-fuego-7k"
POPN_CHART = "popn-neu-ex"
MAIMAI_CHART = "mai-oshama-master"
ORPHAN_CHART = "iidx-orphan-sp-hyper"


# =============================================================================
# Path Fixtures
# =============================================================================

@pytest.fixture
def temp_db_path() -> Generator[Path, None, None]:
    """Temporary database file with cleanup."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = Path(f.name)
    yield path
    for suffix in ["", "-wal", "-shm", "-journal"]:
        p = Path(str(path) + suffix)
        if p.exists():
            p.unlink()


# =============================================================================
# Database Fixtures
# =============================================================================

async def load_test_catalog(db: Database):
    async with db.transaction() as session:
        await db.add_song(1, "iidx", "5.1.1.", artist="dj nagureo", session=session)
        await db.add_song(2, "sdvx", "Lachryma《Re:Queen'M》", artist="Kanone", session=session)
        await db.add_song(3, "bms", "FUEGO", artist="unknown", session=session)
        await db.add_song(4, "popn", "neu", artist="dj TAKA", session=session)
        await db.add_song(5, "maimaidx", "Oshama Scramble!", artist="t+pazolite", session=session)

        await db.add_chart(IIDX_CHART, 1, "iidx", "SP", "ANOTHER", level="12", level_num=12,
                           in_game_id="1000", data={"notecount": 1000}, session=session)
        await db.add_chart("iidx-511-sp-hyper", 1, "iidx", "SP", "HYPER", level="9", level_num=9,
                           in_game_id="1000", data={"notecount": 700}, session=session)
        await db.add_chart(SDVX_CHART, 2, "sdvx", "Single", "EXH", level="18", level_num=18,
                           in_game_id="1201", session=session)
        await db.add_chart(BMS_CHART, 3, "bms", "7K", "ANOTHER", level="12",
                           data={"notecount": 500, "sgl_ec": 10.5, "sgl_hc": 12.0}, session=session)
        await db.add_chart(POPN_CHART, 4, "popn", "9B", "EX", level="42", level_num=42, session=session)
        await db.add_chart(MAIMAI_CHART, 5, "maimaidx", "Single", "Master", level="13+",
                           level_num=13.7, session=session)
        # Song 999 was never synced
        await db.add_chart(ORPHAN_CHART, 999, "iidx", "SP", "HYPER", level="5", level_num=5,
                           in_game_id="4242", data={"notecount": 400}, session=session)


@pytest.fixture
async def db(temp_db_path):
    database = Database(f"sqlite+aiosqlite:///{temp_db_path}")
    await database.initialize()
    await load_test_catalog(database)
    yield database
    await database.close()


@pytest.fixture
def lock_manager():
    return KeyedLockManager(timeout=10)


@pytest.fixture
async def config_service(db):
    service = ConfigurationService(db.async_session)
    await service.load_all()
    return service


@pytest.fixture
def import_service(db, lock_manager):
    return ScoreImportService(db, lock_manager=lock_manager)


# =============================================================================
# Identity / Payload Helpers
# =============================================================================

def chart_identity(chart_id: str) -> ChartIdentity:
    return ChartIdentity(MatchType.CHART_ID, chart_id)


def score_payload(score, lamp, time_achieved="2024-03-01 20:00:00", **optional):
    return {"score": score, "lamp": lamp, "time_achieved": time_achieved, "optional": optional}


# =============================================================================
# Pure Merge Fixtures
# =============================================================================

def make_record(score_id, score, lamp, lamp_index, percent=None, grade="A", grade_index=0,
                optional=None, time_achieved=None, user_id=USER_ID):
    """Stand-in with the attributes the merge functions read from a Score."""
    return SimpleNamespace(
        score_id=score_id,
        user_id=user_id,
        score=score,
        percent=percent if percent is not None else score,
        lamp=lamp,
        lamp_index=lamp_index,
        grade=grade,
        grade_index=grade_index,
        optional=optional or {},
        time_achieved=time_achieved,
    )


def make_chart(chart_id=IIDX_CHART, level_num=12, data=None, song_id=1):
    return SimpleNamespace(
        chart_id=chart_id,
        song_id=song_id,
        level_num=level_num,
        data=data if data is not None else {"notecount": 1000},
    )


@pytest.fixture
def t0() -> datetime:
    return datetime(2024, 3, 1, 20, 0, 0)
