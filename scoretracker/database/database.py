import json
from pathlib import Path
from typing import Optional, List, Dict, Any
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select, event, func
from contextlib import asynccontextmanager

from scoretracker.config import Config
from scoretracker.data_models.score_import import ChartIdentity, MatchType
from scoretracker.database.models import Base, Song, Chart, Score, PersonalBest
from scoretracker.utils.logger import setup_logger
from scoretracker.utils.score_exceptions import ChartNotFoundError, SongChartDesyncError

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = Config.to_async_url(database_url) if database_url else Config.get_async_database_url()
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        is_sqlite = self.database_url.startswith('sqlite')
        self.engine = create_async_engine(
            self.database_url,
            echo=Config.DEBUG,
            connect_args={'timeout': 30} if is_sqlite else {},
        )

        if is_sqlite:
            self._serialize_sqlite_writers()

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    def _serialize_sqlite_writers(self):
        """
        Take SQLite's write lock at BEGIN rather than at the first write.

        With the driver's implicit transactions two sessions can both read the
        same record set and then fail to upgrade to a writer; BEGIN IMMEDIATE makes
        the second one wait on the busy timeout instead.
        """
        @event.listens_for(self.engine.sync_engine, "connect")
        def do_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(self.engine.sync_engine, "begin")
        def do_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        Usage:
            async with db.transaction() as session:
                session.add(song)
                session.add(chart)
                # Both commit together here

        Exceptions must be allowed to propagate out of the context for rollback
        to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()

    # Catalog operations

    async def add_song(self, song_id: int, game: str, title: str, artist: str = None,
                       search_terms: List[str] = None, data: Dict[str, Any] = None,
                       session: Optional[AsyncSession] = None) -> Song:
        song = Song(
            id=song_id,
            game=game,
            title=title,
            artist=artist,
            search_terms=list(search_terms or []),
            data=dict(data or {}),
        )
        if session is not None:
            session.add(song)
            await session.flush()
            return song

        async with self.transaction() as session:
            session.add(song)
        return song

    async def add_chart(self, chart_id: str, song_id: int, game: str, playtype: str,
                        difficulty: str, level: str = None, level_num: float = None,
                        in_game_id: str = None, is_primary: bool = True,
                        data: Dict[str, Any] = None,
                        session: Optional[AsyncSession] = None) -> Chart:
        chart = Chart(
            chart_id=chart_id,
            song_id=song_id,
            game=game,
            playtype=playtype,
            difficulty=difficulty,
            level=level,
            level_num=level_num,
            in_game_id=str(in_game_id) if in_game_id is not None else None,
            is_primary=is_primary,
            data=dict(data or {}),
        )
        if session is not None:
            session.add(chart)
            await session.flush()
            return chart

        async with self.transaction() as session:
            session.add(chart)
        return chart

    async def update_chart(self, chart_id: str, session: AsyncSession, **fields) -> Chart:
        chart = await self.get_chart(chart_id, session=session)
        if chart is None:
            raise ChartNotFoundError(f"chartID {chart_id}")
        for key, value in fields.items():
            setattr(chart, key, value)
        await session.flush()
        return chart

    async def get_chart(self, chart_id: str, session: Optional[AsyncSession] = None) -> Optional[Chart]:
        if session is not None:
            result = await session.execute(select(Chart).where(Chart.chart_id == chart_id))
            return result.scalar_one_or_none()

        async with self.get_session() as session:
            result = await session.execute(select(Chart).where(Chart.chart_id == chart_id))
            return result.scalar_one_or_none()

    async def get_song(self, song_id: int, session: Optional[AsyncSession] = None) -> Optional[Song]:
        if session is not None:
            return await session.get(Song, song_id)

        async with self.get_session() as session:
            return await session.get(Song, song_id)

    async def resolve_chart(self, game: str, playtype: str, identity: ChartIdentity,
                            session: Optional[AsyncSession] = None) -> Chart:
        """
        Find the chart a submission refers to.

        Raises:
            ChartNotFoundError: nothing in the catalog matches for this game/playtype
        """
        if session is None:
            async with self.get_session() as session:
                return await self._resolve_chart(game, playtype, identity, session)
        return await self._resolve_chart(game, playtype, identity, session)

    async def _resolve_chart(self, game, playtype, identity, session) -> Chart:
        query = select(Chart).where(Chart.game == game, Chart.playtype == playtype)

        if identity.match_type == MatchType.CHART_ID:
            query = query.where(Chart.chart_id == str(identity.identifier))
            description = f"chartID {identity.identifier}"
        elif identity.match_type == MatchType.IN_GAME_ID:
            query = query.where(
                Chart.in_game_id == str(identity.identifier),
                Chart.difficulty == identity.difficulty,
            )
            description = f"musicID {identity.identifier} ({identity.difficulty})"
        else:
            song_ids = select(Song.id).where(
                Song.game == game,
                func.lower(Song.title) == str(identity.identifier).lower(),
            )
            query = query.where(
                Chart.song_id.in_(song_ids),
                Chart.difficulty == identity.difficulty,
            )
            description = f"title '{identity.identifier}' ({identity.difficulty})"

        # Primary charts win over alternate versions of the same difficulty
        query = query.order_by(Chart.is_primary.desc(), Chart.id)
        result = await session.execute(query)
        chart = result.scalars().first()

        if chart is None:
            self.logger.debug(f"Could not find chart with {description} for {game}:{playtype}")
            raise ChartNotFoundError(description)
        return chart

    async def resolve_song(self, chart: Chart, session: Optional[AsyncSession] = None) -> Song:
        """
        Find the parent song of a resolved chart.

        Raises:
            SongChartDesyncError: the chart exists but its song does not
        """
        song = await self.get_song(chart.song_id, session=session)
        if song is None:
            self.logger.critical(
                f"Song-Chart Desync on songID {chart.song_id} for chartID {chart.chart_id}"
            )
            raise SongChartDesyncError(chart.song_id, chart.chart_id)
        return song

    async def load_catalog(self, path: str) -> Dict[str, int]:
        """
        Load songs and charts from a JSON file of the form
        {"songs": [...], "charts": [...]}. Existing rows are left alone.
        """
        payload = json.loads(Path(path).read_text(encoding='utf-8'))
        added = {'songs': 0, 'charts': 0}

        async with self.transaction() as session:
            for entry in payload.get('songs', []):
                if await session.get(Song, entry['id']) is not None:
                    continue
                await self.add_song(
                    song_id=entry['id'],
                    game=entry['game'],
                    title=entry['title'],
                    artist=entry.get('artist'),
                    search_terms=entry.get('search_terms'),
                    data=entry.get('data'),
                    session=session,
                )
                added['songs'] += 1

            for entry in payload.get('charts', []):
                if await self.get_chart(entry['chart_id'], session=session) is not None:
                    continue
                await self.add_chart(
                    chart_id=entry['chart_id'],
                    song_id=entry['song_id'],
                    game=entry['game'],
                    playtype=entry['playtype'],
                    difficulty=entry['difficulty'],
                    level=entry.get('level'),
                    level_num=entry.get('level_num'),
                    in_game_id=entry.get('in_game_id'),
                    is_primary=entry.get('is_primary', True),
                    data=entry.get('data'),
                    session=session,
                )
                added['charts'] += 1

        self.logger.info(f"Catalog loaded from {path}: {added['songs']} songs, {added['charts']} charts")
        return added

    # Read accessors

    async def count_scores(self, user_id: int, chart_id: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                select(func.count(Score.id)).where(
                    Score.user_id == user_id, Score.chart_id == chart_id
                )
            )
            return result.scalar()

    async def get_chart_user_ids(self, chart_id: str) -> List[int]:
        """Every user with at least one score or personal best on the chart."""
        async with self.get_session() as session:
            scored = await session.execute(
                select(Score.user_id).where(Score.chart_id == chart_id).distinct()
            )
            with_pb = await session.execute(
                select(PersonalBest.user_id).where(PersonalBest.chart_id == chart_id).distinct()
            )
            return sorted(set(scored.scalars().all()) | set(with_pb.scalars().all()))
