from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, JSON,
    ForeignKey, Float, BigInteger, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from typing import Any, Dict

Base = declarative_base()

def _isoformat(value):
    return value.isoformat() if value is not None else None

class Song(Base):
    __tablename__ = 'songs'

    id = Column(Integer, primary_key=True)
    game = Column(String(20), nullable=False, index=True)
    title = Column(String(300), nullable=False)
    artist = Column(String(300), nullable=True)
    search_terms = Column(JSON, default=list)
    data = Column(JSON, default=dict)

    def __repr__(self):
        return f"<Song(id={self.id}, game='{self.game}', title='{self.title}')>"

class Chart(Base):
    """
    A playable chart of a song.

    song_id is not a foreign key: the catalog is synced from outside and a chart
    may reference a song that has not arrived yet. The validator reports that
    as a song-chart desync.
    """
    __tablename__ = 'charts'

    id = Column(Integer, primary_key=True)
    chart_id = Column(String(64), nullable=False, unique=True)
    song_id = Column(Integer, nullable=False, index=True)
    game = Column(String(20), nullable=False)
    playtype = Column(String(20), nullable=False)
    difficulty = Column(String(40), nullable=False)
    level = Column(String(20), nullable=True)
    level_num = Column(Float, nullable=True)
    in_game_id = Column(String(64), nullable=True)
    is_primary = Column(Boolean, default=True)

    # Chart constants: notecount, sgl_ec, sgl_hc, ...
    data = Column(JSON, default=dict)

    __table_args__ = (
        Index('idx_charts_game_ingame', 'game', 'playtype', 'in_game_id', 'difficulty'),
    )

    def __repr__(self):
        return f"<Chart(chart_id='{self.chart_id}', {self.game}:{self.playtype} {self.difficulty} {self.level})>"

class Score(Base):
    """
    One accepted play result.

    Raw fields are immutable once stored; `calculated` is rewritten by every
    consolidation pass that touches the chart.
    """
    __tablename__ = 'scores'

    id = Column(Integer, primary_key=True)
    score_id = Column(String(64), nullable=False, unique=True)
    user_id = Column(BigInteger, nullable=False)
    chart_id = Column(String(64), ForeignKey('charts.chart_id'), nullable=False)
    song_id = Column(Integer, nullable=False)
    game = Column(String(20), nullable=False)
    playtype = Column(String(20), nullable=False)

    score = Column(Float, nullable=False)
    percent = Column(Float, nullable=False)
    lamp = Column(String(40), nullable=False)
    lamp_index = Column(Integer, nullable=False)
    grade = Column(String(10), nullable=False)
    grade_index = Column(Integer, nullable=False)
    optional = Column(JSON, default=dict)
    calculated = Column(JSON, default=dict)

    time_achieved = Column(DateTime, nullable=True)  # UTC, None when the source gave no timestamp
    time_added = Column(DateTime, default=func.now())

    # Provenance
    import_type = Column(String(40), nullable=False)
    service = Column(String(100), nullable=True)

    chart = relationship("Chart")

    __table_args__ = (
        Index('idx_scores_user_chart', 'user_id', 'chart_id'),
    )

    def __repr__(self):
        return f"<Score(score_id='{self.score_id}', user_id={self.user_id}, chart_id='{self.chart_id}', score={self.score}, lamp='{self.lamp}')>"

class PersonalBest(Base):
    """
    Consolidated best for one user on one chart.

    Score-dimension fields come from the score-best record, lamp-dimension fields
    from the lamp-best record, and auxiliary fields from whichever record
    optimizes them. composed_from records which score supplied what.
    """
    __tablename__ = 'personal_bests'

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=False)
    chart_id = Column(String(64), ForeignKey('charts.chart_id'), nullable=False)
    song_id = Column(Integer, nullable=False)
    game = Column(String(20), nullable=False)
    playtype = Column(String(20), nullable=False)

    score = Column(Float, nullable=False)
    percent = Column(Float, nullable=False)
    grade = Column(String(10), nullable=False)
    grade_index = Column(Integer, nullable=False)
    lamp = Column(String(40), nullable=False)
    lamp_index = Column(Integer, nullable=False)
    optional = Column(JSON, default=dict)

    composed_from = Column(JSON, nullable=False)
    calculated = Column(JSON, default=dict)

    time_achieved = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'chart_id', name='unique_pb_per_user_chart'),
        Index('idx_pbs_user_game', 'user_id', 'game', 'playtype'),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Stable view of the consolidated state, without bookkeeping timestamps."""
        return {
            'user_id': self.user_id,
            'chart_id': self.chart_id,
            'song_id': self.song_id,
            'game': self.game,
            'playtype': self.playtype,
            'score': self.score,
            'percent': self.percent,
            'grade': self.grade,
            'grade_index': self.grade_index,
            'lamp': self.lamp,
            'lamp_index': self.lamp_index,
            'optional': dict(self.optional or {}),
            'composed_from': self.composed_from,
            'calculated': dict(self.calculated or {}),
            'time_achieved': _isoformat(self.time_achieved),
        }

    def __repr__(self):
        return f"<PersonalBest(user_id={self.user_id}, chart_id='{self.chart_id}', score={self.score}, lamp='{self.lamp}')>"

class ImportSession(Base):
    """A bounded run of plays by one user on one game/playtype."""
    __tablename__ = 'import_sessions'

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=False)
    game = Column(String(20), nullable=False)
    playtype = Column(String(20), nullable=False)
    name = Column(String(200), nullable=True)

    time_started = Column(DateTime, nullable=False)
    time_ended = Column(DateTime, nullable=False)
    calculated = Column(JSON, default=dict)
    created_at = Column(DateTime, default=func.now())

    score_infos = relationship("SessionScoreInfo", back_populates="session", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_sessions_user_game_end', 'user_id', 'game', 'playtype', 'time_ended'),
    )

    def __repr__(self):
        return f"<ImportSession(id={self.id}, user_id={self.user_id}, {self.game}:{self.playtype})>"

class SessionScoreInfo(Base):
    """
    How one imported score moved the user's standing on its chart.

    Deltas are signed and measured against the personal best as it stood
    immediately before the score was merged in. Written once, never updated.
    """
    __tablename__ = 'session_score_infos'

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey('import_sessions.id'), nullable=False)
    score_id = Column(String(64), nullable=False)

    is_new_score = Column(Boolean, nullable=False)
    score_delta = Column(Float, nullable=False)
    percent_delta = Column(Float, nullable=False)
    lamp_delta = Column(Integer, nullable=False)
    grade_delta = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=func.now())

    session = relationship("ImportSession", back_populates="score_infos")

    __table_args__ = (
        UniqueConstraint('session_id', 'score_id', name='unique_score_per_session'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'score_id': self.score_id,
            'is_new_score': self.is_new_score,
            'score_delta': self.score_delta,
            'percent_delta': self.percent_delta,
            'lamp_delta': self.lamp_delta,
            'grade_delta': self.grade_delta,
        }

    def __repr__(self):
        return f"<SessionScoreInfo(session_id={self.session_id}, score_id='{self.score_id}', score_delta={self.score_delta})>"

class Configuration(Base):
    """Runtime tunables stored as JSON text."""
    __tablename__ = 'configurations'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Configuration(key='{self.key}')>"

class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AuditLog(action='{self.action}', user_id={self.user_id})>"
