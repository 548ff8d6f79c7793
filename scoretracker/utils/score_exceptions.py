"""
Custom exceptions for the score import pipeline with user-friendly error messages.

Validation errors are per-submission and never fatal to the pipeline.
Integrity errors point at catalog or metadata damage and need an operator.
"""

class ScoreTrackerException(Exception):
    """Base exception for score tracker errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------

class ScoreValidationError(ScoreTrackerException):
    """Raised when a submitted score fails validation."""
    def __init__(self, message: str, reason: str = None):
        super().__init__(message, f"❌ {reason or message}")

class UnknownGameError(ScoreValidationError):
    """Raised when a game/playtype pair has no declaration."""
    def __init__(self, game: str, playtype: str):
        super().__init__(
            f"Unknown game/playtype {game}:{playtype}",
            f"{game} {playtype} is not a supported game."
        )
        self.game = game
        self.playtype = playtype

class ChartNotFoundError(ScoreValidationError):
    """Raised when no chart matches the external identity."""
    def __init__(self, description: str):
        super().__init__(
            f"Could not find chart with {description}",
            "This chart does not exist in the catalog."
        )

class UnparsableTimestampError(ScoreValidationError):
    """Raised when the score's timestamp cannot be parsed."""
    def __init__(self, value):
        super().__init__(
            f"Invalid/Unparsable score timestamp of {value}",
            "The score's timestamp could not be read."
        )
        self.value = value

class OutOfRangeMetricError(ScoreValidationError):
    """Raised when a numeric metric is outside its declared bounds."""
    def __init__(self, metric: str, value, minimum=None, maximum=None):
        bounds = f"[{minimum}, {maximum}]"
        super().__init__(
            f"Metric '{metric}' value {value} outside {bounds}",
            f"{metric} must be between {minimum} and {maximum}."
        )
        self.metric = metric
        self.value = value

class UnknownOrdinalValueError(ScoreValidationError):
    """Raised when a value is not part of an ordered enumeration."""
    def __init__(self, enum_name: str, value):
        super().__init__(
            f"'{value}' is not a valid {enum_name} value",
            f"'{value}' is not a valid {enum_name}."
        )
        self.enum_name = enum_name
        self.value = value

class SessionMismatchError(ScoreValidationError):
    """Raised when a session's owner does not match the score being recorded."""
    def __init__(self, session_id: int, session_key: str, score_key: str):
        super().__init__(
            f"Session {session_id} belongs to {session_key}, not {score_key}",
            "This score does not belong to that session."
        )
        self.session_id = session_id

# ---------------------------------------------------------------------------
# Integrity errors
# ---------------------------------------------------------------------------

class DataIntegrityError(ScoreTrackerException):
    """Raised when catalog or metadata state is inconsistent."""
    def __init__(self, message: str):
        super().__init__(
            message,
            "❌ Internal data error. An operator has been notified."
        )

class SongChartDesyncError(DataIntegrityError):
    """Raised when a chart resolves but its parent song is missing."""
    def __init__(self, song_id: int, chart_id: str):
        super().__init__(f"Song-Chart Desync on songID {song_id} for chartID {chart_id}")
        self.song_id = song_id
        self.chart_id = chart_id

class ChartMetadataMissingError(DataIntegrityError):
    """Raised when a chart disappears underneath a consolidation pass."""
    def __init__(self, chart_id: str, detail: str = "disappeared underfoot"):
        super().__init__(f"Chart {chart_id} {detail}")
        self.chart_id = chart_id

class SessionNotFoundError(ScoreTrackerException):
    """Raised when a score is recorded against a session that does not exist."""
    def __init__(self, session_id: int):
        super().__init__(
            f"Session {session_id} does not exist",
            "❌ That session could not be found."
        )
        self.session_id = session_id

class ConfigurationError(ScoreTrackerException):
    """Raised when a runtime setting is unknown or its value is unusable."""
    def __init__(self, key: str, problem: str):
        super().__init__(
            f"Config {key} {problem}",
            f"❌ Setting '{key}' {problem}."
        )
        self.key = key

# ---------------------------------------------------------------------------
# Storage and concurrency errors
# ---------------------------------------------------------------------------

class StaleRecordSetError(ScoreTrackerException):
    """Raised when the record set changed between merge and write."""
    def __init__(self, user_id: int, chart_id: str):
        super().__init__(f"Record set for user {user_id} chart {chart_id} changed during write")

class LockTimeoutError(ScoreTrackerException):
    """Raised when a per-(user, chart) scope cannot be acquired in time."""
    def __init__(self, key: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for lock {key}",
            "❌ The server is busy with this chart. Please try again."
        )

class DatabaseError(ScoreTrackerException):
    """Raised when database operations fail."""
    def __init__(self, operation: str, details: str = None):
        super().__init__(
            f"Database error during {operation}: {details}",
            "❌ Database error occurred. Please try again later."
        )

class TransactionError(ScoreTrackerException):
    """Raised when transaction operations fail."""
    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"Transaction failed for {operation} after {attempts} attempts",
            "❌ Failed to save score. Please try again."
        )
