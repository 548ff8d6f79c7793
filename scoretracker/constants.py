"""
Tracker-wide constants for the rhythm score tracker.

This module contains the magic numbers used throughout the codebase to
improve maintainability and clarity.
"""

class ImportConstants:
    """Constants related to the score import pipeline."""

    # Maximum attempts for a single score submission on IntegrityError
    DEFAULT_MAX_RETRIES = 3

    # Backoff for retries: base * 2**attempt, capped
    RETRY_BACKOFF_BASE = 0.1
    RETRY_BACKOFF_CAP = 1.0

    # Number of imports dispatched concurrently in a batch
    DEFAULT_BATCH_SIZE = 100

class SessionConstants:
    """Constants for play-session grouping."""

    # A score joins a session if it is within this many minutes of its end
    DEFAULT_GAP_MINUTES = 120

    # Session ratings average this many of the best score ratings
    DEFAULT_RATING_SAMPLE_SIZE = 10

class LockConstants:
    """Constants for per-(user, chart) exclusive scopes."""

    # Redis key prefix for the distributed lock
    REDIS_LOCK_PREFIX = "pb_lock"

    # Redis lock lifetime; protects against crashed holders
    REDIS_LOCK_TTL = 60

    # Poll interval while waiting on a Redis lock
    REDIS_LOCK_SLEEP = 0.05

class ComposedFromConstants:
    """Keys used inside PersonalBest.composed_from."""

    SCORE_PB = "score_pb"
    LAMP_PB = "lamp_pb"
    OTHER = "other"
