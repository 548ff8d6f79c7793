"""
Runtime tunables for the import pipeline.

Values live in the configurations table as JSON and are cached in memory; the
services read them through get(). Every change made through set() is checked
against the seeded defaults and leaves an audit log entry.
"""

import json
import logging
from typing import Any, Dict, Optional
from sqlalchemy import select
from scoretracker.services.base import BaseService
from scoretracker.services.seed_configurations import INITIAL_CONFIGS
from scoretracker.database.models import Configuration, AuditLog
from scoretracker.utils.score_exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Smallest value each tunable accepts
MINIMUMS = {
    'import.score_submission_max_retries': 1,
    'import.batch_size': 1,
    'session.gap_minutes': 1,
    'session.rating_sample_size': 1,
    'locks.timeout_seconds': 0,
}

class ConfigurationService(BaseService):
    """Cached view of the tracker's runtime tunables."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self._cache: Dict[str, Any] = {}

    async def load_all(self):
        """Reload every stored value; rows holding invalid JSON are skipped."""
        new_cache = {}
        async with self.get_session() as session:
            result = await session.execute(select(Configuration))
            for row in result.scalars().all():
                try:
                    new_cache[row.key] = json.loads(row.value)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON for config key '{row.key}', skipping")

        self._cache = new_cache
        logger.info(f"Loaded {len(self._cache)} configuration parameters")

    def get(self, key: str, default: Any = None) -> Any:
        return self._cache.get(key, default)

    @staticmethod
    def check(key: str, value: Any):
        """
        Raises:
            ConfigurationError: unknown key, or a value of the wrong type or below its minimum
        """
        if key not in INITIAL_CONFIGS:
            raise ConfigurationError(key, "is not a known setting")
        expected = type(INITIAL_CONFIGS[key])
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(key, f"must be a number, got {value!r}")
        if expected is int and int(value) != value:
            raise ConfigurationError(key, f"must be a whole number, got {value!r}")
        minimum = MINIMUMS.get(key)
        if minimum is not None and value < minimum:
            raise ConfigurationError(key, f"must be at least {minimum}, got {value!r}")

    async def set(self, key: str, value: Any, operator_id: Optional[int] = None):
        """
        Validate, persist and audit one setting, then refresh the cache.

        `operator_id` is recorded in the audit log; None marks an automated change.
        """
        self.check(key, value)

        async with self.get_session() as session:
            row = await session.scalar(select(Configuration).where(Configuration.key == key))
            old_value = None
            if row is None:
                session.add(Configuration(key=key, value=json.dumps(value)))
            else:
                try:
                    old_value = json.loads(row.value)
                except json.JSONDecodeError:
                    old_value = {"error": "invalid JSON", "raw": row.value}
                row.value = json.dumps(value)

            session.add(AuditLog(
                user_id=operator_id,
                action='config_set',
                details=json.dumps({'key': key, 'old_value': old_value, 'new_value': value}),
            ))

        logger.info(f"Config {key}: {old_value!r} -> {value!r}")
        await self.load_all()

    def effective(self) -> Dict[str, Any]:
        """Every known setting with stored values laid over the defaults."""
        return {key: self._cache.get(key, default) for key, default in INITIAL_CONFIGS.items()}

    def get_by_category(self, category: str) -> Dict[str, Any]:
        """Effective settings under `category.`, keyed without the prefix."""
        prefix = f"{category}."
        return {
            key[len(prefix):]: value
            for key, value in self.effective().items()
            if key.startswith(prefix)
        }
