"""
Configuration seed data for the score tracker.

Runtime tunables read through ConfigurationService; values here are the
defaults written by `seed-config`.
"""

import json
import asyncio
from scoretracker.constants import ImportConstants, SessionConstants
from scoretracker.database.models import Configuration
from scoretracker.database.database import Database
from scoretracker.utils.logger import setup_logger

logger = setup_logger(__name__)

INITIAL_CONFIGS = {
    # Import pipeline
    'import.score_submission_max_retries': ImportConstants.DEFAULT_MAX_RETRIES,
    'import.batch_size': ImportConstants.DEFAULT_BATCH_SIZE,

    # Sessions
    'session.gap_minutes': SessionConstants.DEFAULT_GAP_MINUTES,
    'session.rating_sample_size': SessionConstants.DEFAULT_RATING_SAMPLE_SIZE,

    # Locking
    'locks.timeout_seconds': 30.0,
}

async def seed_configurations(db: Database = None):
    """Seed all initial configuration values."""
    owns_db = db is None
    if owns_db:
        db = Database()
        await db.initialize()

    try:
        async with db.transaction() as session:
            for key, value in INITIAL_CONFIGS.items():
                # Use merge to insert or update
                config = Configuration(key=key, value=json.dumps(value))
                await session.merge(config)
        logger.info(f"Seeded {len(INITIAL_CONFIGS)} configuration parameters")
    finally:
        if owns_db:
            await db.close()

def get_categories_summary():
    """Get summary of configuration categories."""
    categories = {}
    for key in INITIAL_CONFIGS.keys():
        if '.' in key:
            category = key.split('.', 1)[0]
            categories[category] = categories.get(category, 0) + 1
    return categories

if __name__ == "__main__":
    asyncio.run(seed_configurations())
