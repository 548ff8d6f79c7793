"""
Operations Layer

Business logic that composes database reads into validation workflows,
kept apart from the service layer that owns transactions and locking.

- ScoreValidator: raw converter payload -> ValidatedScore
"""
