"""
Services package for the score tracker.

Service layer: database sessions, retries, locking and the import pipeline.
"""

from .base import BaseService
from .locks import KeyedLockManager

__all__ = ['BaseService', 'KeyedLockManager']
