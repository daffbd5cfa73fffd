"""
Hive - Core Package
===================

Configuration, persistence, models and schemas.
"""

from hive.core.config import settings
from hive.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
