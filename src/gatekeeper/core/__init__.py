"""
Gatekeeper - Core Package
=========================

Configuration, persistence, models and schemas.
"""

from gatekeeper.core.config import settings
from gatekeeper.core.database import Base, get_db_session

__all__ = ["Base", "get_db_session", "settings"]
