"""
Nightshift - Core Package
=========================

Configuration, persistence, models and schemas.
"""

from nightshift.core.config import settings
from nightshift.core.database import Base

__all__ = ["Base", "settings"]
