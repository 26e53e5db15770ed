"""
borgrunner - Borg backups for Docker hosts with consistent database dumps
"""

__version__ = "0.1.0"

from .core import BackupRunner
from .errors import BackupError

__all__ = ["BackupRunner", "BackupError"]
