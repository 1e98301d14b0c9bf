"""
Persistent assignment storage for sticky bucketing.
"""

from .sticky import PersistentAssignmentOptions, UserPersistentStorage, UserPersistentStorageHandler
from .redis_storage import RedisUserPersistentStorage

__all__ = [
    "PersistentAssignmentOptions",
    "RedisUserPersistentStorage",
    "UserPersistentStorage",
    "UserPersistentStorageHandler",
]
