"""
Automatically add all models to __all__
This is used in alembic while autogenerate database migration script.
"""
from .distributed_lock import DistributedLock
from .synced_article import SyncedArticle, ArticleStatus

__all__ = [
    "DistributedLock",
    "SyncedArticle",
    "ArticleStatus",
]
