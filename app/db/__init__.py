from app.db.database import Base, Database, connect_queue_store, connect_with_retry

__all__ = [
    "Base",
    "Database",
    "connect_queue_store",
    "connect_with_retry",
]
