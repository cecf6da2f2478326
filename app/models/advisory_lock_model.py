from sqlalchemy.sql.schema import Column
from sqlalchemy.sql.sqltypes import String, DateTime

from app.db import Base
from app.models.base_model import utcnow


class AdvisoryLocks(Base):
    """Row-per-held-lock table; the primary key makes acquisition atomic"""
    __tablename__ = "advisory_locks"

    key = Column(String(255), primary_key=True)
    owner = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
