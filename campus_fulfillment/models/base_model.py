import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, Uuid
from sqlalchemy.orm import declarative_base


def utcnow():
    return datetime.now(timezone.utc)


Base = declarative_base()


class BaseModel(Base):
    __abstract__ = True

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
