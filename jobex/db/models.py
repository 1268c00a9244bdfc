from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, JSON, String

from jobex.db.connection import Base


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class ExtractionArtifact(Base):
    """Final artifact produced by a completed extraction job"""
    __tablename__ = 'extraction_artifacts'

    id = Column(String(36), primary_key=True, default=lambda: generate_id('doc'))
    job_id = Column(String(36), nullable=False, index=True, unique=True)
    owner_id = Column(String(255), index=True)
    file_name = Column(String(512))
    section_count = Column(Integer, default=0)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
