"""
Job record model - persistent status of periodic driver runs
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum as SQLEnum
from datetime import datetime
from enum import Enum
from legalops.database import Base


class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobRecord(Base):
    __tablename__ = "job_records"

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(JobStatus, native_enum=False), nullable=False, default=JobStatus.RUNNING)
    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    result = Column(JSON, nullable=True)  # {"sent": 3, "failed": 0}
    error = Column(Text, nullable=True)
