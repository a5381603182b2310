"""
Database models and configuration for the job store.
"""
from sqlalchemy import create_engine, Column, String, Integer, Float, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.types import TypeDecorator
from datetime import datetime
from typing import Optional

from .config import settings

Base = declarative_base()

class ReprFloat(TypeDecorator):
    """Float stored as its repr so nan/inf survive every backend."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return repr(float(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return float(value)

class JobRow(Base):
    __tablename__ = "jobs"

    id = Column(String(64), primary_key=True)
    number_a = Column(Float, nullable=False)
    number_b = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    results = relationship(
        "OperationResultRow",
        back_populates="job",
        order_by="OperationResultRow.position",
        cascade="all, delete-orphan",
    )

class OperationResultRow(Base):
    __tablename__ = "operation_results"
    __table_args__ = (UniqueConstraint("job_id", "operation", name="uq_operation_per_job"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(64), ForeignKey("jobs.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    operation = Column(String(20), nullable=False)  # add/subtract/multiply/divide
    status = Column(String(20), nullable=False, default="pending")  # pending/processing/completed/failed
    result = Column(ReprFloat, nullable=True)
    error = Column(Text, nullable=True)

    # Relationships
    job = relationship("JobRow", back_populates="results")

# Database configuration
def get_database_url() -> str:
    """Get database URL from settings."""
    return settings.DATABASE_URL

def create_engine_instance(url: Optional[str] = None):
    """Create SQLAlchemy engine with proper configuration."""
    url = url or get_database_url()
    kwargs = {"pool_pre_ping": True, "echo": False}
    if url.startswith("sqlite"):
        # Sessions hop between worker threads
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs["pool_recycle"] = 300
    return create_engine(url, **kwargs)

def create_session_factory(engine):
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)

def init_db(engine) -> None:
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)
