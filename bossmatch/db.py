"""
Database models and the Database handle.

The handle is constructed explicitly by whoever owns the process (the FastAPI
lifespan, scripts/init_db.py, the test suite) and passed down; nothing in the
package holds a module-level engine.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator
import uuid

from sqlalchemy import (
    create_engine, Column, String, Text, DateTime,
    Boolean, Integer, JSON, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    secondme_user_id = Column(String(255), unique=True)
    name = Column(String(255))

    # candidate | employer
    role = Column(String(20))

    # SecondMe OAuth tokens
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    candidate_profile = relationship("CandidateProfile", back_populates="user", uselist=False)


class CandidateProfile(Base):
    __tablename__ = "candidate_profiles"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False)

    name = Column(String(255))
    title = Column(String(255))
    city = Column(String(100))
    years_exp = Column(Integer)
    skills = Column(Text)  # "React,TypeScript", comma / 全角逗号 / 顿号 separated
    bio = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="candidate_profile")


class Company(Base):
    __tablename__ = "companies"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    city = Column(String(100))
    intro = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=_uuid)
    employer_user_id = Column(String, ForeignKey("users.id"), nullable=False)
    company_id = Column(String, ForeignKey("companies.id"))

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default='')
    city = Column(String(100))
    salary_min = Column(Integer)
    salary_max = Column(Integer)
    salary_currency = Column(String(10), default='CNY')
    tags = Column(Text)  # "React,3年"

    # open | closed
    status = Column(String(20), nullable=False, default='open')

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    company = relationship("Company")
    employer = relationship("User")


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (UniqueConstraint('user_id', 'job_id', name='uq_match_user_job'),)

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False)

    # liked | passed
    status = Column(String(20), nullable=False)
    unlocked = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Conversation(Base):
    __tablename__ = "ai_match_conversations"
    __table_args__ = (UniqueConstraint('user_id', 'job_id', name='uq_conversation_user_job'),)

    id = Column(String, primary_key=True, default=_uuid)

    # Candidate user and target job
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False)

    # pending → completed, or failed
    status = Column(String(20), nullable=False, default='pending')
    current_turn = Column(Integer, nullable=False, default=0)
    conversation_history = Column(JSON, nullable=False, default=list)

    # Provider session handles, one per party
    candidate_session_id = Column(String(255))
    employer_session_id = Column(String(255))

    # Evaluation
    match_score = Column(Integer)
    evaluation_reason = Column(Text)
    match_threshold = Column(Integer, nullable=False, default=60)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")
    job = relationship("Job")


# Indices
Index('idx_job_status', Job.status)
Index('idx_job_created', Job.created_at)
Index('idx_conversation_status', Conversation.status)


class Database:
    """Engine + session factory with explicit setup and teardown."""

    def __init__(self, url: str, echo: bool = False):
        kwargs = {'echo': echo, 'pool_pre_ping': True}
        if url.startswith('sqlite'):
            # One shared connection so in-memory databases survive across sessions
            kwargs = {
                'echo': echo,
                'connect_args': {'check_same_thread': False},
                'poolclass': StaticPool,
            }
        self.engine = create_engine(url, **kwargs)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False,
        )

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()
