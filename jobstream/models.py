"""Core SQLAlchemy models (2.x style) for the jobstream schema.

Natural keys (company domain, job dedup key) carry unique constraints so that
upserts can use ``INSERT ... ON CONFLICT DO UPDATE``.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Company(Base):
    """Companies table."""
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # domain if known, otherwise "name:<normalized name>"
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), index=True)
    name_normalized: Mapped[str | None] = mapped_column(String(255), index=True)
    domain: Mapped[str | None] = mapped_column(String(255), unique=True)
    jobs_url: Mapped[str | None] = mapped_column(String(1024))
    linkedin_url: Mapped[str | None] = mapped_column(String(1024))
    industry: Mapped[str | None] = mapped_column(String(255))
    size: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text)
    headquarters: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    jobs: Mapped[list[Job]] = relationship("Job", back_populates="company")


class Job(Base):
    """Job postings table."""
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"), index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(255), index=True)
    job_type: Mapped[str | None] = mapped_column(String(100))
    experience_level: Mapped[str | None] = mapped_column(String(100))
    education_level: Mapped[str | None] = mapped_column(String(100))
    salary_min: Mapped[int | None] = mapped_column(Integer)
    salary_max: Mapped[int | None] = mapped_column(Integer)
    salary_currency: Mapped[str | None] = mapped_column(String(10))
    qualifications: Mapped[list[str] | None] = mapped_column(JSON)
    preferred_qualifications: Mapped[list[str] | None] = mapped_column(JSON)
    responsibilities: Mapped[list[str] | None] = mapped_column(JSON)
    benefits: Mapped[list[str] | None] = mapped_column(JSON)
    category: Mapped[str | None] = mapped_column(String(255))
    source_url: Mapped[str | None] = mapped_column(String(1024), index=True)
    application_url: Mapped[str | None] = mapped_column(String(1024))
    status: Mapped[str | None] = mapped_column(String(50), index=True)
    posted_date: Mapped[str | None] = mapped_column(String(50))
    closing_date: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    company: Mapped[Company | None] = relationship("Company", back_populates="jobs")

    __table_args__ = (
        Index("ix_jobs_created_at", "created_at"),
    )


class JobStreamEntry(Base):
    """Append-only log of jobs surfaced to profiles."""
    __tablename__ = "job_stream"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)


class JobApplication(Base):
    """Applications tracked per profile."""
    __tablename__ = "job_applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int | None] = mapped_column(ForeignKey("jobs.id", ondelete="SET NULL"), index=True)
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status_id: Mapped[int | None] = mapped_column(Integer)
    status_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    application_date: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_job_applications_profile_job", "profile_id", "job_id"),
    )


class Resume(Base):
    """Parsed résumés, one row per stored file."""
    __tablename__ = "resumes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    file_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    resume_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    raw_text: Mapped[str | None] = mapped_column(Text)
    parsed_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
