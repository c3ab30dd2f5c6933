"""
Job Model - SQLAlchemy ORM model for ingested job listings

Stores scraped postings along with the requirement list extracted by the
text-generation capability and the cached description embedding.

Embedding Cache:
    ``embedding`` is derived from ``description``. ``embedding_hash`` records
    the content hash the vector was computed from; a mismatch marks the
    vector stale and it is regenerated on the next ranking.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, JSON
from sqlalchemy.sql import func

from autoapply.database import Base


class Job(Base):
    """
    Job listing entity.

    Attributes:
        id: UUID primary key
        title: Job title (max 500 chars)
        company: Company name
        location: Job location
        url: Application URL handed to the automation capability (unique)
        description: Full job description text
        requirements: JSON list of extracted requirement strings
        embedding: Description embedding vector (JSON)
        embedding_hash: Content hash of the text the embedding came from
        source: Data source (e.g., "adzuna")
    """

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(500), nullable=False)
    company = Column(String(500), nullable=False, default="")
    location = Column(String(500), nullable=False, default="")
    url = Column(String(2000), nullable=False, unique=True)
    description = Column(Text, nullable=False)
    requirements = Column(JSON, nullable=False, default=list)
    embedding = Column(JSON, nullable=True)  # Store as JSON array
    embedding_hash = Column(String(64), nullable=True)
    source = Column(String(50), nullable=False, default="manual")
    posted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)
