"""
Profile Model - User master resume, skills and embedding

Each profile is one user. The embedding of ``resume_text`` is a derived
cache and is cleared whenever the resume changes.
"""

from sqlalchemy import Column, String, Text, JSON, DateTime
from sqlalchemy.sql import func

from autoapply.database import Base


class Profile(Base):
    """
    User profile used for matching and automation.

    Attributes:
        id: User id (primary key)
        full_name/email/phone/location: Contact details passed to automation
        resume_text: Master resume text
        skills: JSON list of skill strings
        embedding: Resume embedding vector (JSON)
        embedding_hash: Content hash of the text the embedding came from
    """

    __tablename__ = "profiles"

    id = Column(String, primary_key=True)
    full_name = Column(String(255), nullable=False, default="")
    email = Column(String(255), nullable=False, default="")
    phone = Column(String(50), nullable=False, default="")
    location = Column(String(255), nullable=False, default="")
    resume_text = Column(Text, nullable=False, default="")
    skills = Column(JSON, nullable=False, default=list)
    embedding = Column(JSON, nullable=True)  # Store as JSON array
    embedding_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def automation_profile(self) -> dict:
        """Contact fields handed to the automation capability."""
        return {
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "location": self.location,
            "skills": list(self.skills or []),
        }
