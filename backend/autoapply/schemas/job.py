from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class JobBase(BaseModel):
    title: str = Field(min_length=1)
    company: str = ""
    location: str = ""
    description: str = Field(min_length=1)
    url: str = Field(min_length=1)
    source: str = "manual"
    posted_at: Optional[datetime] = None


class JobCreate(JobBase):
    requirements: Optional[list[str]] = None


class JobResponse(JobBase):
    id: str
    requirements: list[str]
    has_embedding: bool = False

    class Config:
        from_attributes = True
