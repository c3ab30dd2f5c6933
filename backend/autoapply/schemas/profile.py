from pydantic import BaseModel
from typing import Optional


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    resume_text: Optional[str] = None
    skills: Optional[list[str]] = None


class ProfileResponse(BaseModel):
    id: str
    full_name: str
    email: str
    phone: str
    location: str
    resume_text: str
    skills: list[str]
    has_embedding: bool = False

    class Config:
        from_attributes = True
