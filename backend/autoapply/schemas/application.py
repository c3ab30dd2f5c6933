from pydantic import BaseModel, Field, SecretStr
from datetime import datetime
from typing import Any, Optional

from autoapply.services.credentials import Credentials


class CredentialsIn(BaseModel):
    """Job-site login supplied with a request. Never persisted."""

    username: str = Field(min_length=1)
    password: SecretStr

    def to_credentials(self) -> Credentials:
        return Credentials(
            username=self.username,
            password=self.password.get_secret_value(),
        )


class ApplicationCreate(BaseModel):
    user_id: str = Field(min_length=1)
    job_id: str = Field(min_length=1)
    credentials: Optional[CredentialsIn] = None


class ApproveRequest(BaseModel):
    credentials: CredentialsIn


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class RetryRequest(BaseModel):
    credentials: Optional[CredentialsIn] = None


class QuestionsRequest(BaseModel):
    questions: list[str] = Field(min_length=1)


class AnswersResponse(BaseModel):
    answers: dict[str, str]


class ApplicationResponse(BaseModel):
    id: str
    user_id: str
    job_id: str
    status: str
    tailored_resume_ref: Optional[str] = None
    screenshot_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int
    pipeline_running: bool = False
    created_at: datetime
    updated_at: datetime
    approval_requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ApplicationEventResponse(BaseModel):
    id: int
    application_id: str
    kind: str
    message: str
    metadata: dict[str, Any] = Field(validation_alias="details")
    created_at: datetime

    class Config:
        from_attributes = True
