from autoapply.schemas.application import (
    CredentialsIn,
    ApplicationCreate,
    ApproveRequest,
    RejectRequest,
    RetryRequest,
    QuestionsRequest,
    AnswersResponse,
    ApplicationResponse,
    ApplicationEventResponse,
)
from autoapply.schemas.feed import FeedItem, FeedResponse
from autoapply.schemas.job import JobCreate, JobResponse
from autoapply.schemas.profile import ProfileUpdate, ProfileResponse

__all__ = [
    "CredentialsIn",
    "ApplicationCreate",
    "ApproveRequest",
    "RejectRequest",
    "RetryRequest",
    "QuestionsRequest",
    "AnswersResponse",
    "ApplicationResponse",
    "ApplicationEventResponse",
    "FeedItem",
    "FeedResponse",
    "JobCreate",
    "JobResponse",
    "ProfileUpdate",
    "ProfileResponse",
]
