from pydantic import BaseModel
from typing import Any


class FeedItem(BaseModel):
    job_id: str
    score_percent: int
    score: float
    metadata: dict[str, Any]


class FeedResponse(BaseModel):
    user_id: str
    items: list[FeedItem]
    warnings: list[str]
