from fastapi import APIRouter, Depends

from autoapply.api.deps import get_container
from autoapply.container import Container
from autoapply.schemas import FeedItem, FeedResponse

router = APIRouter()


@router.get("/{user_id}", response_model=FeedResponse)
async def get_feed(user_id: str, container: Container = Depends(get_container)):
    """
    Every stored job ranked for the user, best match first.

    Jobs whose embedding could not be generated are still listed (vector
    score 0) and named in ``warnings``.
    """
    feed = await container.matching.get_feed(user_id)
    return FeedResponse(
        user_id=feed.user_id,
        items=[
            FeedItem(
                job_id=entry.job_id,
                score_percent=entry.score_percent,
                score=entry.score,
                metadata=entry.metadata,
            )
            for entry in feed.items
        ],
        warnings=feed.warnings,
    )
