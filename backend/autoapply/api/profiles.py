from fastapi import APIRouter, Depends

from autoapply.api.deps import get_container
from autoapply.container import Container
from autoapply.schemas import ProfileResponse, ProfileUpdate

router = APIRouter()


@router.get("/{user_id}", response_model=ProfileResponse)
async def get_profile(user_id: str, container: Container = Depends(get_container)):
    profile = await container.profiles.get(user_id)
    return ProfileResponse.model_validate(profile)


@router.put("/{user_id}", response_model=ProfileResponse)
async def update_profile(
    user_id: str,
    update: ProfileUpdate,
    container: Container = Depends(get_container),
):
    update_data = {k: v for k, v in update.model_dump(exclude_unset=True).items() if v is not None}
    profile = await container.profiles.upsert(user_id, **update_data)

    # Embedding is cleared on resume change; rebuild it off the request path
    if (
        container.settings.precompute_embeddings
        and profile.resume_text
        and not profile.has_embedding
    ):
        from autoapply.tasks.embeddings import refresh_profile_embedding

        refresh_profile_embedding.delay(user_id)

    return ProfileResponse.model_validate(profile)
