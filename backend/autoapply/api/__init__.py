from fastapi import APIRouter
from autoapply.api import applications, feed, jobs, profiles

api_router = APIRouter()
api_router.include_router(applications.router, prefix="/applications", tags=["applications"])
api_router.include_router(feed.router, prefix="/feed", tags=["feed"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(profiles.router, prefix="/profiles", tags=["profiles"])
