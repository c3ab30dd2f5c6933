from fastapi import Request

from autoapply.container import Container
from autoapply.services.applications import ApplicationService


def get_container(request: Request) -> Container:
    """Services bound at startup by the lifespan handler."""
    return request.app.state.container


def get_application_service(request: Request) -> ApplicationService:
    return get_container(request).applications
