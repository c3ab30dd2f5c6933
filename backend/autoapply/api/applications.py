from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from autoapply.api.deps import get_application_service
from autoapply.models import Application
from autoapply.schemas import (
    AnswersResponse,
    ApplicationCreate,
    ApplicationEventResponse,
    ApplicationResponse,
    ApproveRequest,
    QuestionsRequest,
    RejectRequest,
    RetryRequest,
)
from autoapply.services.applications import ApplicationService

router = APIRouter()


def to_response(application: Application, service: ApplicationService) -> ApplicationResponse:
    response = ApplicationResponse.model_validate(application)
    response.pipeline_running = service.is_running(application.id)
    return response


@router.post("", response_model=ApplicationResponse, status_code=202)
async def create_application(
    request: ApplicationCreate,
    service: ApplicationService = Depends(get_application_service),
):
    """Persist the application and start its pipeline; returns without waiting."""
    credentials = request.credentials.to_credentials() if request.credentials else None
    application = await service.create_application(request.user_id, request.job_id, credentials)
    return to_response(application, service)


@router.get("", response_model=List[ApplicationResponse])
async def list_applications(
    user_id: str = Query(..., min_length=1),
    service: ApplicationService = Depends(get_application_service),
):
    applications = await service.list_applications(user_id)
    return [to_response(a, service) for a in applications]


@router.get("/{application_id}", response_model=ApplicationResponse)
async def get_application(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.get_application(application_id)
    return to_response(application, service)


@router.get("/{application_id}/events", response_model=List[ApplicationEventResponse])
async def list_events(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
):
    events = await service.list_events(application_id)
    return [ApplicationEventResponse.model_validate(e) for e in events]


@router.post("/{application_id}/approve", response_model=ApplicationResponse, status_code=202)
async def approve_application(
    application_id: str,
    request: ApproveRequest,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.approve_application(
        application_id, request.credentials.to_credentials()
    )
    return to_response(application, service)


@router.post("/{application_id}/reject", response_model=ApplicationResponse)
async def reject_application(
    application_id: str,
    request: Optional[RejectRequest] = None,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.reject_application(
        application_id, request.reason if request else None
    )
    return to_response(application, service)


@router.post("/{application_id}/retry", response_model=ApplicationResponse, status_code=202)
async def retry_application(
    application_id: str,
    request: Optional[RetryRequest] = None,
    service: ApplicationService = Depends(get_application_service),
):
    credentials = (
        request.credentials.to_credentials() if request and request.credentials else None
    )
    application = await service.retry_application(application_id, credentials)
    return to_response(application, service)


@router.post("/{application_id}/cancel", response_model=ApplicationResponse, status_code=202)
async def cancel_application(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.cancel_application(application_id)
    return to_response(application, service)


@router.post("/{application_id}/answers", response_model=AnswersResponse)
async def answer_questions(
    application_id: str,
    request: QuestionsRequest,
    service: ApplicationService = Depends(get_application_service),
):
    answers = await service.answer_questions(application_id, request.questions)
    return AnswersResponse(answers=answers)
