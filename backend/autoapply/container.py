"""
Service Container - Capabilities and services bound once at startup

Providers are selected by explicit configuration (``embedding_provider``,
``text_provider``, ``automation_provider``) and constructed here, once per
process. Every service receives its collaborators through its constructor;
nothing below reads a global provider.

Usage:
    container = build_container(get_settings(), async_session)
    app.state.container = container
    ...
    await container.shutdown()
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoapply.config import Settings
from autoapply.services.applications import ApplicationService
from autoapply.services.audit import AuditTrail
from autoapply.services.automation import get_automation_client
from autoapply.services.capabilities import AutomationClient, EmbeddingProvider, TextGenerator
from autoapply.services.embedding_providers import get_embedding_provider
from autoapply.services.ingestion import JobIngestionService
from autoapply.services.lifecycle import Stage
from autoapply.services.matcher import MatchingEngine
from autoapply.services.orchestrator import ApplicationOrchestrator
from autoapply.services.repository import ApplicationRepository, JobRepository, ProfileRepository
from autoapply.services.task_scheduler import TaskScheduler
from autoapply.services.text_generation import get_text_generator
from autoapply.services.vector_store import VectorStore, get_vector_store

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    applications: ApplicationService
    matching: MatchingEngine
    ingestion: JobIngestionService
    profiles: ProfileRepository
    jobs: JobRepository
    scheduler: TaskScheduler
    orchestrator: ApplicationOrchestrator
    audit: AuditTrail
    vector_store: VectorStore

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    embeddings: Optional[EmbeddingProvider] = None,
    text_generator: Optional[TextGenerator] = None,
    automation: Optional[AutomationClient] = None,
) -> Container:
    """
    Wire repositories, capabilities and services.

    Capability instances may be passed in (tests, embedding workers);
    otherwise they are built from settings.

    Raises:
        ValueError: Unknown provider name or missing provider configuration
    """
    embeddings = embeddings or get_embedding_provider(
        settings.embedding_provider,
        api_key=settings.openai_api_key,
        model_name=settings.embedding_model or None,
    )
    text_generator = text_generator or get_text_generator(
        settings.text_provider,
        api_key=settings.openai_api_key,
        model_name=settings.openai_chat_model,
    )
    automation = automation or get_automation_client(
        settings.automation_provider,
        base_url=settings.automation_service_url,
        timeout=settings.automate_timeout_seconds,
    )

    repository = ApplicationRepository(session_factory)
    profiles = ProfileRepository(session_factory)
    jobs = JobRepository(session_factory)
    audit = AuditTrail(session_factory)
    vector_store = get_vector_store(settings.vector_store_backend, session_factory)

    orchestrator = ApplicationOrchestrator(
        repository=repository,
        profiles=profiles,
        jobs=jobs,
        audit=audit,
        text_generator=text_generator,
        automation=automation,
        max_retries=settings.max_retries,
        stage_timeouts={
            Stage.TAILOR: settings.tailor_timeout_seconds,
            Stage.AUTOMATE: settings.automate_timeout_seconds,
        },
        capability_max_attempts=settings.capability_max_attempts,
        capability_backoff_seconds=settings.capability_backoff_seconds,
    )
    scheduler = TaskScheduler(
        orchestrator,
        max_concurrent_pipelines=settings.max_concurrent_pipelines,
        max_concurrent_automations=settings.max_concurrent_automations,
        max_concurrent_tailoring=settings.max_concurrent_tailoring,
    )
    applications = ApplicationService(
        repository=repository,
        profiles=profiles,
        jobs=jobs,
        audit=audit,
        scheduler=scheduler,
        text_generator=text_generator,
        max_retries=settings.max_retries,
        approval_ttl_hours=settings.approval_ttl_hours,
        capability_max_attempts=settings.capability_max_attempts,
        capability_backoff_seconds=settings.capability_backoff_seconds,
    )
    matching = MatchingEngine(
        embeddings=embeddings,
        vector_store=vector_store,
        profiles=profiles,
        jobs=jobs,
        vector_weight=settings.match_vector_weight,
        keyword_weight=settings.match_keyword_weight,
        embedding_concurrency=settings.embedding_concurrency,
        embedding_timeout=settings.embedding_timeout_seconds,
        max_attempts=settings.capability_max_attempts,
        backoff_seconds=settings.capability_backoff_seconds,
    )
    ingestion = JobIngestionService(
        jobs=jobs,
        text_generator=text_generator,
        capability_max_attempts=settings.capability_max_attempts,
        capability_backoff_seconds=settings.capability_backoff_seconds,
    )

    logger.info(
        f"Capabilities bound: embeddings={settings.embedding_provider}, "
        f"text={settings.text_provider}, automation={settings.automation_provider}"
    )
    return Container(
        settings=settings,
        session_factory=session_factory,
        applications=applications,
        matching=matching,
        ingestion=ingestion,
        profiles=profiles,
        jobs=jobs,
        scheduler=scheduler,
        orchestrator=orchestrator,
        audit=audit,
        vector_store=vector_store,
    )
