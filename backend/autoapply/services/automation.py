"""
Browser Automation Clients - Implementations of the automation capability

Providers:
    - HttpAutomationClient: Delegates to a browser-automation worker service
      (Playwright/Selenium pool) over HTTP
    - DryRunAutomationClient: Validates input and reports success without
      submitting anything (development)

Worker Contract:
    POST {base_url}/apply
        {"job_url", "credentials", "profile", "resume_text"}
    200 → {"succeeded": bool, "screenshot_ref": str?, "error_reason": str?}

Error Mapping:
    - Connection errors, timeouts, 429 and 5xx → TransientCapabilityError
    - Other 4xx, malformed URLs, unparseable bodies → PermanentCapabilityError
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from autoapply.errors import PermanentCapabilityError, TransientCapabilityError
from autoapply.services.capabilities import AutomationClient, AutomationOutcome

logger = logging.getLogger(__name__)

CAPABILITY = "automation"


def validate_job_url(job_url: str) -> None:
    """Raise PermanentCapabilityError unless job_url is an absolute http(s) URL."""
    parsed = urlparse(job_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise PermanentCapabilityError(CAPABILITY, f"malformed job URL: {job_url!r}")


class HttpAutomationClient:
    """
    Client for the remote browser-automation worker.

    Attributes:
        base_url: Worker base URL
        timeout: Per-request timeout in seconds; the orchestrator's stage
            budget still applies on top of it
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def apply(
        self,
        job_url: str,
        credentials: Dict[str, str],
        profile: Dict[str, Any],
        resume_text: str,
    ) -> AutomationOutcome:
        validate_job_url(job_url)

        payload = {
            "job_url": job_url,
            "credentials": credentials,
            "profile": profile,
            "resume_text": resume_text,
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(f"{self.base_url}/apply", json=payload)
            except httpx.TransportError as e:
                # Connection refused, DNS failure, read timeout...
                raise TransientCapabilityError(CAPABILITY, f"worker unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCapabilityError(
                CAPABILITY, f"worker returned {response.status_code}"
            )
        if response.status_code >= 400:
            raise PermanentCapabilityError(
                CAPABILITY, f"worker rejected request ({response.status_code}): {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PermanentCapabilityError(CAPABILITY, "worker returned invalid JSON") from e

        return AutomationOutcome(
            succeeded=bool(data.get("succeeded")),
            screenshot_ref=data.get("screenshot_ref"),
            error_reason=data.get("error_reason"),
        )


class DryRunAutomationClient:
    """Automation client that never touches a browser."""

    async def apply(
        self,
        job_url: str,
        credentials: Dict[str, str],
        profile: Dict[str, Any],
        resume_text: str,
    ) -> AutomationOutcome:
        validate_job_url(job_url)
        if not resume_text.strip():
            return AutomationOutcome(succeeded=False, error_reason="empty resume")
        logger.info(f"Dry run: would apply to {job_url}")
        return AutomationOutcome(succeeded=True)


def get_automation_client(
    provider_name: str = "http",
    base_url: str = "",
    timeout: float = 600.0,
) -> AutomationClient:
    """
    Factory function to create an automation client.

    Args:
        provider_name: "http" or "dry_run"
        base_url: Worker URL (required for http)
        timeout: HTTP timeout for the worker call

    Raises:
        ValueError: If provider is unknown or required args missing
    """
    provider_name = provider_name.lower()

    if provider_name == "http":
        if not base_url:
            raise ValueError("HTTP automation requires automation_service_url")
        return HttpAutomationClient(base_url=base_url, timeout=timeout)

    elif provider_name == "dry_run":
        return DryRunAutomationClient()

    else:
        raise ValueError(
            f"Unknown automation provider: {provider_name}. Supported: http, dry_run"
        )
