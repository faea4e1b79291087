"""Shared HTTP plumbing for generation providers.

A provider client makes exactly one outbound call per ``submit`` or
``poll_once`` and translates transport failures and non-2xx responses into
the provider error taxonomy. Retrying is the polling engine's job.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx

from momentful.constants.models import Provider
from momentful.exceptions import (
    ProviderBillingLimitError,
    ProviderError,
    ProviderRejectedError,
    ProviderUnreachableError,
    ValidationError,
)
from momentful.schemas.provider import ProviderJob, ProviderRequest

logger = logging.getLogger(__name__)

# Some providers wrap an upstream response as '400 {"error": "..."}'
_STATUS_PREFIXED_JSON = re.compile(r"^\d{3}\s+(\{.*\})\s*$", re.DOTALL)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def extract_error_message(body: Any, fallback: str) -> str:
    """Pull a human-readable message out of a provider error body."""
    if isinstance(body, str):
        match = _STATUS_PREFIXED_JSON.match(body)
        if match:
            try:
                return extract_error_message(json.loads(match.group(1)), fallback)
            except json.JSONDecodeError:
                return body
        return body or fallback

    if isinstance(body, dict):
        for key in ("detail", "error", "message", "failure"):
            value = body.get(key)
            if isinstance(value, (str, dict)) and value:
                return extract_error_message(value, fallback)
        issues = body.get("issues")
        if isinstance(issues, list) and issues:
            first = issues[0]
            if isinstance(first, dict) and first.get("message"):
                return str(first["message"])

    return fallback


class ProviderClient(ABC):
    """One generation provider behind a normalized submit/poll contract."""

    provider: Provider

    def __init__(self, http: httpx.AsyncClient, *, base_url: str, api_key: str) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key

    @abstractmethod
    async def submit(self, request: ProviderRequest) -> str:
        """Start a job and return the provider-assigned job id."""

    @abstractmethod
    async def poll_once(self, job_id: str) -> ProviderJob:
        """Read the job's current status once."""

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _validate(self, request: ProviderRequest) -> None:
        if not request.prompt_text or not request.prompt_text.strip():
            raise ValidationError("promptText must not be empty")
        if not request.source_url.startswith(("http://", "https://")):
            raise ValidationError("Source must be resolved to an http(s) URL before submission")

    async def _send(self, method: str, path: str, json_body: dict | None = None) -> dict[str, Any]:
        if not self._api_key:
            raise ProviderRejectedError(
                self.provider.value, 500, f"{self.provider.value} API key not configured"
            )

        url = f"{self._base_url}{path}"
        try:
            response = await self._http.request(method, url, headers=self._headers(), json=json_body)
        except httpx.TransportError as e:
            logger.error(f"{self.provider.value} unreachable ({method} {path}): {e}")
            raise ProviderUnreachableError(self.provider.value, f"Could not reach {self.provider.value}: {e}") from e

        if response.status_code >= 400:
            raise self._rejection(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderRejectedError(
                self.provider.value, 502, f"{self.provider.value} returned a non-JSON response"
            ) from e
        if not isinstance(data, dict):
            raise ProviderRejectedError(
                self.provider.value, 502, f"{self.provider.value} returned an unexpected response"
            )
        return data

    def _rejection(self, response: httpx.Response) -> ProviderError:
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        if response.status_code == 402:
            title = body.get("title") if isinstance(body, dict) else None
            detail = body.get("detail") if isinstance(body, dict) else None
            logger.warning(f"{self.provider.value} billing limit: {title} {detail}")
            return ProviderBillingLimitError(self.provider.value, title=title, detail=detail)

        message = extract_error_message(
            body, f"{self.provider.value} request failed with status {response.status_code}"
        )
        logger.error(f"{self.provider.value} rejected request: {response.status_code} {message}")
        return ProviderRejectedError(self.provider.value, response.status_code, message)
