"""Collaborator backed by HTTP task endpoints."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ragdigest.errors import CollaboratorError

from .base import Collaborator, CollaboratorResult

LOGGER = logging.getLogger(__name__)


class HTTPCollaborator(Collaborator):
    """POST JSON payloads to ``{base_url}/{task}`` with ``httpx``.

    Each task endpoint answers with a JSON object (``{"analysis": ...}``,
    ``{"synthesis": ...}``, ...) or, for streaming tasks, with a
    ``text/event-stream`` body. Error responses are turned into
    :class:`CollaboratorResult` errors whose message carries the status code
    so that rate limiting (429) stays detectable by callers.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _url(self, task: str) -> str:
        return f"{self.base_url}/{task}"

    def _headers(self, credential: str | None = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        bearer = credential or self._token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def invoke(self, task: str, payload: Dict[str, Any]) -> CollaboratorResult:
        try:
            response = await self._client.post(self._url(task), json=payload, headers=self._headers())
        except httpx.TimeoutException as error:
            LOGGER.warning("Collaborator %s timed out: %s", task, error)
            return CollaboratorResult(error=f"timeout calling {task}: {error}")
        except httpx.HTTPError as error:
            LOGGER.warning("Collaborator %s transport error: %s", task, error)
            return CollaboratorResult(error=f"network error calling {task}: {error}")

        if response.status_code >= 400:
            detail = _error_detail(response)
            LOGGER.warning("Collaborator %s returned %s: %s", task, response.status_code, detail)
            return CollaboratorResult(
                error=f"HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as error:
            return CollaboratorResult(
                error=f"invalid JSON from {task}: {error}",
                status_code=response.status_code,
            )
        if not isinstance(data, dict):
            return CollaboratorResult(
                error=f"unexpected response type from {task}: {type(data).__name__}",
                status_code=response.status_code,
            )
        if data.get("error"):
            return CollaboratorResult(error=str(data["error"]), status_code=response.status_code)
        return CollaboratorResult(data=data, status_code=response.status_code)

    async def stream(
        self,
        task: str,
        payload: Dict[str, Any],
        *,
        credential: str | None = None,
    ) -> AsyncIterator[str]:
        try:
            async with self._client.stream(
                "POST",
                self._url(task),
                json=payload,
                headers=self._headers(credential),
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise CollaboratorError(
                        f"{task} failed: HTTP {response.status_code}: {body.decode('utf-8', 'replace')[:500]}",
                        task=task,
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.HTTPError as error:
            raise CollaboratorError(f"{task} stream failed: {error}", task=task, cause=error) from error

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text[:500]


__all__ = ["HTTPCollaborator"]
