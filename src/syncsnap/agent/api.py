"""HTTP clients for the agent's external collaborators.

This module provides:
- SyncthingClient: folder status queries against the local Syncthing daemon
- CloudClient: snapshot publishing to the cloud API
- APIError and subclasses, tagged retryable or fatal where the call fails
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# 4xx statuses that are worth retrying
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class APIError(Exception):
    """Base exception for collaborator API errors.

    Attributes:
        status_code: HTTP status, or None for transport-level failures.
        retryable: Whether repeating the same call could plausibly succeed.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AuthenticationError(APIError):
    """Credentials were rejected."""


class NotFoundError(APIError):
    """Resource not found."""


def is_retryable_status(status_code: int) -> bool:
    """Classify an HTTP error status.

    Server errors and the timeout/rate-limit client errors are retryable,
    other client errors are not.
    """
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or data)
    return str(data)


def raise_for_response(response: httpx.Response, service: str) -> httpx.Response:
    """Raise the APIError matching an error response.

    Args:
        response: Response to check.
        service: Collaborator name used in error messages.

    Returns:
        The response itself when it is successful.
    """
    if response.is_success:
        return response
    status_code = response.status_code
    detail = _error_detail(response)
    message = f"{service} API error: {status_code} - {detail}"
    if status_code in (401, 403):
        raise AuthenticationError(message, status_code)
    if status_code == 404:
        raise NotFoundError(message, status_code)
    raise APIError(message, status_code, retryable=is_retryable_status(status_code))


def transport_error(exc: httpx.TransportError, service: str) -> APIError:
    """Wrap a connection-level failure as a retryable APIError."""
    return APIError(f"{service} request failed: {exc!r}", None, retryable=True)


class SyncthingClient:
    """Async client for the Syncthing REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the Syncthing GUI/REST listener.
            api_key: Syncthing API key.
            timeout: Request timeout in seconds.
            transport: Optional transport override.
        """
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={"X-API-Key": api_key},
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> SyncthingClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        logger.debug("Syncthing %s %s", method, url)
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise transport_error(e, "Syncthing") from e
        return raise_for_response(response, "Syncthing")

    async def _get_object(self, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request("GET", url, **kwargs)
        try:
            data = response.json()
        except ValueError as e:
            raise APIError(
                f"Syncthing returned invalid JSON for {url}",
                response.status_code,
                retryable=True,
            ) from e
        if not isinstance(data, dict):
            raise APIError(
                f"Syncthing returned unexpected data for {url}",
                response.status_code,
                retryable=True,
            )
        return data

    async def get_folder_status(self, folder_id: str) -> dict[str, Any]:
        """Get the status of a folder.

        The folder path is not part of Syncthing's db status, so it is
        merged in from the folder configuration when missing.

        Args:
            folder_id: Syncthing folder ID (the project ID).

        Returns:
            Status dictionary with at least "state" and "path".
        """
        status = await self._get_object("/rest/db/status", params={"folder": folder_id})
        if not status.get("path"):
            folder = await self.get_folder_config(folder_id)
            if folder.get("path"):
                status["path"] = folder["path"]
        return status

    async def get_folder_state(self, folder_id: str) -> str:
        """Get just the state string of a folder (e.g. "idle", "scanning")."""
        status = await self._get_object("/rest/db/status", params={"folder": folder_id})
        return str(status.get("state", ""))

    async def get_folder_config(self, folder_id: str) -> dict[str, Any]:
        """Get the configuration of a folder."""
        return await self._get_object(f"/rest/config/folders/{folder_id}")


class CloudClient:
    """Async client for the cloud API snapshots are published to."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> CloudClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def upload_snapshot(
        self,
        project_id: str,
        payload: dict[str, Any],
        access_token: str,
    ) -> str:
        """Upload a snapshot for a project.

        Performs exactly one request; retrying is the caller's concern.

        Args:
            project_id: Project the snapshot belongs to.
            payload: Request body ({"snapshot": ..., "syncStatus": ...}).
            access_token: Bearer token of the user.

        Returns:
            URL of the stored snapshot.

        Raises:
            APIError: With retryable set for transport errors and 5xx.
        """
        url = f"/projects/{project_id}/snapshot"
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TransportError as e:
            raise transport_error(e, "Cloud") from e
        raise_for_response(response, "Cloud")

        try:
            data = response.json()
        except ValueError as e:
            raise APIError("Cloud API returned invalid JSON", response.status_code) from e
        snapshot_url = data.get("snapshotUrl") if isinstance(data, dict) else None
        if not snapshot_url:
            raise APIError("No snapshot URL in response", response.status_code)
        return str(snapshot_url)
