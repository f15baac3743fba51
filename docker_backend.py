"""
docker_backend.py

Thin adapter over the Docker Engine API used by docker-cron job loops.
Results are returned as values; only the startup connection raises.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import docker
import requests
from docker.errors import DockerException

WAIT_SUCCESS = "success"
WAIT_FAILED_MESSAGE = "failed_message"
WAIT_FAILED_STATUS = "failed_status"
WAIT_BACKEND_ERROR = "backend_error"
VALID_WAIT_KINDS = {WAIT_SUCCESS, WAIT_FAILED_MESSAGE, WAIT_FAILED_STATUS, WAIT_BACKEND_ERROR}

# requests.RequestException covers connection loss; ValueError covers undecodable bodies.
_CALL_ERRORS = (DockerException, requests.exceptions.RequestException, ValueError)


class BackendUnavailableError(Exception):
    """The Docker daemon could not be reached at startup."""


@dataclass(frozen=True)
class StartResult:
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class WaitResult:
    kind: str
    status_code: Optional[int] = None
    message: str = ""
    error: Optional[str] = None


def classify_wait_response(response: Any) -> Optional[WaitResult]:
    """Map a container wait response body onto a WaitResult.

    ``None`` means the daemon answered without a usable result.
    """
    if not isinstance(response, dict) or "StatusCode" not in response:
        return None
    status_code = response.get("StatusCode")
    if not isinstance(status_code, int):
        return WaitResult(kind=WAIT_BACKEND_ERROR, error=f"Unexpected StatusCode {status_code!r}")
    if status_code == 0:
        return WaitResult(kind=WAIT_SUCCESS, status_code=0)

    error = response.get("Error") or {}
    message = error.get("Message") if isinstance(error, dict) else None
    if isinstance(message, str) and message:
        return WaitResult(kind=WAIT_FAILED_MESSAGE, status_code=status_code, message=message)
    return WaitResult(kind=WAIT_FAILED_STATUS, status_code=status_code)


class DockerBackend:
    """Starts named containers and waits for them to exit.

    A single client is shared by every job thread; docker-py's connection
    pool handles concurrent requests.
    """

    def __init__(self, client: docker.DockerClient):
        self._client = client

    @classmethod
    def connect(cls, base_url: Optional[str] = None, timeout: int = 60) -> "DockerBackend":
        try:
            if base_url:
                client = docker.DockerClient(base_url=base_url, timeout=timeout)
            else:
                client = docker.from_env(timeout=timeout)
        except _CALL_ERRORS as exc:
            raise BackendUnavailableError(f"Error: Could not create Docker client: {exc}") from exc
        backend = cls(client)
        backend.ping()
        return backend

    def ping(self) -> None:
        try:
            self._client.ping()
        except _CALL_ERRORS as exc:
            raise BackendUnavailableError(f"Error: Docker daemon is not reachable: {exc}") from exc

    def start(self, container: str) -> StartResult:
        try:
            self._client.api.start(container)
        except _CALL_ERRORS as exc:
            return StartResult(ok=False, error=str(exc))
        return StartResult(ok=True)

    def wait(self, container: str) -> Optional[WaitResult]:
        try:
            response = self._client.api.wait(container)
        except _CALL_ERRORS as exc:
            return WaitResult(kind=WAIT_BACKEND_ERROR, error=str(exc))
        return classify_wait_response(response)

    def close(self) -> None:
        self._client.close()
