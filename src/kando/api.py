"""Vibe Kanban REST client.

Thin typed wrapper over the service's JSON API. Every endpoint answers
with an envelope ``{"success": bool, "data": ..., "message": ...}``; any
non-2xx status, unsuccessful envelope, or transport problem surfaces as
``VKApiError`` with the method and path in the message.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.parse import quote

import requests
from pydantic import BaseModel, ValidationError

from .config import VK_REQUEST_TIMEOUT
from .models import (
    CreateTaskAttemptPayload,
    CreateTaskPayload,
    UpdateTaskPayload,
    VKGitBranch,
    VKProject,
    VKTask,
    VKTaskAttempt,
    VKTaskWithAttemptStatus,
)

logger = logging.getLogger(__name__)


class VKApiError(RuntimeError):
    """Raised for any failed call to the Vibe Kanban service."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def normalize_base_url(url: str) -> str:
    return (url or "").strip().rstrip("/")


def _q(value: str) -> str:
    return quote(value, safe="")


class VKApiClient:
    """Synchronous client; callers on the event loop wrap it in a thread."""

    def __init__(self, base_url: str, timeout: float = VK_REQUEST_TIMEOUT) -> None:
        self._base_url = normalize_base_url(base_url)
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    @property
    def base_url(self) -> str:
        return self._base_url

    def set_base_url(self, url: str) -> None:
        self._base_url = normalize_base_url(url)

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, body: Optional[BaseModel] = None) -> Any:
        url = f"{self._base_url}{path}"
        kwargs: dict = {"timeout": self.timeout}
        if body is not None:
            kwargs["json"] = body.model_dump(mode="json", exclude_none=True)

        try:
            resp = self._session.request(method, url, **kwargs)
        except requests.Timeout as e:
            raise VKApiError(
                f"{method} {path} failed: Request timeout after {self.timeout}s"
            ) from e
        except requests.RequestException as e:
            raise VKApiError(f"{method} {path} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code < 200 or resp.status_code >= 300:
            message = ""
            if isinstance(data, dict):
                message = data.get("message") or ""
            raise VKApiError(
                f"{method} {path} failed: {message or f'HTTP {resp.status_code}'}",
                status_code=resp.status_code,
            )

        if not isinstance(data, dict) or not data.get("success"):
            message = data.get("message") if isinstance(data, dict) else None
            raise VKApiError(
                f"{method} {path} failed: {message or 'API request failed'}",
                status_code=resp.status_code,
            )

        return data.get("data")

    def _parse(self, model: type[BaseModel], payload: Any, method: str, path: str):
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise VKApiError(f"{method} {path} failed: unexpected response: {e}") from e

    def _parse_list(self, model: type[BaseModel], payload: Any, method: str, path: str) -> list:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise VKApiError(f"{method} {path} failed: expected a list")
        return [self._parse(model, item, method, path) for item in payload]

    # --- Connection ---

    def test_connection(self) -> bool:
        try:
            self.get_projects()
            return True
        except VKApiError as e:
            logger.debug("Connection test failed: %s", e)
            return False

    # --- Projects ---

    def get_projects(self) -> list[VKProject]:
        path = "/api/projects"
        return self._parse_list(VKProject, self._request("GET", path), "GET", path)

    def get_project(self, project_id: str) -> VKProject:
        path = f"/api/projects/{_q(project_id)}"
        return self._parse(VKProject, self._request("GET", path), "GET", path)

    def get_project_branches(self, project_id: str) -> list[VKGitBranch]:
        path = f"/api/projects/{_q(project_id)}/branches"
        return self._parse_list(VKGitBranch, self._request("GET", path), "GET", path)

    # --- Tasks ---

    def get_tasks(self, project_id: str) -> list[VKTaskWithAttemptStatus]:
        path = f"/api/tasks?project_id={_q(project_id)}"
        return self._parse_list(
            VKTaskWithAttemptStatus, self._request("GET", path), "GET", path
        )

    def get_task(self, task_id: str) -> VKTask:
        path = f"/api/tasks/{_q(task_id)}"
        return self._parse(VKTask, self._request("GET", path), "GET", path)

    def create_task(self, payload: CreateTaskPayload) -> VKTask:
        path = "/api/tasks"
        return self._parse(VKTask, self._request("POST", path, payload), "POST", path)

    def update_task(self, task_id: str, payload: UpdateTaskPayload) -> VKTask:
        path = f"/api/tasks/{_q(task_id)}"
        return self._parse(VKTask, self._request("PUT", path, payload), "PUT", path)

    # --- Task attempts ---

    def create_task_attempt(self, payload: CreateTaskAttemptPayload) -> VKTaskAttempt:
        path = "/api/task-attempts"
        return self._parse(
            VKTaskAttempt, self._request("POST", path, payload), "POST", path
        )

    def get_task_attempts(self, task_id: str) -> list[VKTaskAttempt]:
        path = f"/api/task-attempts?task_id={_q(task_id)}"
        return self._parse_list(VKTaskAttempt, self._request("GET", path), "GET", path)

    def get_task_attempt(self, attempt_id: str) -> VKTaskAttempt:
        path = f"/api/task-attempts/{_q(attempt_id)}"
        return self._parse(VKTaskAttempt, self._request("GET", path), "GET", path)

    # --- Executor profiles ---

    def get_profiles(self) -> dict:
        """Executor profiles; the endpoint wraps them as a JSON string in ``content``."""
        path = "/api/profiles"
        data = self._request("GET", path)
        try:
            return json.loads((data or {}).get("content") or "{}")
        except (json.JSONDecodeError, TypeError, AttributeError) as e:
            raise VKApiError(f"GET {path} failed: invalid profiles document") from e
