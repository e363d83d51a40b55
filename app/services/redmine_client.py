"""Redmine REST API client wrapper"""
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from app.config import settings

logger = logging.getLogger(__name__)


class RedmineError(Exception):
    """Raised when the Redmine API returns an error response."""

    def __init__(self, message: str, response_code: Optional[int] = None):
        super().__init__(message)
        self.response_code = response_code


class AccessError(RedmineError):
    """Raised when the server rejects the credential we connect with."""


class RedmineClient:
    """Wrapper for Redmine API operations"""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize Redmine client"""
        self.url = url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.remote_timeout_seconds
        self.max_attempts = max_attempts or settings.remote_max_attempts
        self.session = session or requests.Session()
        self.session.headers["X-Redmine-API-Key"] = api_key
        self.session.headers.setdefault("Accept", "application/json")

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Best-effort retry predicate for transient Redmine failures."""
        if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
            return True
        rc = getattr(exc, "response_code", None)
        if rc in (429, 500, 502, 503, 504):
            return True
        # If we can't classify, don't retry to avoid hiding real issues.
        return False

    def _with_retries(self, fn, *, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= self.max_attempts or not self._should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = f"{self.url}/{path.lstrip('/')}"

        def _run() -> requests.Response:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
            if response.status_code in (401, 403):
                raise AccessError(
                    f"Redmine {method} {path} rejected credentials", response.status_code
                )
            if response.status_code >= 400:
                raise RedmineError(
                    f"Redmine {method} {path} failed with {response.status_code}: {response.text[:200]}",
                    response.status_code,
                )
            return response

        return self._with_retries(_run)

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._request("GET", path, params=params)
        return response.json() if response.content else {}

    def _get_all(self, path: str, key: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect every page of an offset-paginated collection."""
        params = dict(params or {})
        params.setdefault("limit", 100)
        offset = 0
        items: List[Dict[str, Any]] = []
        while True:
            page = self._get_json(path, {**params, "offset": offset})
            batch = page.get(key) or []
            items.extend(batch)
            total = page.get("total_count")
            if not batch or total is None or len(items) >= int(total):
                return items
            offset += int(page.get("limit") or len(batch))

    # Issues

    def list_issues(self, filters: Dict[str, Any], offset: int = 0) -> Dict[str, Any]:
        """Fetch one page of issues. Returns {issues, total_count, limit}."""
        params = dict(filters)
        params["offset"] = offset
        page = self._get_json("issues.json", params)
        return {
            "issues": page.get("issues") or [],
            "total_count": int(page.get("total_count") or 0),
            "limit": int(page.get("limit") or len(page.get("issues") or [])),
        }

    def get_issue(self, issue_id: int, include: Optional[str] = None) -> Dict[str, Any]:
        """Get a specific issue, optionally with journals/attachments included"""
        params = {"include": include} if include else None
        return self._get_json(f"issues/{int(issue_id)}.json", params)["issue"]

    def create_issue(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new issue"""
        try:
            response = self._request("POST", "issues.json", json_body={"issue": attributes})
            issue = response.json()["issue"]
            logger.info(f"Created issue #{issue['id']} on {self.url}")
            return issue
        except Exception as e:
            logger.error(f"Failed to create issue on {self.url}: {e}")
            raise

    def update_issue(self, issue_id: int, attributes: Dict[str, Any]) -> None:
        """Update an existing issue (Redmine answers with an empty body)"""
        try:
            self._request("PUT", f"issues/{int(issue_id)}.json", json_body={"issue": attributes})
            logger.info(f"Updated issue #{issue_id} on {self.url}")
        except Exception as e:
            logger.error(f"Failed to update issue #{issue_id} on {self.url}: {e}")
            raise

    # Users

    def get_user(self, user_id: int) -> Dict[str, Any]:
        return self._get_json(f"users/{int(user_id)}.json")["user"]

    def get_current_user(self) -> Dict[str, Any]:
        """Return the account behind the api key; raise AccessError if there is none."""
        try:
            data = self._get_json("users/current.json")
        except RedmineError as e:
            raise AccessError("Unauthorized", getattr(e, "response_code", None) or 403) from e
        if not data.get("user"):
            raise AccessError("Unauthorized", 403)
        return data["user"]

    # Attachments

    def download_attachment(self, attachment_id: int) -> bytes:
        response = self._request("GET", f"attachments/download/{int(attachment_id)}")
        return response.content

    def upload_attachment(self, content: bytes) -> str:
        """Upload raw bytes; returns the token used to attach them to an issue."""
        response = self._request(
            "POST",
            "uploads.json",
            data=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        return response.json()["upload"]["token"]

    def attach_to_issue(
        self, issue_id: int, token: str, filename: str, description: Optional[str] = None
    ) -> None:
        upload = {"token": token, "filename": filename, "description": description or ""}
        self.update_issue(issue_id, {"uploads": [upload]})

    # Catalog

    def list_projects(self) -> List[Dict[str, Any]]:
        return self._get_all("projects.json", "projects")

    def list_trackers(self) -> List[Dict[str, Any]]:
        return self._get_json("trackers.json").get("trackers") or []

    def list_statuses(self) -> List[Dict[str, Any]]:
        return self._get_json("issue_statuses.json").get("issue_statuses") or []

    def list_priorities(self) -> List[Dict[str, Any]]:
        return self._get_json("enumerations/issue_priorities.json").get("issue_priorities") or []

    def list_versions(self, project_id: int) -> List[Dict[str, Any]]:
        return self._get_json(f"projects/{int(project_id)}/versions.json").get("versions") or []
