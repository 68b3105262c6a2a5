from __future__ import annotations

import base64
import logging
import os
from typing import Any

import httpx

logger = logging.getLogger(__name__)

GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com")
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN", "")
GITHUB_REPO_OWNER = os.environ.get("GITHUB_REPO_OWNER", "")
GITHUB_REPO_NAME = os.environ.get("GITHUB_REPO_NAME", "")
GITHUB_REPO_BRANCH = os.environ.get("GITHUB_REPO_BRANCH", "")
GITHUB_API_VERSION = "2022-11-28"
RAW_CONTENT_URL = "https://raw.githubusercontent.com"
DEFAULT_RAW_BRANCH = "master"
REQUEST_TIMEOUT_SECONDS = 15.0


class ContentStoreError(RuntimeError):
    def __init__(self, action: str, status_code: int, body: str) -> None:
        super().__init__(f"Failed to {action} on GitHub: {status_code} - {body}")
        self.action = action
        self.status_code = status_code
        self.body = body


def raw_file_url(file_path: str) -> str:
    if not (GITHUB_REPO_OWNER and GITHUB_REPO_NAME and file_path):
        return file_path
    branch = GITHUB_REPO_BRANCH or DEFAULT_RAW_BRANCH
    path = file_path.lstrip("/")
    return f"{RAW_CONTENT_URL}/{GITHUB_REPO_OWNER}/{GITHUB_REPO_NAME}/refs/heads/{branch}/{path}"


class GitHubContentStore:
    """
    Thin wrapper around the GitHub contents API for article bodies.

    Every write is a commit on the configured repository; callers supply the
    commit message. Errors are raised as ``ContentStoreError``.
    """

    def __init__(
        self,
        owner: str | None = None,
        repo: str | None = None,
        token: str | None = None,
        branch: str | None = None,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.owner = owner if owner is not None else GITHUB_REPO_OWNER
        self.repo = repo if repo is not None else GITHUB_REPO_NAME
        self.token = token if token is not None else GITHUB_TOKEN
        self.branch = branch if branch is not None else GITHUB_REPO_BRANCH
        self._client = httpx.AsyncClient(
            base_url=(api_url or GITHUB_API_URL).rstrip("/"),
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    def is_configured(self) -> bool:
        return bool(self.owner and self.repo and self.token)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubContentStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _contents_path(self, file_path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{file_path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self.token}",
            "Accept": "application/vnd.github.v3+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    def _write_body(self, message: str, **fields: str) -> dict[str, str]:
        body = {"message": message, **fields}
        if self.branch:
            body["branch"] = self.branch
        return body

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        logger.warning("GitHub %s failed with %s: %s", action, response.status_code, response.text)
        raise ContentStoreError(action, response.status_code, response.text)

    async def create_file(self, file_path: str, content: str, message: str) -> dict[str, Any]:
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        response = await self._client.put(
            self._contents_path(file_path),
            headers=self._headers(),
            json=self._write_body(message, content=encoded),
        )
        self._raise_for_status(response, "create file")
        return response.json()

    async def get_file_sha(self, file_path: str) -> str | None:
        params = {"ref": self.branch} if self.branch else None
        response = await self._client.get(
            self._contents_path(file_path),
            headers=self._headers(),
            params=params,
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "fetch file SHA")
        return response.json().get("sha")

    async def update_file(self, file_path: str, content: str, message: str, sha: str) -> dict[str, Any]:
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        response = await self._client.put(
            self._contents_path(file_path),
            headers=self._headers(),
            json=self._write_body(message, content=encoded, sha=sha),
        )
        self._raise_for_status(response, "update file")
        return response.json()

    async def delete_file(self, file_path: str, sha: str, message: str) -> None:
        response = await self._client.request(
            "DELETE",
            self._contents_path(file_path),
            headers=self._headers(),
            json=self._write_body(message, sha=sha),
        )
        self._raise_for_status(response, "delete file")
