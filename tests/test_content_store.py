import asyncio
import base64
import json

import httpx
import pytest

import content_store
from content_store import ContentStoreError, GitHubContentStore, raw_file_url


def _store(handler, branch: str = "main") -> GitHubContentStore:
    return GitHubContentStore(
        owner="bodhak",
        repo="content",
        token="secret-token",
        branch=branch,
        api_url="https://api.example.test/",
        transport=httpx.MockTransport(handler),
    )


def test_create_file_sends_encoded_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"content": {"sha": "abc"}})

    async def run() -> dict:
        async with _store(handler) as store:
            return await store.create_file("articles/sets-1.json", '{"a": 1}', "Added new article: Sets")

    result = asyncio.run(run())

    request = seen[0]
    body = json.loads(request.content)
    assert result == {"content": {"sha": "abc"}}
    assert request.method == "PUT"
    assert request.url.path == "/repos/bodhak/content/contents/articles/sets-1.json"
    assert request.headers["Authorization"] == "token secret-token"
    assert body["message"] == "Added new article: Sets"
    assert body["branch"] == "main"
    assert base64.b64decode(body["content"]).decode("utf-8") == '{"a": 1}'


def test_get_file_sha_returns_none_for_missing_file() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["ref"] == "main"
        if request.url.path.endswith("missing.json"):
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(200, json={"sha": "deadbeef"})

    async def run() -> tuple[str | None, str | None]:
        async with _store(handler) as store:
            return await store.get_file_sha("articles/missing.json"), await store.get_file_sha("articles/here.json")

    assert asyncio.run(run()) == (None, "deadbeef")


def test_update_and_delete_send_sha() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    async def run() -> None:
        async with _store(handler, branch="") as store:
            await store.update_file("articles/a.json", "new", "Updated article: A", "sha1")
            await store.delete_file("articles/a.json", "sha2", "Deleted article")

    asyncio.run(run())

    update, delete = seen
    assert update.method == "PUT"
    assert json.loads(update.content)["sha"] == "sha1"
    assert "branch" not in json.loads(update.content)
    assert delete.method == "DELETE"
    assert json.loads(delete.content) == {"message": "Deleted article", "sha": "sha2"}


def test_failed_request_raises_content_store_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, text="sha wasn't supplied")

    async def run() -> None:
        async with _store(handler) as store:
            await store.create_file("articles/a.json", "body", "Added new article: A")

    with pytest.raises(ContentStoreError) as excinfo:
        asyncio.run(run())

    assert excinfo.value.status_code == 422
    assert str(excinfo.value) == "Failed to create file on GitHub: 422 - sha wasn't supplied"


def test_is_configured_needs_owner_repo_and_token() -> None:
    assert _store(lambda request: httpx.Response(200)).is_configured()
    assert not GitHubContentStore(owner="", repo="content", token="t").is_configured()


def test_raw_file_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(content_store, "GITHUB_REPO_OWNER", "bodhak")
    monkeypatch.setattr(content_store, "GITHUB_REPO_NAME", "content")
    monkeypatch.setattr(content_store, "GITHUB_REPO_BRANCH", "")
    assert raw_file_url("articles/a.json") == (
        "https://raw.githubusercontent.com/bodhak/content/refs/heads/master/articles/a.json"
    )

    monkeypatch.setattr(content_store, "GITHUB_REPO_BRANCH", "main")
    assert raw_file_url("/articles/a.json").endswith("/refs/heads/main/articles/a.json")


def test_raw_file_url_without_repository(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(content_store, "GITHUB_REPO_OWNER", "")
    assert raw_file_url("articles/a.json") == "articles/a.json"
