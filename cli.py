import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
import typer

from rank_engine import RankError, compute_rank

cli = typer.Typer(help="Command-line helpers for the Bodhak content backend.")
DEFAULT_SCHEME = "http"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_SESSION_FILE = Path.home() / ".bodhak_cli" / "session.json"
TREE_INDENT = "  "


class Kind(str, Enum):
    subject = "subject"
    topic = "topic"
    article = "article"


ADMIN_PATHS = {
    Kind.subject: "/api/admin/subjects",
    Kind.topic: "/api/admin/topics",
    Kind.article: "/api/admin/articles",
}

USERNAME_OPTION = typer.Option(None, "-u", "--username", help="Admin username.")
PASSWORD_OPTION = typer.Option(None, "-p", "--password", help="Admin password.")


def _resolve_base_url(base_url: str | None, scheme: str, host: str, port: int) -> str:
    if base_url:
        return base_url.rstrip("/")
    return f"{scheme}://{host}:{port}"


def _ensure_session_dir(session_file: Path) -> None:
    session_file.parent.mkdir(parents=True, exist_ok=True)


def _load_session(session_file: Path) -> dict[str, Any] | None:
    if not session_file.exists():
        return None
    try:
        with session_file.open() as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            return None
        if "access_token" not in data:
            return None
        return data
    except (OSError, json.JSONDecodeError):
        return None


def _save_session(session_file: Path, username: str, tokens: dict[str, Any]) -> None:
    _ensure_session_dir(session_file)
    payload = {
        "username": username,
        "access_token": tokens["access_token"],
        "refresh_token": tokens.get("refresh_token"),
    }
    with session_file.open("w") as handle:
        json.dump(payload, handle)


def _clear_session(session_file: Path) -> bool:
    if session_file.exists():
        session_file.unlink()
        return True
    return False


def _handle_http_error(error: httpx.HTTPStatusError) -> None:
    response = error.response
    try:
        message = response.json().get("detail") or response.text
    except ValueError:
        message = response.text or response.reason_phrase
    typer.secho(f"Request failed ({response.status_code}): {str(message).strip()}", fg="red")
    raise typer.Exit(code=1)


async def _fetch_tokens(ctx: typer.Context, username: str, password: str) -> dict[str, Any]:
    async with httpx.AsyncClient(base_url=ctx.obj["base_url"]) as client:
        response = await client.post("/token", data={"username": username, "password": password})
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            _handle_http_error(exc)
        return response.json()


async def _resolve_access_token(
    ctx: typer.Context, username: str | None, password: str | None
) -> str:
    if username:
        if password is None:
            raise typer.Exit(code=1)
        tokens = await _fetch_tokens(ctx, username, password)
        return tokens["access_token"]
    session = _load_session(ctx.obj["session_file"])
    if session and session.get("access_token"):
        return session["access_token"]
    typer.secho("Log in or provide --username/--password", fg="red")
    raise typer.Exit(code=1)


def _token_from_credentials(ctx: typer.Context, username: str | None, password: str | None) -> str:
    if username and password is None:
        password = typer.prompt("Password", hide_input=True)
    return asyncio.run(_resolve_access_token(ctx, username, password))


async def _get_json(client: httpx.AsyncClient, path: str) -> Any:
    response = await client.get(path)
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        _handle_http_error(exc)
    return response.json()


async def _fetch_tree(ctx: typer.Context) -> list[dict[str, Any]]:
    async with httpx.AsyncClient(base_url=ctx.obj["base_url"]) as client:
        subjects = await _get_json(client, "/api/subjects")
        for subject in subjects:
            subject["topics"] = await _get_json(client, f"/api/subjects/{subject['id']}/topics")
            for topic in subject["topics"]:
                topic["articles"] = await _get_json(client, f"/api/topics/{topic['id']}/articles")
    return subjects


async def _perform_action_request(
    ctx: typer.Context,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
    access_token: str | None = None,
) -> dict[str, Any]:
    headers: dict[str, str] = {}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    async with httpx.AsyncClient(base_url=ctx.obj["base_url"]) as client:
        response = await client.request(method, path, json=payload, headers=headers)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            _handle_http_error(exc)
        return response.json()


def _format_line(item: dict[str, Any]) -> str:
    rank = typer.style(item.get("rank", "?"), fg="bright_black")
    return f"[{item.get('id')}] {item.get('title') or 'Untitled'} {rank}"


def _print_tree(subjects: list[dict[str, Any]]) -> None:
    if not subjects:
        typer.secho("No subjects yet", fg="bright_black")
        return
    for subject in subjects:
        typer.secho(_format_line(subject), fg="cyan", bold=True)
        for topic in subject.get("topics", []):
            typer.echo(f"{TREE_INDENT}{_format_line(topic)}")
            for article in topic.get("articles", []):
                typer.echo(f"{TREE_INDENT * 2}{_format_line(article)}")


def _show_tree(ctx: typer.Context) -> None:
    _print_tree(asyncio.run(_fetch_tree(ctx)))


def _find_siblings(tree: list[dict[str, Any]], kind: Kind, item_id: int) -> tuple[list[dict[str, Any]], int | None]:
    """Return the ordered list holding ``item_id`` and the id of its parent."""
    if kind is Kind.subject:
        if any(subject["id"] == item_id for subject in tree):
            return tree, None
    for subject in tree:
        topics = subject.get("topics", [])
        if kind is Kind.topic and any(topic["id"] == item_id for topic in topics):
            return topics, subject["id"]
        for topic in topics:
            articles = topic.get("articles", [])
            if kind is Kind.article and any(article["id"] == item_id for article in articles):
                return articles, topic["id"]
    raise ValueError(f"{kind.value.capitalize()} {item_id} not found")


def _neighbour_ranks(
    siblings: list[dict[str, Any]],
    item_id: int,
    after_id: int | None = None,
    before_id: int | None = None,
    first: bool = False,
    last: bool = False,
) -> tuple[str | None, str | None]:
    """
    Resolve a move target to ``(after_rank, before_rank)``.

    ``siblings`` is the current list in rank order; the moved item itself is
    ignored when looking for neighbours.
    """
    chosen = [after_id is not None, before_id is not None, first, last]
    if sum(chosen) != 1:
        raise ValueError("Use exactly one of --after, --before, --first, --last")
    others = [sibling for sibling in siblings if sibling["id"] != item_id]
    ids = [sibling["id"] for sibling in others]
    if first:
        return None, others[0]["rank"] if others else None
    if last:
        return others[-1]["rank"] if others else None, None
    anchor_id = after_id if after_id is not None else before_id
    if anchor_id not in ids:
        raise ValueError(f"Item {anchor_id} is not a sibling of {item_id}")
    index = ids.index(anchor_id)
    if after_id is not None:
        following = others[index + 1]["rank"] if index + 1 < len(others) else None
        return others[index]["rank"], following
    preceding = others[index - 1]["rank"] if index > 0 else None
    return preceding, others[index]["rank"]


def _position_payload(after_rank: str | None, before_rank: str | None) -> dict[str, str]:
    payload = {}
    if after_rank:
        payload["afterRank"] = after_rank
    if before_rank:
        payload["beforeRank"] = before_rank
    return payload


@cli.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    host: str = typer.Option(DEFAULT_HOST, help="Server host."),
    port: int = typer.Option(DEFAULT_PORT, help="Server port."),
    scheme: str = typer.Option(DEFAULT_SCHEME, help="Protocol scheme."),
    base_url: str | None = typer.Option(None, help="Full base URL (overrides host/port)."),
    session_file: Path = typer.Option(DEFAULT_SESSION_FILE, help="Session file path."),
) -> None:
    if ctx.obj is None:
        ctx.obj = {}
    ctx.obj["base_url"] = _resolve_base_url(base_url, scheme, host, port)
    ctx.obj["session_file"] = session_file.expanduser()
    if ctx.invoked_subcommand is None:
        _show_tree(ctx)


@cli.command()
def login(
    ctx: typer.Context,
    username: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    store: bool = typer.Option(True, "--store/--no-store", help="Persist the session for later commands."),
) -> None:
    tokens = asyncio.run(_fetch_tokens(ctx, username, password))
    typer.secho(f"Logged in as {username}", fg="green")
    if store:
        _save_session(ctx.obj["session_file"], username, tokens)
        typer.secho(f"Session persisted at {ctx.obj['session_file']}", fg="green")


@cli.command()
def logout(ctx: typer.Context) -> None:
    if _clear_session(ctx.obj["session_file"]):
        typer.secho("Session cleared", fg="green")
    else:
        typer.echo("No session to clear")


@cli.command()
def session(ctx: typer.Context) -> None:
    session_data = _load_session(ctx.obj["session_file"])
    if session_data:
        typer.echo(f"Logged in as {session_data.get('username')} using {ctx.obj['base_url']}")
    else:
        typer.echo("Not logged in")


@cli.command()
def tree(ctx: typer.Context) -> None:
    """Print subjects, topics and articles in rank order."""
    _show_tree(ctx)


@cli.command("add-subject")
def add_subject(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Subject title."),
    after_rank: str | None = typer.Option(None, help="Rank of the subject to follow."),
    before_rank: str | None = typer.Option(None, help="Rank of the subject to precede."),
    username: str | None = USERNAME_OPTION,
    password: str | None = PASSWORD_OPTION,
) -> None:
    access_token = _token_from_credentials(ctx, username, password)
    payload = {"title": title, **_position_payload(after_rank, before_rank)}
    result = asyncio.run(
        _perform_action_request(ctx, "POST", ADMIN_PATHS[Kind.subject], payload, access_token)
    )
    typer.secho(f"Subject {result['id']} created at {result['rank']}", fg="green")


@cli.command("add-topic")
def add_topic(
    ctx: typer.Context,
    subject_id: int = typer.Argument(..., help="Owning subject id."),
    title: str = typer.Argument(..., help="Topic title."),
    after_rank: str | None = typer.Option(None, help="Rank of the topic to follow."),
    before_rank: str | None = typer.Option(None, help="Rank of the topic to precede."),
    username: str | None = USERNAME_OPTION,
    password: str | None = PASSWORD_OPTION,
) -> None:
    access_token = _token_from_credentials(ctx, username, password)
    payload = {"title": title, "subjectId": subject_id, **_position_payload(after_rank, before_rank)}
    result = asyncio.run(_perform_action_request(ctx, "POST", ADMIN_PATHS[Kind.topic], payload, access_token))
    typer.secho(f"Topic {result['id']} created at {result['rank']}", fg="green")


@cli.command("add-article")
def add_article(
    ctx: typer.Context,
    topic_id: int = typer.Argument(..., help="Owning topic id."),
    title: str = typer.Argument(..., help="Article title."),
    content_file: Path = typer.Option(..., "--file", "-f", exists=True, dir_okay=False, help="Article body."),
    after_rank: str | None = typer.Option(None, help="Rank of the article to follow."),
    before_rank: str | None = typer.Option(None, help="Rank of the article to precede."),
    username: str | None = USERNAME_OPTION,
    password: str | None = PASSWORD_OPTION,
) -> None:
    access_token = _token_from_credentials(ctx, username, password)
    payload = {
        "title": title,
        "topicId": topic_id,
        "content": content_file.read_text(encoding="utf-8"),
        **_position_payload(after_rank, before_rank),
    }
    result = asyncio.run(
        _perform_action_request(ctx, "POST", ADMIN_PATHS[Kind.article], payload, access_token)
    )
    typer.secho(f"Article {result['id']} stored at {result['filePath']}", fg="green")


@cli.command()
def move(
    ctx: typer.Context,
    kind: Kind = typer.Argument(..., help="What to move."),
    item_id: int = typer.Argument(..., help="Id of the item to move."),
    after: int | None = typer.Option(None, "--after", help="Place right after this sibling."),
    before: int | None = typer.Option(None, "--before", help="Place right before this sibling."),
    first: bool = typer.Option(False, "--first", help="Move to the top of the list."),
    last: bool = typer.Option(False, "--last", help="Move to the end of the list."),
    username: str | None = USERNAME_OPTION,
    password: str | None = PASSWORD_OPTION,
) -> None:
    access_token = _token_from_credentials(ctx, username, password)
    current_tree = asyncio.run(_fetch_tree(ctx))
    try:
        siblings, _parent_id = _find_siblings(current_tree, kind, item_id)
        after_rank, before_rank = _neighbour_ranks(siblings, item_id, after, before, first, last)
    except ValueError as exc:
        typer.secho(str(exc), fg="red")
        raise typer.Exit(code=1)
    payload = {"id": item_id, **_position_payload(after_rank, before_rank)}
    result = asyncio.run(
        _perform_action_request(ctx, "POST", f"{ADMIN_PATHS[kind]}/reorder", payload, access_token)
    )
    typer.secho(f"{kind.value.capitalize()} {item_id} moved to {result['newRank']}", fg="green")


@cli.command()
def rebalance(
    ctx: typer.Context,
    kind: Kind = typer.Argument(..., help="Which list to respace."),
    scope_id: int | None = typer.Argument(None, help="Subject id for topics, topic id for articles."),
    username: str | None = USERNAME_OPTION,
    password: str | None = PASSWORD_OPTION,
) -> None:
    if kind is Kind.subject:
        path = "/api/admin/subjects/rebalance"
    elif scope_id is None:
        typer.secho(f"Rebalancing {kind.value}s needs the id of their parent", fg="red")
        raise typer.Exit(code=1)
    elif kind is Kind.topic:
        path = f"/api/admin/subjects/{scope_id}/topics/rebalance"
    else:
        path = f"/api/admin/topics/{scope_id}/articles/rebalance"
    access_token = _token_from_credentials(ctx, username, password)
    result = asyncio.run(_perform_action_request(ctx, "POST", path, None, access_token))
    typer.secho(f"{result['count']} {kind.value}s respaced into bucket {result['bucket']}", fg="green")


@cli.command()
def delete(
    ctx: typer.Context,
    kind: Kind = typer.Argument(..., help="What to delete."),
    item_id: int = typer.Argument(..., help="Id of the item to delete."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    username: str | None = USERNAME_OPTION,
    password: str | None = PASSWORD_OPTION,
) -> None:
    if not yes:
        typer.confirm(f"Delete {kind.value} {item_id} and everything under it?", abort=True)
    access_token = _token_from_credentials(ctx, username, password)
    asyncio.run(_perform_action_request(ctx, "DELETE", f"{ADMIN_PATHS[kind]}/{item_id}", None, access_token))
    typer.secho(f"{kind.value.capitalize()} {item_id} deleted", fg="green")


@cli.command()
def rank(
    after: str | None = typer.Option(None, "--after", help="Rank of the preceding item."),
    before: str | None = typer.Option(None, "--before", help="Rank of the following item."),
) -> None:
    """Compute a rank locally without contacting the server."""
    try:
        typer.echo(compute_rank(before=before, after=after))
    except RankError as exc:
        typer.secho(str(exc), fg="red")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
