import hmac
import logging
import os
import re
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, NamedTuple

import typer
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field, field_validator
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from content_store import ContentStoreError, GitHubContentStore, raw_file_url
from rank_engine import BUCKETS, MalformedRankError, Rank, compute_rank, next_bucket, spread

logger = logging.getLogger(__name__)

SECRET_KEY = os.environ.get("BODHAK_SECRET_KEY", "insecure_default_change_me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24
REFRESH_TOKEN_EXPIRE_DAYS = 7
TOKEN_ISSUER = "bodhak"
SESSION_COOKIE = "token"
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")
SECURE_COOKIES = os.environ.get("BODHAK_SECURE_COOKIE", "0") == "1"
ENFORCE_HTTPS = os.environ.get("BODHAK_ENFORCE_HTTPS", "0") == "1"
ALLOWED_HOSTS = os.environ.get("BODHAK_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")
CORS_ORIGINS = os.environ.get("BODHAK_CORS_ORIGINS", "http://localhost:5173").split(",")
LOG_LEVEL = os.environ.get("BODHAK_LOG_LEVEL", "INFO")
LOGIN_RATE_LIMIT = "10/minute"
ARTICLE_DIR = "articles"


class Scope(NamedTuple):
    table: str
    parent_column: str | None
    label: str


SUBJECTS = Scope("subjects", None, "Subject")
TOPICS = Scope("topics", "subject_id", "Topic")
ARTICLES = Scope("articles", "topic_id", "Article")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    _init_db()
    yield


app = FastAPI(title="Bodhak Content Backend", lifespan=lifespan)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

if ENFORCE_HTTPS:
    app.add_middleware(HTTPSRedirectMiddleware)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "same-origin")
        if ENFORCE_HTTPS:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response


app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": "Rate limit exceeded"},
    )


@app.exception_handler(ContentStoreError)
def content_store_error_handler(request: Request, exc: ContentStoreError):
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/token", auto_error=False)


class TitledPayload(BaseModel):
    title: str = Field(..., description="Display title.")

    @field_validator("title")
    def _normalize_title(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Title cannot be empty")
        return cleaned


class PositionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    before_rank: str | None = Field(
        None, alias="beforeRank", description="Rank of the item that will follow this one."
    )
    after_rank: str | None = Field(
        None, alias="afterRank", description="Rank of the item that will precede this one."
    )


class SubjectPayload(TitledPayload):
    pass


class SubjectCreatePayload(TitledPayload, PositionPayload):
    pass


class TopicPayload(TitledPayload):
    model_config = ConfigDict(populate_by_name=True)

    subject_id: int = Field(..., alias="subjectId", description="Owning subject.")


class TopicCreatePayload(TopicPayload, PositionPayload):
    pass


class ArticlePayload(TitledPayload):
    model_config = ConfigDict(populate_by_name=True)

    topic_id: int = Field(..., alias="topicId", description="Owning topic.")
    content: str = Field(..., min_length=1, description="Article body mirrored to the content repository.")


class ArticleCreatePayload(ArticlePayload, PositionPayload):
    pass


class ReorderPayload(PositionPayload):
    id: int = Field(..., description="Item being moved.")


class LoginPayload(BaseModel):
    username: str
    password: str


class TokenData(BaseModel):
    username: str
    typ: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshTokenForm(BaseModel):
    refresh_token: str = Field(..., description="Refresh token issued alongside the access token")


def _create_token(username: str, token_type: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": username,
        "typ": token_type,
        "role": "admin",
        "iss": TOKEN_ISSUER,
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def _create_access_token(username: str) -> str:
    return _create_token(username, "access", timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))


def _create_refresh_token(username: str) -> str:
    return _create_token(username, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))


def _verify_token(token: str, expected_type: str) -> TokenData:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], issuer=TOKEN_ISSUER)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Invalid token")
    if payload.get("typ") != expected_type:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Invalid token")
    username = payload.get("sub")
    if not username or username != ADMIN_USERNAME:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Invalid token")
    return TokenData(username=username, typ=expected_type)


def _token_from_cookie(request: Request) -> str | None:
    return request.cookies.get(SESSION_COOKIE)


def _extract_token_from_request(request: Request, token: str | None = None) -> str | None:
    if token:
        return token
    return _token_from_cookie(request)


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        secure=SECURE_COOKIES,
        max_age=int(ACCESS_TOKEN_EXPIRE_MINUTES * 60),
    )


def _delete_session_cookies(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)


def _check_credentials(username: str, password: str) -> bool:
    if not ADMIN_PASSWORD:
        return False
    username_ok = hmac.compare_digest(username.encode("utf-8"), ADMIN_USERNAME.encode("utf-8"))
    password_ok = hmac.compare_digest(password.encode("utf-8"), ADMIN_PASSWORD.encode("utf-8"))
    return username_ok and password_ok


async def get_current_admin(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
) -> TokenData:
    actual_token = _extract_token_from_request(request, token)
    if not actual_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: No token provided")
    return _verify_token(actual_token, "access")


def _token_response_for_user(username: str) -> TokenResponse:
    access_token = _create_access_token(username)
    refresh_token = _create_refresh_token(username)
    return TokenResponse(access_token=access_token, refresh_token=refresh_token)


async def get_content_store() -> AsyncIterator[GitHubContentStore]:
    async with GitHubContentStore() as store:
        yield store


def _require_store(store: GitHubContentStore) -> None:
    if not store.is_configured():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Content store is not configured")


def _db_path() -> str:
    override = getattr(app.state, "db_path", None)
    if override:
        return override
    return os.environ.get("BODHAK_DB", "bodhak.db")


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _begin(conn: sqlite3.Connection) -> None:
    # Takes the write lock up front so the neighbour read and the rank write
    # of one request cannot interleave with another writer.
    conn.execute("BEGIN IMMEDIATE")


def _ensure_subjects_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS subjects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            rank TEXT NOT NULL COLLATE BINARY,
            UNIQUE(rank)
        )
        """
    )


def _ensure_topics_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS topics (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subject_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            rank TEXT NOT NULL COLLATE BINARY,
            UNIQUE(subject_id, rank),
            FOREIGN KEY(subject_id) REFERENCES subjects(id) ON DELETE CASCADE
        )
        """
    )


def _ensure_articles_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            topic_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            file_path TEXT NOT NULL UNIQUE,
            rank TEXT NOT NULL COLLATE BINARY,
            UNIQUE(topic_id, rank),
            FOREIGN KEY(topic_id) REFERENCES topics(id) ON DELETE CASCADE
        )
        """
    )


def _init_db() -> None:
    with _connect() as conn:
        _ensure_subjects_table(conn)
        _ensure_topics_table(conn)
        _ensure_articles_table(conn)
        conn.commit()


def _scope_filter(scope: Scope, parent_id: int | None, exclude_id: int | None = None) -> tuple[str, list]:
    filters = ["1 = 1"]
    params: list = []
    if scope.parent_column is not None:
        filters.append(f"{scope.parent_column} = ?")
        params.append(parent_id)
    if exclude_id is not None:
        filters.append("id != ?")
        params.append(exclude_id)
    return " AND ".join(filters), params


def _require_row(conn: sqlite3.Connection, scope: Scope, item_id: int) -> sqlite3.Row:
    row = conn.execute(f"SELECT * FROM {scope.table} WHERE id = ?", (item_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"{scope.label} not found")
    return row


def _tail_rank(conn: sqlite3.Connection, scope: Scope, parent_id: int | None) -> str | None:
    clause, params = _scope_filter(scope, parent_id)
    row = conn.execute(
        f"SELECT rank FROM {scope.table} WHERE {clause} ORDER BY rank DESC LIMIT 1",
        params,
    ).fetchone()
    return row["rank"] if row else None


def _append_rank(conn: sqlite3.Connection, scope: Scope, parent_id: int | None) -> str:
    tail = _tail_rank(conn, scope, parent_id)
    try:
        return compute_rank(after=tail)
    except MalformedRankError as exc:
        logger.error("Stored %s rank is malformed: %s", scope.label.lower(), exc)
        raise HTTPException(status_code=500, detail=f"Stored rank is malformed: {tail!r}")


def _parse_position(before_rank: str | None, after_rank: str | None) -> tuple[Rank | None, Rank | None]:
    try:
        lower = Rank.parse(after_rank) if after_rank else None
        upper = Rank.parse(before_rank) if before_rank else None
    except MalformedRankError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if lower is not None and upper is not None and not lower < upper:
        raise HTTPException(status_code=400, detail="Invalid reorder request")
    return lower, upper


def _rank_for_position(
    conn: sqlite3.Connection,
    scope: Scope,
    parent_id: int | None,
    before_rank: str | None,
    after_rank: str | None,
    item_id: int | None = None,
) -> str:
    """
    Check a requested position against the current list and compute its rank.

    Supplied neighbours must belong to other items of the same list and must
    be adjacent once the moved item is left out; a missing bound is open-ended.
    """
    lower, upper = _parse_position(before_rank, after_rank)
    clause, params = _scope_filter(scope, parent_id, exclude_id=item_id)
    for bound in (lower, upper):
        if bound is None:
            continue
        found = conn.execute(
            f"SELECT 1 FROM {scope.table} WHERE {clause} AND rank = ?",
            (*params, str(bound)),
        ).fetchone()
        if not found:
            logger.warning("%s position references unknown rank %s", scope.label, bound)
            raise HTTPException(status_code=409, detail=f"No {scope.label.lower()} holds rank {bound}; refresh and retry")

    gap_filters = [clause]
    gap_params = list(params)
    if lower is not None:
        gap_filters.append("rank > ?")
        gap_params.append(str(lower))
    if upper is not None:
        gap_filters.append("rank < ?")
        gap_params.append(str(upper))
    in_gap = conn.execute(
        f"SELECT COUNT(*) AS n FROM {scope.table} WHERE {' AND '.join(gap_filters)}",
        gap_params,
    ).fetchone()["n"]
    if in_gap:
        if lower is None and upper is None:
            raise HTTPException(status_code=400, detail="Invalid reorder request")
        logger.warning("%s position %s..%s is stale (%s items in between)", scope.label, lower, upper, in_gap)
        raise HTTPException(status_code=409, detail="Neighbours are no longer adjacent; refresh and retry")
    return compute_rank(before=before_rank, after=after_rank)


def _rank_for_new_item(
    conn: sqlite3.Connection,
    scope: Scope,
    parent_id: int | None,
    before_rank: str | None,
    after_rank: str | None,
) -> str:
    if not before_rank and not after_rank:
        return _append_rank(conn, scope, parent_id)
    return _rank_for_position(conn, scope, parent_id, before_rank, after_rank)


def _execute_ranked_write(conn: sqlite3.Connection, sql: str, params: tuple) -> sqlite3.Cursor:
    try:
        return conn.execute(sql, params)
    except sqlite3.IntegrityError as exc:
        if not _is_rank_collision(exc):
            raise
        logger.warning("Rank conflict: %s", exc)
        raise HTTPException(status_code=409, detail="Rank conflict; refresh and retry")


def _is_rank_collision(exc: sqlite3.IntegrityError) -> bool:
    message = str(exc)
    return message.startswith("UNIQUE constraint failed") and message.endswith(".rank")


def _reorder(scope: Scope, payload: ReorderPayload) -> dict:
    with _connect() as conn:
        _begin(conn)
        row = _require_row(conn, scope, payload.id)
        parent_id = row[scope.parent_column] if scope.parent_column else None
        new_rank = _rank_for_position(
            conn, scope, parent_id, payload.before_rank, payload.after_rank, item_id=payload.id
        )
        _execute_ranked_write(conn, f"UPDATE {scope.table} SET rank = ? WHERE id = ?", (new_rank, payload.id))
        conn.commit()
    logger.info("%s %s moved to rank %s", scope.label, payload.id, new_rank)
    return {"message": f"{scope.label} reordered", "newRank": new_rank}


def _rebalance(scope: Scope, parent_id: int | None) -> dict:
    with _connect() as conn:
        _begin(conn)
        clause, params = _scope_filter(scope, parent_id)
        rows = conn.execute(
            f"SELECT id, rank FROM {scope.table} WHERE {clause} ORDER BY rank ASC",
            params,
        ).fetchall()
        used = {row["rank"][:1] for row in rows}
        if all(bucket in used for bucket in BUCKETS):
            raise HTTPException(status_code=409, detail="No free bucket to rebalance into")
        target = next_bucket(rows[0]["rank"][:1]) if rows and rows[0]["rank"][:1] in BUCKETS else BUCKETS[0]
        while target in used:
            target = next_bucket(target)
        for row, rank in zip(rows, spread(len(rows), target)):
            _execute_ranked_write(conn, f"UPDATE {scope.table} SET rank = ? WHERE id = ?", (rank, row["id"]))
        conn.commit()
    logger.info("Rebalanced %s %s into bucket %s", len(rows), scope.table, target)
    return {"message": f"{scope.label}s rebalanced", "bucket": target, "count": len(rows)}


def _move_to_parent(conn: sqlite3.Connection, scope: Scope, item: sqlite3.Row, title: str, parent_id: int) -> None:
    if item[scope.parent_column] == parent_id:
        conn.execute(f"UPDATE {scope.table} SET title = ? WHERE id = ?", (title, item["id"]))
        return
    # A rank means nothing outside its own list, so a reparented item goes to the tail.
    new_rank = _append_rank(conn, scope, parent_id)
    _execute_ranked_write(
        conn,
        f"UPDATE {scope.table} SET title = ?, {scope.parent_column} = ?, rank = ? WHERE id = ?",
        (title, parent_id, new_rank, item["id"]),
    )
    logger.info("%s %s moved to parent %s at rank %s", scope.label, item["id"], parent_id, new_rank)


def _article_file_path(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "_", title, flags=re.IGNORECASE).lower()
    return f"{ARTICLE_DIR}/{slug}-{int(time.time() * 1000)}.json"


async def _delete_article_files(store: GitHubContentStore, file_paths: list[str], message: str) -> None:
    if not file_paths:
        return
    _require_store(store)
    for file_path in file_paths:
        sha = await store.get_file_sha(file_path)
        if sha:
            await store.delete_file(file_path, sha, message)


@app.get("/health", tags=["meta"])
def health() -> dict:
    return {"status": "ok"}


@app.get("/api/subjects", summary="List subjects")
def list_subjects() -> list[dict]:
    with _connect() as conn:
        rows = conn.execute("SELECT id, title, rank FROM subjects ORDER BY rank ASC").fetchall()
    return [dict(row) for row in rows]


@app.get("/api/subjects/{subject_id}/topics", summary="List topics of a subject")
def list_topics(subject_id: int) -> list[dict]:
    with _connect() as conn:
        rows = conn.execute(
            "SELECT id, subject_id, title, rank FROM topics WHERE subject_id = ? ORDER BY rank ASC",
            (subject_id,),
        ).fetchall()
    return [dict(row) for row in rows]


@app.get("/api/topics/{topic_id}/articles", summary="List articles of a topic")
def list_articles(topic_id: int) -> list[dict]:
    """
    List the articles of a topic in rank order.

    When the content repository is configured, **file_path** is returned as a
    raw URL clients can fetch the article body from.
    """
    with _connect() as conn:
        rows = conn.execute(
            "SELECT id, topic_id, title, file_path, rank FROM articles WHERE topic_id = ? ORDER BY rank ASC",
            (topic_id,),
        ).fetchall()
    articles = []
    for row in rows:
        article = dict(row)
        article["file_path"] = raw_file_url(article["file_path"])
        articles.append(article)
    return articles


@app.post("/api/admin/login", summary="Log in as admin")
@limiter.limit(LOGIN_RATE_LIMIT)
def admin_login(request: Request, credentials: LoginPayload):
    """
    Check the admin credentials and set the session cookie.
    """
    if not _check_credentials(credentials.username.strip(), credentials.password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    tokens = _token_response_for_user(ADMIN_USERNAME)
    response = JSONResponse({"message": "Login successful"})
    _set_session_cookie(response, tokens.access_token)
    return response


@app.post("/api/admin/logout", summary="Log out")
def admin_logout():
    response = JSONResponse({"message": "Logout successful"})
    _delete_session_cookies(response)
    return response


@app.post("/token", response_model=TokenResponse, summary="Exchange credentials for tokens")
@limiter.limit(LOGIN_RATE_LIMIT)
def exchange_token(request: Request, form_data: OAuth2PasswordRequestForm = Depends()):
    if not _check_credentials(form_data.username.strip(), form_data.password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return _token_response_for_user(ADMIN_USERNAME)


@app.post("/token/refresh", response_model=TokenResponse, summary="Refresh an access token")
@limiter.limit(LOGIN_RATE_LIMIT)
def refresh_access_token(request: Request, payload: RefreshTokenForm):
    token_data = _verify_token(payload.refresh_token, "refresh")
    return _token_response_for_user(token_data.username)


@app.post("/api/admin/subjects", status_code=201, summary="Create a subject")
def create_subject(payload: SubjectCreatePayload, _admin: TokenData = Depends(get_current_admin)):
    """
    Create a subject, appended at the end unless a position is given.

    - **title**: Non-empty title.
    - **beforeRank** / **afterRank**: Optional ranks of the neighbours to insert between.
    """
    with _connect() as conn:
        _begin(conn)
        rank = _rank_for_new_item(conn, SUBJECTS, None, payload.before_rank, payload.after_rank)
        cursor = _execute_ranked_write(
            conn, "INSERT INTO subjects (title, rank) VALUES (?, ?)", (payload.title, rank)
        )
        conn.commit()
    logger.info("Subject %s created at rank %s", cursor.lastrowid, rank)
    return {"message": "Subject created", "id": cursor.lastrowid, "rank": rank}


@app.put("/api/admin/subjects/{subject_id}", summary="Rename a subject")
def update_subject(subject_id: int, payload: SubjectPayload, _admin: TokenData = Depends(get_current_admin)):
    with _connect() as conn:
        result = conn.execute("UPDATE subjects SET title = ? WHERE id = ?", (payload.title, subject_id))
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Subject not found")
        conn.commit()
    return {"message": "Subject updated"}


@app.post("/api/admin/subjects/reorder", summary="Move a subject")
def reorder_subject(payload: ReorderPayload, _admin: TokenData = Depends(get_current_admin)):
    """
    Move a subject between two neighbours.

    - **id**: Subject being moved.
    - **afterRank**: Rank of the subject that will precede it, if any.
    - **beforeRank**: Rank of the subject that will follow it, if any.
    """
    return _reorder(SUBJECTS, payload)


@app.post("/api/admin/subjects/rebalance", summary="Respace subject ranks")
def rebalance_subjects(_admin: TokenData = Depends(get_current_admin)):
    return _rebalance(SUBJECTS, None)


@app.delete("/api/admin/subjects/{subject_id}", summary="Delete a subject")
async def delete_subject(
    subject_id: int,
    _admin: TokenData = Depends(get_current_admin),
    store: GitHubContentStore = Depends(get_content_store),
):
    """
    Delete a subject with its topics and articles, including the mirrored article files.
    """
    with _connect() as conn:
        _require_row(conn, SUBJECTS, subject_id)
        rows = conn.execute(
            """
            SELECT articles.file_path
            FROM articles
            JOIN topics ON topics.id = articles.topic_id
            WHERE topics.subject_id = ?
            """,
            (subject_id,),
        ).fetchall()
    await _delete_article_files(store, [row["file_path"] for row in rows], f"Deleted subject {subject_id}")
    with _connect() as conn:
        conn.execute("DELETE FROM subjects WHERE id = ?", (subject_id,))
        conn.commit()
    return {"message": "Subject deleted"}


@app.post("/api/admin/topics", status_code=201, summary="Create a topic")
def create_topic(payload: TopicCreatePayload, _admin: TokenData = Depends(get_current_admin)):
    """
    Create a topic under a subject, appended at the end unless a position is given.
    """
    with _connect() as conn:
        _begin(conn)
        _require_row(conn, SUBJECTS, payload.subject_id)
        rank = _rank_for_new_item(conn, TOPICS, payload.subject_id, payload.before_rank, payload.after_rank)
        cursor = _execute_ranked_write(
            conn,
            "INSERT INTO topics (title, subject_id, rank) VALUES (?, ?, ?)",
            (payload.title, payload.subject_id, rank),
        )
        conn.commit()
    logger.info("Topic %s created under subject %s at rank %s", cursor.lastrowid, payload.subject_id, rank)
    return {"message": "Topic created", "id": cursor.lastrowid, "rank": rank}


@app.put("/api/admin/topics/{topic_id}", summary="Update a topic")
def update_topic(topic_id: int, payload: TopicPayload, _admin: TokenData = Depends(get_current_admin)):
    """
    Rename a topic or move it to another subject, where it is appended at the end.
    """
    with _connect() as conn:
        _begin(conn)
        topic = _require_row(conn, TOPICS, topic_id)
        _require_row(conn, SUBJECTS, payload.subject_id)
        _move_to_parent(conn, TOPICS, topic, payload.title, payload.subject_id)
        conn.commit()
    return {"message": "Topic updated"}


@app.post("/api/admin/topics/reorder", summary="Move a topic within its subject")
def reorder_topic(payload: ReorderPayload, _admin: TokenData = Depends(get_current_admin)):
    return _reorder(TOPICS, payload)


@app.post("/api/admin/subjects/{subject_id}/topics/rebalance", summary="Respace topic ranks")
def rebalance_topics(subject_id: int, _admin: TokenData = Depends(get_current_admin)):
    with _connect() as conn:
        _require_row(conn, SUBJECTS, subject_id)
    return _rebalance(TOPICS, subject_id)


@app.delete("/api/admin/topics/{topic_id}", summary="Delete a topic")
async def delete_topic(
    topic_id: int,
    _admin: TokenData = Depends(get_current_admin),
    store: GitHubContentStore = Depends(get_content_store),
):
    with _connect() as conn:
        _require_row(conn, TOPICS, topic_id)
        rows = conn.execute("SELECT file_path FROM articles WHERE topic_id = ?", (topic_id,)).fetchall()
    await _delete_article_files(store, [row["file_path"] for row in rows], f"Deleted topic {topic_id}")
    with _connect() as conn:
        conn.execute("DELETE FROM topics WHERE id = ?", (topic_id,))
        conn.commit()
    return {"message": "Topic deleted"}


@app.post("/api/admin/articles", status_code=201, summary="Create an article")
async def create_article(
    payload: ArticleCreatePayload,
    _admin: TokenData = Depends(get_current_admin),
    store: GitHubContentStore = Depends(get_content_store),
):
    """
    Publish an article body to the content repository and record it.

    - **title**: Non-empty title, also used to build the file name.
    - **topicId**: Owning topic.
    - **content**: Body committed as `articles/<slug>-<millis>.json`.
    """
    _require_store(store)
    with _connect() as conn:
        _require_row(conn, TOPICS, payload.topic_id)
        # Reject a bad position before anything is committed to the content repository.
        _rank_for_new_item(conn, ARTICLES, payload.topic_id, payload.before_rank, payload.after_rank)

    file_path = _article_file_path(payload.title)
    await store.create_file(file_path, payload.content, f"Added new article: {payload.title}")
    try:
        with _connect() as conn:
            _begin(conn)
            _require_row(conn, TOPICS, payload.topic_id)
            rank = _rank_for_new_item(conn, ARTICLES, payload.topic_id, payload.before_rank, payload.after_rank)
            cursor = _execute_ranked_write(
                conn,
                "INSERT INTO articles (title, topic_id, file_path, rank) VALUES (?, ?, ?, ?)",
                (payload.title, payload.topic_id, file_path, rank),
            )
            conn.commit()
    except Exception:
        logger.warning("Discarding %s after failed insert", file_path)
        try:
            await _delete_article_files(store, [file_path], f"Discarded article: {payload.title}")
        except ContentStoreError as cleanup_exc:
            logger.error("Could not discard %s: %s", file_path, cleanup_exc)
        raise
    logger.info("Article %s created under topic %s at rank %s", cursor.lastrowid, payload.topic_id, rank)
    return {"message": "Article created", "id": cursor.lastrowid, "filePath": file_path, "rank": rank}


@app.put("/api/admin/articles/{article_id}", summary="Update an article")
async def update_article(
    article_id: int,
    payload: ArticlePayload,
    _admin: TokenData = Depends(get_current_admin),
    store: GitHubContentStore = Depends(get_content_store),
):
    """
    Commit a new article body and update its title or topic.
    """
    _require_store(store)
    with _connect() as conn:
        article = _require_row(conn, ARTICLES, article_id)
        _require_row(conn, TOPICS, payload.topic_id)

    file_sha = await store.get_file_sha(article["file_path"])
    if not file_sha:
        raise HTTPException(status_code=404, detail="GitHub file not found for article.")
    await store.update_file(article["file_path"], payload.content, f"Updated article: {payload.title}", file_sha)

    with _connect() as conn:
        _begin(conn)
        article = _require_row(conn, ARTICLES, article_id)
        _require_row(conn, TOPICS, payload.topic_id)
        _move_to_parent(conn, ARTICLES, article, payload.title, payload.topic_id)
        conn.commit()
    return {"message": "Article updated"}


@app.post("/api/admin/articles/reorder", summary="Move an article within its topic")
def reorder_article(payload: ReorderPayload, _admin: TokenData = Depends(get_current_admin)):
    return _reorder(ARTICLES, payload)


@app.post("/api/admin/topics/{topic_id}/articles/rebalance", summary="Respace article ranks")
def rebalance_articles(topic_id: int, _admin: TokenData = Depends(get_current_admin)):
    with _connect() as conn:
        _require_row(conn, TOPICS, topic_id)
    return _rebalance(ARTICLES, topic_id)


@app.delete("/api/admin/articles/{article_id}", summary="Delete an article")
async def delete_article(
    article_id: int,
    _admin: TokenData = Depends(get_current_admin),
    store: GitHubContentStore = Depends(get_content_store),
):
    """
    Remove the mirrored file, when it still exists, then the article record.
    """
    with _connect() as conn:
        article = _require_row(conn, ARTICLES, article_id)
    await _delete_article_files(store, [article["file_path"]], "Deleted article")
    with _connect() as conn:
        conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))
        conn.commit()
    return {"message": "Article deleted"}


cli = typer.Typer(invoke_without_command=True)


def _configure_db_path(db_path: Path) -> None:
    resolved_path = str(db_path)
    app.state.db_path = resolved_path
    os.environ["BODHAK_DB"] = resolved_path


def _run_server(db_path: Path, host: str, port: int, reload: bool) -> None:
    _configure_db_path(db_path)
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    import uvicorn

    uvicorn.run("main:app", host=host, port=port, reload=reload)


@cli.callback(invoke_without_command=True)
def main_cli(
    ctx: typer.Context,
    db_path: Path = typer.Option(
        Path("bodhak.db"),
        "--db-path",
        "-d",
        help="Path to the SQLite database file.",
    ),
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Server host."),
    port: int = typer.Option(8000, "--port", "-p", help="Server port."),
    reload: bool = typer.Option(
        True,
        "--reload/--no-reload",
        help="Enable uvicorn auto-reload when running locally.",
    ),
) -> None:
    if ctx.invoked_subcommand is None:
        _run_server(db_path, host, port, reload)


if __name__ == "__main__":
    cli()
