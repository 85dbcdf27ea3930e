"""In-memory FastAPI backend exposing the portal API surface for local runs and tests."""

from __future__ import annotations

import hashlib
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware

from app.mappers import has_role_level
from field_normalize import normalize
from relay.canonical_json import body_fingerprint
from relay.idempotency import is_mutating
from submission_pipeline import build_payload, validate_values

logger = logging.getLogger("portal.dev_server")

API_PREFIX = "/api"
JWT_ALGORITHM = "HS256"
TOKEN_TTL_S = 3600
_PUBLIC_PATHS = {f"{API_PREFIX}/auth/login", f"{API_PREFIX}/auth/register", "/health"}
_PUBLIC_PREFIXES = (f"{API_PREFIX}/public/",)


def _jwt_secret() -> str:
    return os.getenv("PORTAL_DEV_JWT_SECRET", "").strip() or "portal-dev-secret"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def issue_token(user: dict, secret: str | None = None) -> str:
    now = int(time.time())
    claims = {"sub": user["id"], "email": user["email"], "iat": now, "exp": now + TOKEN_TTL_S}
    return jwt.encode(claims, secret or _jwt_secret(), algorithm=JWT_ALGORITHM)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "message": message,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _validation_response(issues: list, status: int = 400) -> JSONResponse:
    body = {"ok": False, "message": issues[0]["message"] if issues else "Validation failed", "errors": issues, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _json(payload: Any, status: int = 200) -> JSONResponse:
    return JSONResponse(jsonable_encoder(payload), status_code=status)


@dataclass
class DevState:
    users: Dict[str, dict] = field(default_factory=dict)
    organizations: Dict[str, dict] = field(default_factory=dict)
    memberships: List[dict] = field(default_factory=list)
    forms: Dict[str, dict] = field(default_factory=dict)
    submissions: List[dict] = field(default_factory=list)
    posts: Dict[str, dict] = field(default_factory=dict)
    tags: Dict[str, dict] = field(default_factory=dict)
    comments: Dict[str, dict] = field(default_factory=dict)
    audit_logs: List[dict] = field(default_factory=list)
    idempotency: Dict[tuple, dict] = field(default_factory=dict)
    jobs: List[dict] = field(default_factory=list)

    def user_by_email(self, email: str) -> dict | None:
        email = (email or "").strip().lower()
        for user in self.users.values():
            if user["email"] == email:
                return user
        return None

    def membership(self, user_id: str, org_id: str) -> dict | None:
        for m in self.memberships:
            if m["userId"] == user_id and m["organizationId"] == org_id:
                return m
        return None

    def add_user(self, email: str, password: str, name: str, org_id: str | None = None, role: str = "Viewer") -> dict:
        user = {"id": _new_id(), "email": email.strip().lower(), "name": name, "password": _hash_password(password)}
        self.users[user["id"]] = user
        if org_id:
            self.memberships.append({"userId": user["id"], "organizationId": org_id, "role": role})
        return user

    def add_organization(self, name: str) -> dict:
        org = {"id": _new_id(), "name": name, "createdAt": _now_iso()}
        self.organizations[org["id"]] = org
        return org

    def audit(self, org_id: str, user_id: str | None, action: str, resource: str, resource_id: str | None) -> None:
        self.audit_logs.append(
            {
                "id": _new_id(),
                "orgId": org_id,
                "at": _now_iso(),
                "userId": user_id,
                "action": action,
                "resource": resource,
                "resourceId": resource_id,
            }
        )


def seed_state(state: DevState, admin_email: str = "admin@example.com", admin_password: str = "admin123") -> dict:
    """Create one organization with an OrgAdmin, two tags and a contact form."""
    org = state.add_organization("Acme")
    admin = state.add_user(admin_email, admin_password, "Admin", org["id"], "OrgAdmin")
    for name in ("news", "tech"):
        tag = {"id": _new_id(), "name": name, "organizationId": org["id"]}
        state.tags[tag["id"]] = tag
    form = {
        "id": _new_id(),
        "organizationId": org["id"],
        "name": "Contact",
        "schema": {
            "type": "object",
            "properties": {
                "email": {"type": "string", "title": "Email", "format": "email"},
                "message": {"type": "string", "maxLength": 500},
                "subscribe": {"type": "boolean"},
            },
            "required": ["email"],
        },
        "createdAt": _now_iso(),
    }
    state.forms[form["id"]] = form
    return {"org": org, "admin": admin, "form": form}


class DevAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, secret: str | None = None) -> None:
        super().__init__(app)
        self._secret = secret

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES):
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth.split(" ", 1)[1].strip() if auth.startswith("Bearer ") else ""
        if not token:
            logger.warning("auth_missing_token path=%s", path)
            return _error_response("AUTH_MISSING_TOKEN", "Missing bearer token", "Authorization", status=401)
        try:
            claims = jwt.decode(token, self._secret or _jwt_secret(), algorithms=[JWT_ALGORITHM])
        except JWTError as exc:
            logger.warning("auth_invalid_token path=%s error=%s", path, exc)
            return _error_response(
                "AUTH_INVALID_TOKEN", "Invalid bearer token", "Authorization", {"error": str(exc)}, status=401
            )
        request.state.user = {"id": claims.get("sub"), "email": claims.get("email"), "claims": claims}
        return await call_next(request)


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return await request.json()
    except ValueError:
        return None


def _route_signature(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None) or request.url.path
    return f"{request.method} {path}"


def create_app(state: DevState | None = None, secret: str | None = None) -> FastAPI:
    state = state if state is not None else DevState()
    app = FastAPI(title="portal-dev")
    app.add_middleware(DevAuthMiddleware, secret=secret)
    app.state.dev = state

    def resolve_actor(request: Request, min_role: str = "Viewer") -> dict | JSONResponse:
        user = getattr(request.state, "user", None)
        if not user or not user.get("id") or user["id"] not in state.users:
            return _error_response("AUTH_REQUIRED", "Authenticated user required", status=401)
        org_id = (request.headers.get("x-org-id") or "").strip()
        if not org_id:
            return _error_response("ORG_REQUIRED", "Missing X-Org-Id", "x-org-id", status=400)
        membership = state.membership(user["id"], org_id)
        if membership is None:
            return _error_response("ORG_FORBIDDEN", "No membership for this organization", "x-org-id", status=403)
        if not has_role_level(membership["role"], min_role):
            return _error_response("FORBIDDEN", f"{min_role} role required", status=403)
        return {"user_id": user["id"], "org_id": org_id, "role": membership["role"]}

    async def idempotent(request: Request, body: Any, produce: Callable[[], JSONResponse]) -> Response:
        if not is_mutating(request.method):
            return produce()
        org_id = (request.headers.get("x-org-id") or "").strip()
        key = (request.headers.get("idempotency-key") or "").strip()
        if not org_id or not key:
            return _error_response("IDEMPOTENCY_REQUIRED", "Missing X-Org-Id or Idempotency-Key", status=400)
        scope = (org_id, _route_signature(request), key)
        fingerprint = body_fingerprint(body)
        found = state.idempotency.get(scope)
        if found is not None:
            if found["hash"] == fingerprint:
                logger.info("idempotency_hit route=%s key=%s", scope[1], key)
                return Response(
                    content=found["content"],
                    status_code=found["status"],
                    media_type="application/json",
                    headers={"X-Idempotency": "HIT"},
                )
            logger.info("idempotency_conflict route=%s key=%s", scope[1], key)
            return _error_response(
                "IDEMPOTENCY_CONFLICT", "Idempotency-Key conflict: body differs from original request.", status=400
            )
        response = produce()
        if 200 <= response.status_code < 300:
            state.idempotency[scope] = {"hash": fingerprint, "content": response.body, "status": response.status_code}
            response.headers["X-Idempotency"] = "MISS"
        return response

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    # auth

    @app.post(f"{API_PREFIX}/auth/register")
    async def register(request: Request):
        body = await _read_json(request) or {}
        email = str(body.get("email") or "").strip()
        password = str(body.get("password") or "")
        name = str(body.get("name") or "").strip()
        if not email or not password or not name:
            return _error_response("REGISTER_INVALID", "email, password and name are required")
        if state.user_by_email(email):
            return _error_response("EMAIL_TAKEN", "User with this email already exists", "email", status=409)
        user = state.add_user(email, password, name)
        return _json({"id": user["id"], "email": user["email"], "name": user["name"]}, 201)

    @app.post(f"{API_PREFIX}/auth/login")
    async def login(request: Request):
        body = await _read_json(request) or {}
        user = state.user_by_email(str(body.get("email") or ""))
        if user is None or user["password"] != _hash_password(str(body.get("password") or "")):
            return _error_response("AUTH_INVALID_CREDENTIALS", "Invalid credentials", status=401)
        return _json({"access_token": issue_token(user, secret)}, 201)

    @app.get(f"{API_PREFIX}/auth/me")
    async def me(request: Request):
        user = state.users.get(getattr(request.state, "user", {}).get("id"))
        if user is None:
            return _error_response("AUTH_REQUIRED", "Authenticated user required", status=401)
        memberships = [
            {
                "organizationId": m["organizationId"],
                "role": m["role"],
                "organization": state.organizations.get(m["organizationId"]),
            }
            for m in state.memberships
            if m["userId"] == user["id"]
        ]
        return _json({"id": user["id"], "email": user["email"], "name": user["name"], "memberships": memberships})

    # forms

    @app.get(f"{API_PREFIX}/forms")
    async def list_forms(request: Request):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        return _json([f for f in state.forms.values() if f["organizationId"] == actor["org_id"]])

    @app.get(f"{API_PREFIX}/forms/{{form_id}}")
    async def get_form(request: Request, form_id: str):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        form = state.forms.get(form_id)
        if form is None or form["organizationId"] != actor["org_id"]:
            return _error_response("NOT_FOUND", "Form not found", status=404)
        return _json(form)

    @app.post(f"{API_PREFIX}/forms")
    async def create_form(request: Request):
        actor = resolve_actor(request, "Editor")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            name = str(body.get("name") or "").strip()
            if not name:
                return _error_response("FORM_NAME_REQUIRED", "Form name is required", "name")
            form = {
                "id": _new_id(),
                "organizationId": actor["org_id"],
                "name": name,
                "schema": body.get("schema") or {},
                "createdAt": _now_iso(),
            }
            state.forms[form["id"]] = form
            state.audit(actor["org_id"], actor["user_id"], "create", "form", form["id"])
            return _json(form, 201)

        return await idempotent(request, body, produce)

    @app.patch(f"{API_PREFIX}/forms/{{form_id}}")
    async def update_form(request: Request, form_id: str):
        actor = resolve_actor(request, "Editor")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            form = state.forms.get(form_id)
            if form is None or form["organizationId"] != actor["org_id"]:
                return _error_response("NOT_FOUND", "Form not found", status=404)
            if body.get("name"):
                form["name"] = str(body["name"]).strip()
            if isinstance(body.get("schema"), dict):
                form["schema"] = body["schema"]
            state.audit(actor["org_id"], actor["user_id"], "update", "form", form_id)
            return _json(form)

        return await idempotent(request, body, produce)

    @app.delete(f"{API_PREFIX}/forms/{{form_id}}")
    async def delete_form(request: Request, form_id: str):
        actor = resolve_actor(request, "Editor")
        if isinstance(actor, JSONResponse):
            return actor

        def produce() -> JSONResponse:
            form = state.forms.get(form_id)
            if form is None or form["organizationId"] != actor["org_id"]:
                return _error_response("NOT_FOUND", "Form not found", status=404)
            del state.forms[form_id]
            state.audit(actor["org_id"], actor["user_id"], "delete", "form", form_id)
            return _json({"ok": True})

        return await idempotent(request, None, produce)

    @app.get(f"{API_PREFIX}/public/forms/{{form_id}}")
    async def get_public_form(form_id: str):
        form = state.forms.get(form_id)
        if form is None:
            return _error_response("NOT_FOUND", "Form not found", status=404)
        return _json({"id": form["id"], "name": form["name"], "schema": form["schema"]})

    @app.post(f"{API_PREFIX}/public/forms/{{form_id}}/submit")
    async def submit_form(request: Request, form_id: str):
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            form = state.forms.get(form_id)
            if form is None:
                return _error_response("NOT_FOUND", "Form not found", status=404)
            data = body.get("data") if isinstance(body.get("data"), dict) else {}
            fields = normalize(form["schema"])
            issues = validate_values(fields, data)
            if issues:
                return _validation_response(issues)
            submission = {
                "id": _new_id(),
                "formId": form_id,
                "data": build_payload(fields, data),
                "createdAt": _now_iso(),
            }
            state.submissions.append(submission)
            state.audit(form["organizationId"], None, "create", "submission", submission["id"])
            return _json(submission, 201)

        return await idempotent(request, body, produce)

    # posts and tags

    def _post_view(post: dict) -> dict:
        author = state.users.get(post["authorId"]) or {}
        tags = [state.tags[t] for t in post["tagIds"] if t in state.tags]
        return {
            **{k: v for k, v in post.items() if k != "tagIds"},
            "author": {"id": post["authorId"], "name": author.get("name")},
            "tags": [{"tag": {"id": t["id"], "name": t["name"]}} for t in tags],
        }

    def _unknown_tags(org_id: str, tag_ids: list) -> bool:
        return any(state.tags.get(t, {}).get("organizationId") != org_id for t in tag_ids)

    @app.get(f"{API_PREFIX}/posts")
    async def list_posts(request: Request):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        tag_id = request.query_params.get("tagId")
        try:
            limit = int(request.query_params.get("limit") or 10)
        except ValueError:
            return _error_response("QUERY_INVALID", "limit must be an integer", "limit")
        posts = [
            p
            for p in state.posts.values()
            if p["organizationId"] == actor["org_id"] and (not tag_id or tag_id in p["tagIds"])
        ]
        posts.sort(key=lambda p: p["createdAt"], reverse=True)
        return _json({"items": [_post_view(p) for p in posts[: max(1, limit)]]})

    @app.post(f"{API_PREFIX}/posts")
    async def create_post(request: Request):
        actor = resolve_actor(request, "Editor")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            title = str(body.get("title") or "").strip()
            if not title:
                return _error_response("POST_TITLE_REQUIRED", "Title is required", "title")
            tag_ids = list(body.get("tagIds") or [])
            if _unknown_tags(actor["org_id"], tag_ids):
                return _error_response("TAG_FORBIDDEN", "One or more tags do not belong to this organization", status=403)
            now = _now_iso()
            post = {
                "id": _new_id(),
                "organizationId": actor["org_id"],
                "authorId": actor["user_id"],
                "title": title,
                "content": str(body.get("content") or ""),
                "version": 1,
                "tagIds": tag_ids,
                "createdAt": now,
                "updatedAt": now,
            }
            state.posts[post["id"]] = post
            state.audit(actor["org_id"], actor["user_id"], "create", "post", post["id"])
            return _json(_post_view(post), 201)

        return await idempotent(request, body, produce)

    @app.patch(f"{API_PREFIX}/posts/{{post_id}}")
    async def update_post(request: Request, post_id: str):
        actor = resolve_actor(request, "Editor")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            post = state.posts.get(post_id)
            if post is None or post["organizationId"] != actor["org_id"]:
                return _error_response("NOT_FOUND", "Post not found", status=404)
            if actor["role"] != "OrgAdmin" and post["authorId"] != actor["user_id"]:
                return _error_response("FORBIDDEN", "Only the author or an OrgAdmin can edit this post", status=403)
            if body.get("version") != post["version"]:
                return _error_response("VERSION_CONFLICT", "Version conflict, please refresh and retry", status=409)
            tag_ids = list(body.get("tagIds") or [])
            if _unknown_tags(actor["org_id"], tag_ids):
                return _error_response("TAG_FORBIDDEN", "One or more tags do not belong to this organization", status=403)
            for name in ("title", "content"):
                if body.get(name) is not None:
                    post[name] = str(body[name])
            if tag_ids:
                post["tagIds"] = tag_ids
            post["version"] += 1
            post["updatedAt"] = _now_iso()
            state.audit(actor["org_id"], actor["user_id"], "update", "post", post_id)
            return _json(_post_view(post))

        return await idempotent(request, body, produce)

    @app.delete(f"{API_PREFIX}/posts/{{post_id}}")
    async def delete_post(request: Request, post_id: str):
        actor = resolve_actor(request, "Editor")
        if isinstance(actor, JSONResponse):
            return actor

        def produce() -> JSONResponse:
            post = state.posts.get(post_id)
            if post is None or post["organizationId"] != actor["org_id"]:
                return _error_response("NOT_FOUND", "Post not found", status=404)
            if actor["role"] != "OrgAdmin" and post["authorId"] != actor["user_id"]:
                return _error_response("FORBIDDEN", "Only the author or an OrgAdmin can delete this post", status=403)
            del state.posts[post_id]
            state.audit(actor["org_id"], actor["user_id"], "delete", "post", post_id)
            return _json({"ok": True})

        return await idempotent(request, None, produce)

    @app.get(f"{API_PREFIX}/tags")
    async def list_tags(request: Request):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        return _json([t for t in state.tags.values() if t["organizationId"] == actor["org_id"]])

    # comments

    @app.get(f"{API_PREFIX}/posts/{{post_id}}/comments")
    async def list_comments(request: Request, post_id: str):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        post = state.posts.get(post_id)
        if post is None or post["organizationId"] != actor["org_id"]:
            return _error_response("NOT_FOUND", "Post not found", status=404)
        items = []
        for c in state.comments.values():
            if c["postId"] == post_id and not c.get("deletedAt"):
                author = state.users.get(c["authorId"]) or {}
                items.append({**c, "author": {"id": c["authorId"], "name": author.get("name")}})
        return _json({"items": items})

    @app.post(f"{API_PREFIX}/posts/{{post_id}}/comments")
    async def add_comment(request: Request, post_id: str):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            post = state.posts.get(post_id)
            if post is None or post["organizationId"] != actor["org_id"]:
                return _error_response("NOT_FOUND", "Post not found", status=404)
            content = str(body.get("content") or "").strip()
            if not content:
                return _error_response("COMMENT_EMPTY", "Comment cannot be empty", "content")
            comment = {
                "id": _new_id(),
                "postId": post_id,
                "authorId": actor["user_id"],
                "content": content,
                "createdAt": _now_iso(),
                "deletedAt": None,
            }
            state.comments[comment["id"]] = comment
            state.audit(actor["org_id"], actor["user_id"], "create", "comment", comment["id"])
            return _json(comment, 201)

        return await idempotent(request, body, produce)

    def _comment_in_org(comment_id: str, org_id: str) -> dict | None:
        comment = state.comments.get(comment_id)
        if comment is None:
            return None
        post = state.posts.get(comment["postId"])
        if post is None or post["organizationId"] != org_id:
            return None
        return comment

    @app.patch(f"{API_PREFIX}/comments/{{comment_id}}")
    async def update_comment(request: Request, comment_id: str):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            comment = _comment_in_org(comment_id, actor["org_id"])
            if comment is None:
                return _error_response("NOT_FOUND", "Comment not found", status=404)
            if comment.get("deletedAt"):
                return _error_response("FORBIDDEN", "Cannot edit a deleted comment", status=403)
            if comment["authorId"] != actor["user_id"] and actor["role"] != "OrgAdmin":
                return _error_response("FORBIDDEN", "Not allowed to edit this comment", status=403)
            content = str(body.get("content") or "").strip()
            if not content:
                return _error_response("COMMENT_EMPTY", "Comment cannot be empty", "content")
            comment["content"] = content
            state.audit(actor["org_id"], actor["user_id"], "update", "comment", comment_id)
            return _json(comment)

        return await idempotent(request, body, produce)

    @app.delete(f"{API_PREFIX}/comments/{{comment_id}}")
    async def delete_comment(request: Request, comment_id: str):
        actor = resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor

        def produce() -> JSONResponse:
            comment = _comment_in_org(comment_id, actor["org_id"])
            if comment is None:
                return _error_response("NOT_FOUND", "Comment not found", status=404)
            if comment["authorId"] != actor["user_id"] and not has_role_level(actor["role"], "Editor"):
                return _error_response("FORBIDDEN", "Not allowed to delete this comment", status=403)
            comment["deletedAt"] = _now_iso()
            state.audit(actor["org_id"], actor["user_id"], "delete", "comment", comment_id)
            return _json({"ok": True, "postId": comment["postId"]})

        return await idempotent(request, None, produce)

    @app.post(f"{API_PREFIX}/comments/{{comment_id}}/restore")
    async def restore_comment(request: Request, comment_id: str):
        actor = resolve_actor(request, "Editor")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            comment = _comment_in_org(comment_id, actor["org_id"])
            if comment is None:
                return _error_response("NOT_FOUND", "Comment not found", status=404)
            comment["deletedAt"] = None
            state.audit(actor["org_id"], actor["user_id"], "restore", "comment", comment_id)
            return _json({"ok": True, "postId": comment["postId"]})

        return await idempotent(request, body, produce)

    # admin

    @app.get(f"{API_PREFIX}/users")
    async def list_users(request: Request):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        members = [m["userId"] for m in state.memberships if m["organizationId"] == actor["org_id"]]
        return _json(
            [{k: v for k, v in state.users[u].items() if k != "password"} for u in members if u in state.users]
        )

    @app.post(f"{API_PREFIX}/users")
    async def create_user(request: Request):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            required = ("email", "password", "name", "organizationId")
            missing = [k for k in required if not str(body.get(k) or "").strip()]
            if missing:
                return _error_response("USER_FIELDS_REQUIRED", "Please fill in all required fields", detail={"missing": missing})
            if body["organizationId"] not in state.organizations:
                return _error_response("NOT_FOUND", "Organization not found", "organizationId", status=404)
            if state.user_by_email(body["email"]):
                return _error_response("EMAIL_TAKEN", "User with this email already exists", "email", status=409)
            role = body.get("role") or "Viewer"
            if role not in ("Viewer", "Editor", "OrgAdmin"):
                return _error_response("ROLE_INVALID", "Unknown role", "role")
            user = state.add_user(body["email"], body["password"], body["name"], body["organizationId"], role)
            state.audit(actor["org_id"], actor["user_id"], "create", "user", user["id"])
            return _json({"id": user["id"], "email": user["email"], "name": user["name"], "role": role}, 201)

        return await idempotent(request, body, produce)

    @app.get(f"{API_PREFIX}/organizations")
    async def list_organizations(request: Request):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        return _json(list(state.organizations.values()))

    @app.post(f"{API_PREFIX}/organizations")
    async def create_organization(request: Request):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            name = str(body.get("name") or "").strip()
            if not 2 <= len(name) <= 100:
                return _error_response("ORG_NAME_LENGTH", "Organization name must be between 2 and 100 characters", "name")
            if any(o["name"].lower() == name.lower() for o in state.organizations.values()):
                return _error_response("ORG_NAME_TAKEN", "Organization with this name already exists", "name", status=409)
            org = state.add_organization(name)
            state.memberships.append({"userId": actor["user_id"], "organizationId": org["id"], "role": "OrgAdmin"})
            state.audit(actor["org_id"], actor["user_id"], "create", "organization", org["id"])
            return _json(org, 201)

        return await idempotent(request, body, produce)

    @app.get(f"{API_PREFIX}/audit-logs")
    async def list_audit_logs(request: Request):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        try:
            take = int(request.query_params.get("take") or 50)
        except ValueError:
            return _error_response("QUERY_INVALID", "take must be an integer", "take")
        logs = [log for log in state.audit_logs if log["orgId"] == actor["org_id"]]
        return _json(list(reversed(logs))[: max(1, take)])

    @app.get(f"{API_PREFIX}/admin/jobs/tag-stats")
    async def tag_stats(request: Request):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        counts: Dict[str, int] = {}
        for post in state.posts.values():
            if post["organizationId"] != actor["org_id"]:
                continue
            for tag_id in post["tagIds"]:
                counts[tag_id] = counts.get(tag_id, 0) + 1
        return _json(
            [
                {"tagId": t["id"], "name": t["name"], "count": counts.get(t["id"], 0)}
                for t in state.tags.values()
                if t["organizationId"] == actor["org_id"]
            ]
        )

    @app.post(f"{API_PREFIX}/admin/jobs/tag-stats/run")
    async def run_tag_stats(request: Request):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            state.jobs.append({"name": "tag-stats", "orgId": actor["org_id"], "at": _now_iso()})
            return _json({"ok": True, "queued": True})

        return await idempotent(request, body, produce)

    @app.post(f"{API_PREFIX}/admin/jobs/post-preview/{{post_id}}")
    async def run_post_preview(request: Request, post_id: str):
        actor = resolve_actor(request, "OrgAdmin")
        if isinstance(actor, JSONResponse):
            return actor
        body = await _read_json(request) or {}

        def produce() -> JSONResponse:
            post = state.posts.get(post_id)
            if post is None or post["organizationId"] != actor["org_id"]:
                return _error_response("NOT_FOUND", "Post not found", status=404)
            state.jobs.append({"name": "post-preview", "orgId": actor["org_id"], "postId": post_id, "at": _now_iso()})
            return _json({"ok": True, "queued": True, "postId": post_id})

        return await idempotent(request, body, produce)

    return app
