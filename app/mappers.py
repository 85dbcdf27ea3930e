"""Payload mappers and role helpers for list pages."""

from __future__ import annotations

from typing import Any, Dict, List

from list_refresh import unwrap_items

ROLE_HIERARCHY: Dict[str, int] = {
    "OrgAdmin": 3,
    "Editor": 2,
    "Viewer": 1,
}

EDITOR_ROLES = frozenset({"Editor", "OrgAdmin"})


def all_roles() -> list[str]:
    return ["OrgAdmin", "Editor", "Viewer"]


def has_role_level(user_role: str, required_role: str) -> bool:
    return ROLE_HIERARCHY.get(user_role, 0) >= ROLE_HIERARCHY.get(required_role, 0) > 0


def has_editor_rights(memberships: Any) -> bool:
    if not isinstance(memberships, list):
        return False
    roles = {m.get("role") for m in memberships if isinstance(m, dict)}
    return bool(roles & EDITOR_ROLES)


def membership_for_org(memberships: Any, org_id: str | None) -> dict | None:
    if not isinstance(memberships, list) or not org_id:
        return None
    for m in memberships:
        if isinstance(m, dict) and m.get("organizationId") == org_id:
            return m
    return None


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def map_tag(raw: Any) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    nested = raw.get("tag") if isinstance(raw.get("tag"), dict) else {}
    name = raw.get("name") or nested.get("name") or ""
    tag_id = raw.get("id") or raw.get("tagId") or nested.get("id") or name or None
    return {"id": str(tag_id) if tag_id is not None else "", "name": str(name)}


def map_post(raw: Any) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    author = raw.get("author") if isinstance(raw.get("author"), dict) else {}
    tags = raw.get("tags")
    version = raw.get("version")
    return {
        "id": str(raw.get("id")),
        "title": raw.get("title"),
        "content": raw.get("content"),
        "author_name": author.get("name"),
        "created_at": raw.get("createdAt"),
        "updated_at": raw.get("updatedAt"),
        "version": version if isinstance(version, int) and not isinstance(version, bool) else 1,
        "tags": [map_tag(t) for t in tags] if isinstance(tags, list) else [],
    }


def map_posts(data: Any) -> List[dict]:
    return [map_post(p) for p in unwrap_items(data)]


def map_comment(raw: Any) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    author = raw.get("author") if isinstance(raw.get("author"), dict) else {}
    return {
        "id": str(raw.get("id")),
        "content": str(raw.get("content") or ""),
        "author_id": raw.get("authorId") or author.get("id"),
        "author_name": author.get("name"),
        "created_at": raw.get("createdAt"),
    }


def map_comments(data: Any) -> List[dict]:
    return [map_comment(c) for c in unwrap_items(data)]


def map_tags(data: Any) -> List[dict]:
    return [map_tag(t) for t in unwrap_items(data)]


def map_audit_log(raw: Any) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    return {
        "id": _str_or_none(raw.get("id")),
        "at": raw.get("at"),
        "user_id": _str_or_none(raw.get("userId")),
        "action": raw.get("action"),
        "resource": raw.get("resource"),
        "resource_id": _str_or_none(raw.get("resourceId")),
    }


def index_users(data: Any) -> Dict[str, dict]:
    users: Dict[str, dict] = {}
    for raw in unwrap_items(data):
        if not isinstance(raw, dict) or raw.get("id") is None:
            continue
        uid = str(raw["id"])
        users[uid] = {
            "id": uid,
            "name": raw.get("name") or "Unknown User",
            "email": raw.get("email") or "unknown@example.com",
        }
    return users


def user_display_name(users: Dict[str, dict], user_id: str) -> str:
    user = users.get(user_id)
    if user:
        return f"{user['name']} ({user['email']})"
    return f"User {user_id[:8]}..."
