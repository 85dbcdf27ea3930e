"""Portal and admin endpoint wrappers over the request orchestrator."""

from __future__ import annotations

from typing import Any, Dict, List

from app.mappers import map_comments, map_posts, map_tags
from auth_context import AuthContext, AuthStoreSync
from field_normalize import FieldModel, normalize
from list_refresh import ListRefreshController
from request_errors import RequestResult, validation_failed
from request_orchestrator import RequestDescriptor, RequestOrchestrator
from submission_pipeline import SubmissionPipeline

EMAIL_TAKEN_MESSAGE = "This email is already registered"
ORG_NAME_MIN = 2
ORG_NAME_MAX = 100
AUDIT_LOG_TAKE = 50
POSTS_PAGE_LIMIT = 10


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


class PortalApi:
    def __init__(self, orchestrator: RequestOrchestrator, auth_source: AuthStoreSync | None = None) -> None:
        self._orchestrator = orchestrator
        self._auth_source = auth_source
        self._pipelines: Dict[str, SubmissionPipeline] = {}

    @property
    def orchestrator(self) -> RequestOrchestrator:
        return self._orchestrator

    def auth(self) -> AuthContext:
        if self._auth_source is None:
            return AuthContext()
        return self._auth_source.current()

    async def _send(self, descriptor: RequestDescriptor) -> RequestResult:
        return await self._orchestrator.send(descriptor, self.auth())

    # auth

    async def login(self, email: str, password: str) -> RequestResult:
        result = await self._send(
            RequestDescriptor(
                "POST",
                "/auth/login",
                body={"email": email, "password": password},
                idempotency_prefix="auth:login",
                default_message="Login failed",
            )
        )
        if result.ok and self._auth_source is not None and isinstance(result.data, dict):
            token = result.data.get("access_token") or result.data.get("accessToken")
            if token:
                self._auth_source.set_token(token)
        return result

    async def register(self, email: str, password: str, name: str) -> RequestResult:
        return await self._send(
            RequestDescriptor(
                "POST",
                "/auth/register",
                body={"email": email, "password": password, "name": name},
                idempotency_prefix="auth:register",
                conflict_message=EMAIL_TAKEN_MESSAGE,
            )
        )

    async def me(self) -> RequestResult:
        return await self._send(RequestDescriptor("GET", "/auth/me", dedupe_key="auth:me"))

    def logout(self) -> None:
        if self._auth_source is not None:
            self._auth_source.clear()

    # forms

    async def list_forms(self) -> RequestResult:
        return await self._send(RequestDescriptor("GET", "/forms", default_message="Failed to load forms"))

    async def get_form(self, form_id: str) -> RequestResult:
        return await self._send(RequestDescriptor("GET", f"/forms/{form_id}", default_message="Failed to load form"))

    async def get_public_form(self, form_id: str) -> RequestResult:
        return await self._send(
            RequestDescriptor("GET", f"/public/forms/{form_id}", default_message="Failed to load form")
        )

    async def load_form_fields(self, form_id: str) -> tuple[RequestResult, List[FieldModel]]:
        result = await self.get_public_form(form_id)
        if not result.ok:
            return result, []
        return result, normalize(result.data)

    async def create_form(self, name: str, schema: Dict[str, Any]) -> RequestResult:
        if _blank(name):
            return validation_failed([_issue("FORM_NAME_REQUIRED", "Form name is required", "name")])
        return await self._send(
            RequestDescriptor(
                "POST",
                "/forms",
                body={"name": name.strip(), "schema": schema},
                idempotency_prefix="form:create",
                default_message="Failed to create form",
            )
        )

    async def update_form(self, form_id: str, name: str, schema: Dict[str, Any]) -> RequestResult:
        if _blank(name):
            return validation_failed([_issue("FORM_NAME_REQUIRED", "Form name is required", "name")])
        return await self._send(
            RequestDescriptor(
                "PATCH",
                f"/forms/{form_id}",
                body={"name": name.strip(), "schema": schema},
                idempotency_prefix=f"form:update:{form_id}",
                default_message="Failed to update form",
            )
        )

    async def delete_form(self, form_id: str) -> RequestResult:
        return await self._send(
            RequestDescriptor(
                "DELETE",
                f"/forms/{form_id}",
                idempotency_prefix=f"form:delete:{form_id}",
                default_message="Failed to delete form",
            )
        )

    def submission_pipeline(self, form_id: str) -> SubmissionPipeline:
        if form_id in self._pipelines:
            return self._pipelines[form_id]

        def factory(payload: Dict[str, Any], key: str) -> RequestDescriptor:
            return RequestDescriptor(
                "POST",
                f"/public/forms/{form_id}/submit",
                body={"data": payload},
                dedupe_key=f"form:submit:{form_id}",
                idempotency_key=key,
                default_message="Failed to submit form",
            )

        pipeline = SubmissionPipeline(self._orchestrator, factory, "submission:create", form_id)
        self._pipelines[form_id] = pipeline
        return pipeline

    async def submit_form(self, form_id: str, fields: List[FieldModel], values: Dict[str, Any]):
        return await self.submission_pipeline(form_id).submit(fields, values, self.auth())

    # posts, tags and comments

    def _posts_descriptor(self, deps: Dict[str, Any]) -> RequestDescriptor:
        params: Dict[str, Any] = {"includeFileAssets": "true", "limit": POSTS_PAGE_LIMIT}
        tag_id = deps.get("tag_id")
        if tag_id:
            params["tagId"] = tag_id
        return RequestDescriptor("GET", "/posts", params=params, default_message="Failed to load posts")

    async def list_posts(self, tag_id: str | None = None) -> RequestResult:
        descriptor = self._posts_descriptor({"tag_id": tag_id})
        descriptor.dedupe_key = "posts:fetch"
        return await self._send(descriptor)

    def posts_controller(self, on_change=None) -> ListRefreshController:
        return ListRefreshController(
            self._orchestrator,
            self._posts_descriptor,
            mapper=map_posts,
            on_change=on_change,
            dedupe_key="posts:list",
        )

    async def create_post(self, title: str, content: str, tag_ids: List[str] | None = None) -> RequestResult:
        if _blank(title):
            return validation_failed([_issue("POST_TITLE_REQUIRED", "Title is required", "title")])
        return await self._send(
            RequestDescriptor(
                "POST",
                "/posts",
                body={"title": title.strip(), "content": content or "", "tagIds": list(tag_ids or [])},
                idempotency_prefix="post:create",
                default_message="Failed to create post",
            )
        )

    async def update_post(self, post_id: str, version: int, **changes: Any) -> RequestResult:
        body = {"version": version}
        for name in ("title", "content", "tagIds"):
            if name in changes and changes[name] is not None:
                body[name] = changes[name]
        return await self._send(
            RequestDescriptor(
                "PATCH",
                f"/posts/{post_id}",
                body=body,
                idempotency_prefix=f"post:update:{post_id}",
                default_message="Failed to update post",
            )
        )

    async def delete_post(self, post_id: str) -> RequestResult:
        return await self._send(
            RequestDescriptor(
                "DELETE",
                f"/posts/{post_id}",
                idempotency_prefix=f"post:delete:{post_id}",
                default_message="Failed to delete post",
            )
        )

    async def list_tags(self) -> RequestResult:
        result = await self._send(RequestDescriptor("GET", "/tags", default_message="Failed to load tags"))
        if result.ok:
            return RequestResult.success(map_tags(result.data), result.status_code, result.headers)
        return result

    async def list_comments(self, post_id: str) -> RequestResult:
        result = await self._send(
            RequestDescriptor(
                "GET",
                f"/posts/{post_id}/comments",
                dedupe_key=f"comments:list:{post_id}",
                default_message="Failed to load comments",
            )
        )
        if result.ok:
            return RequestResult.success(map_comments(result.data), result.status_code, result.headers)
        return result

    async def add_comment(self, post_id: str, content: str) -> RequestResult:
        if _blank(content):
            return validation_failed([_issue("COMMENT_EMPTY", "Comment cannot be empty", "content")])
        return await self._send(
            RequestDescriptor(
                "POST",
                f"/posts/{post_id}/comments",
                body={"content": content.strip()},
                idempotency_prefix=f"comment:create:{post_id}",
                default_message="Failed to add comment",
            )
        )

    async def update_comment(self, comment_id: str, content: str) -> RequestResult:
        if _blank(content):
            return validation_failed([_issue("COMMENT_EMPTY", "Comment cannot be empty", "content")])
        return await self._send(
            RequestDescriptor(
                "PATCH",
                f"/comments/{comment_id}",
                body={"content": content.strip()},
                idempotency_prefix=f"comment:update:{comment_id}",
                default_message="Failed to update comment",
            )
        )

    async def delete_comment(self, comment_id: str) -> RequestResult:
        return await self._send(
            RequestDescriptor(
                "DELETE",
                f"/comments/{comment_id}",
                idempotency_prefix=f"comment:delete:{comment_id}",
                default_message="Failed to delete comment",
            )
        )

    async def restore_comment(self, comment_id: str) -> RequestResult:
        return await self._send(
            RequestDescriptor(
                "POST",
                f"/comments/{comment_id}/restore",
                body={},
                idempotency_prefix=f"comment:restore:{comment_id}",
                default_message="Failed to restore comment",
            )
        )

    # admin

    async def list_users(self) -> RequestResult:
        return await self._send(RequestDescriptor("GET", "/users", default_message="Failed to load users"))

    async def list_organizations(self) -> RequestResult:
        return await self._send(
            RequestDescriptor("GET", "/organizations", default_message="Failed to load organizations")
        )

    async def create_user(
        self,
        email: str,
        password: str,
        name: str,
        organization_id: str,
        role: str = "Viewer",
    ) -> RequestResult:
        values = {"email": email, "password": password, "name": name, "organizationId": organization_id}
        if any(_blank(v) for v in values.values()):
            missing = [k for k, v in values.items() if _blank(v)]
            return validation_failed(
                [_issue("USER_FIELDS_REQUIRED", "Please fill in all required fields", None, {"missing": missing})]
            )
        return await self._send(
            RequestDescriptor(
                "POST",
                "/users",
                body={**values, "role": role},
                idempotency_prefix="user:create",
                default_message="Failed to create user",
                conflict_message=EMAIL_TAKEN_MESSAGE,
            )
        )

    async def create_organization(self, name: str) -> RequestResult:
        name = (name or "").strip()
        if not ORG_NAME_MIN <= len(name) <= ORG_NAME_MAX:
            return validation_failed(
                [
                    _issue(
                        "ORG_NAME_LENGTH",
                        f"Organization name must be between {ORG_NAME_MIN} and {ORG_NAME_MAX} characters",
                        "name",
                    )
                ]
            )
        return await self._send(
            RequestDescriptor(
                "POST",
                "/organizations",
                body={"name": name},
                idempotency_prefix="organization:create",
                default_message="Failed to create organization",
            )
        )

    async def list_audit_logs(self, take: int = AUDIT_LOG_TAKE) -> RequestResult:
        return await self._send(
            RequestDescriptor(
                "GET",
                "/audit-logs",
                params={"take": take},
                dedupe_key="audit-logs:list",
                default_message="Failed to load audit logs",
            )
        )

    async def tag_stats(self) -> RequestResult:
        return await self._send(
            RequestDescriptor("GET", "/admin/jobs/tag-stats", default_message="Failed to load tag stats")
        )

    async def run_tag_stats(self) -> RequestResult:
        return await self._send(
            RequestDescriptor(
                "POST",
                "/admin/jobs/tag-stats/run",
                body={},
                idempotency_prefix="job:tag-stats",
                default_message="Failed to start tag stats job",
            )
        )

    async def run_post_preview(self, post_id: str) -> RequestResult:
        if _blank(post_id):
            return validation_failed([_issue("POST_ID_REQUIRED", "Post ID is required", "postId")])
        post_id = post_id.strip()
        return await self._send(
            RequestDescriptor(
                "POST",
                f"/admin/jobs/post-preview/{post_id}",
                body={},
                idempotency_prefix=f"job:post-preview:{post_id}",
                default_message="Failed to start post preview job",
            )
        )
