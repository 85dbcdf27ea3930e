import asyncio
import json
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import httpx

from auth_context import AuthContext
from inflight_registry import InFlightRegistry
from relay.idempotency import parse_key
from request_errors import CANCELLED, CONFLICT, SERVER_ERROR, UNAUTHORIZED, VALIDATION_FAILED
from request_orchestrator import RequestDescriptor, RequestOrchestrator

BASE = "http://api.test"
AUTH = AuthContext("tok", "org-1")


def make_orchestrator(handler, registry=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RequestOrchestrator(BASE, client=client, registry=registry if registry is not None else InFlightRegistry())


class TestHeaders(unittest.IsolatedAsyncioTestCase):
    async def test_mutating_request_headers(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "c1"})

        orch = make_orchestrator(handler)
        result = await orch.send(
            RequestDescriptor("POST", "/posts/p1/comments", body={"content": "hi"}, idempotency_prefix="comment:create:p1"),
            AUTH,
        )
        await orch.aclose()

        self.assertTrue(result.ok)
        self.assertEqual(result.data, {"id": "c1"})
        request = seen[0]
        self.assertEqual(str(request.url), "http://api.test/api/posts/p1/comments")
        self.assertEqual(request.headers["Authorization"], "Bearer tok")
        self.assertEqual(request.headers["x-org-id"], "org-1")
        self.assertEqual(request.headers["Content-Type"], "application/json")
        self.assertEqual(json.loads(request.content), {"content": "hi"})
        parsed = parse_key(request.headers["Idempotency-Key"])
        self.assertEqual(parsed["operation"], "comment:create")
        self.assertEqual(parsed["entity_id"], "p1")

    async def test_get_has_no_idempotency_key(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        orch = make_orchestrator(handler)
        await orch.get("/tags", AUTH)
        self.assertNotIn("Idempotency-Key", seen[0].headers)
        self.assertNotIn("Content-Type", seen[0].headers)

    async def test_lowercase_idempotency_header_collapses(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={})

        orch = make_orchestrator(handler)
        await orch.post("/users", {"email": "a@b.c"}, AUTH, headers={"idempotency-key": "create-user-1"})
        values = seen[0].headers.get_list("Idempotency-Key")
        self.assertEqual(values, ["create-user-1"])

    async def test_explicit_key_reused(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Idempotency-Key"])
            return httpx.Response(500, json={"message": "boom"})

        orch = make_orchestrator(handler)
        descriptor = RequestDescriptor("POST", "/forms", body={"name": "x"}, idempotency_key="form:create:1:abc")
        await orch.send(descriptor, AUTH)
        await orch.send(descriptor, AUTH)
        self.assertEqual(seen, ["form:create:1:abc", "form:create:1:abc"])

    async def test_auth_provider_used_when_no_context(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        orch = RequestOrchestrator(BASE, client=client, registry=InFlightRegistry(), auth_provider=lambda: AUTH)
        await orch.get("/auth/me")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer tok")


class TestClassification(unittest.IsolatedAsyncioTestCase):
    async def _send_status(self, status, body, **kwargs):
        orch = make_orchestrator(lambda request: httpx.Response(status, json=body))
        return await orch.post("/organizations", {"name": "Acme"}, AUTH, **kwargs)

    async def test_401_is_unauthorized_regardless_of_body(self) -> None:
        result = await self._send_status(401, {"message": "Organization name already exists"})
        self.assertEqual(result.kind, UNAUTHORIZED)
        self.assertIsNone(result.message)

    async def test_409_is_conflict(self) -> None:
        result = await self._send_status(409, {"message": "Organization with this name already exists"})
        self.assertEqual(result.kind, CONFLICT)

    async def test_400_already_exists_is_conflict(self) -> None:
        result = await self._send_status(400, {"message": "Organization name already exists"})
        self.assertEqual(result.kind, CONFLICT)
        self.assertEqual(result.message, "Organization name already exists")

    async def test_email_conflict_uses_user_message(self) -> None:
        result = await self._send_status(
            409,
            {"message": "User with this email already exists"},
            conflict_message="This email is already registered",
        )
        self.assertEqual(result.kind, CONFLICT)
        self.assertEqual(result.message, "This email is already registered")

    async def test_server_error_logged(self) -> None:
        with self.assertLogs("relay.requests", level="WARNING"):
            result = await self._send_status(500, {"message": "db down"})
        self.assertEqual(result.kind, SERVER_ERROR)
        self.assertEqual(result.message, "db down")

    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        orch = make_orchestrator(handler)
        result = await orch.get("/posts", AUTH, default_message="Failed to load posts")
        self.assertEqual(result.kind, SERVER_ERROR)
        self.assertEqual(result.message, "connection refused")

    async def test_invalid_url_is_returned_not_raised(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        orch = make_orchestrator(handler)
        result = await orch.get("/forms/a\x00b", AUTH)
        self.assertEqual(result.kind, SERVER_ERROR)
        self.assertEqual(result.error.detail, {"error": "InvalidURL"})
        self.assertEqual(calls, [])

    async def test_invalid_url_from_transport(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.InvalidURL("bad")

        registry = InFlightRegistry()
        orch = make_orchestrator(handler, registry)
        result = await orch.get("/posts", AUTH, dedupe_key="posts:list")
        self.assertEqual(result.kind, SERVER_ERROR)
        self.assertEqual(result.message, "bad")
        self.assertEqual(len(registry), 0)

    async def test_unserializable_body_never_sent(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        orch = make_orchestrator(handler)
        result = await orch.post("/posts", {"tags": {"a", "b"}}, AUTH)
        self.assertEqual(result.kind, VALIDATION_FAILED)
        self.assertEqual(calls, [])

    async def test_empty_body_success(self) -> None:
        orch = make_orchestrator(lambda request: httpx.Response(204))
        result = await orch.delete("/posts/p1", AUTH)
        self.assertTrue(result.ok)
        self.assertIsNone(result.data)


class TestDedup(unittest.IsolatedAsyncioTestCase):
    async def test_last_write_wins(self) -> None:
        release_first = asyncio.Event()
        started = []

        async def handler(request: httpx.Request) -> httpx.Response:
            tag = request.url.params.get("tagId")
            started.append(tag)
            if tag == "1":
                await release_first.wait()
            return httpx.Response(200, json={"items": [{"id": f"post-{tag}"}]})

        registry = InFlightRegistry()
        orch = make_orchestrator(handler, registry)
        first = asyncio.ensure_future(orch.get("/posts", AUTH, params={"tagId": "1"}, dedupe_key="posts:list"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        second = await orch.get("/posts", AUTH, params={"tagId": "2"}, dedupe_key="posts:list")
        release_first.set()
        first_result = await first

        self.assertEqual(first_result.kind, CANCELLED)
        self.assertTrue(second.ok)
        self.assertEqual(second.data["items"][0]["id"], "post-2")
        self.assertEqual(len(registry), 0)

    async def test_different_keys_do_not_interfere(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0)
            return httpx.Response(200, json={"path": request.url.path})

        orch = make_orchestrator(handler)
        a, b = await asyncio.gather(orch.get("/posts", AUTH), orch.get("/tags", AUTH))
        self.assertTrue(a.ok and b.ok)

    async def test_caller_cancellation_propagates(self) -> None:
        entered = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            entered.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        registry = InFlightRegistry()
        orch = make_orchestrator(handler, registry)
        task = asyncio.ensure_future(orch.get("/posts", AUTH))
        await entered.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(len(registry), 0)

    async def test_explicit_cancel_resolves_cancelled(self) -> None:
        entered = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            entered.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        registry = InFlightRegistry()
        orch = make_orchestrator(handler, registry)
        task = asyncio.ensure_future(orch.get("/audit-logs", AUTH, dedupe_key="audit-logs:list"))
        await entered.wait()
        self.assertTrue(registry.cancel("audit-logs:list"))
        result = await task
        self.assertTrue(result.cancelled)

    async def test_response_after_supersede_is_cancelled(self) -> None:
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("v") == "1":
                entered.set()
                try:
                    await gate.wait()
                except asyncio.CancelledError:
                    pass
                return httpx.Response(200, json={"v": 1})
            return httpx.Response(200, json={"v": 2})

        registry = InFlightRegistry()
        orch = make_orchestrator(handler, registry)
        first = asyncio.ensure_future(orch.get("/posts", AUTH, params={"v": "1"}, dedupe_key="posts:list"))
        await entered.wait()
        second = await orch.get("/posts", AUTH, params={"v": "2"}, dedupe_key="posts:list")
        first_result = await first

        self.assertTrue(first_result.cancelled)
        self.assertIsNone(first_result.data)
        self.assertEqual(second.data, {"v": 2})
        self.assertEqual(len(registry), 0)


if __name__ == "__main__":
    unittest.main()
