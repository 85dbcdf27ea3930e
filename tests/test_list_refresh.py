import asyncio
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

from app.mappers import map_posts
from auth_context import AuthContext
from inflight_registry import InFlightRegistry
from list_refresh import ListRefreshController
from request_orchestrator import RequestDescriptor, RequestOrchestrator

AUTH = AuthContext("tok", "org-1")


def posts_descriptor(deps):
    params = {"limit": 10}
    if deps.get("tag_id"):
        params["tagId"] = deps["tag_id"]
    return RequestDescriptor("GET", "/posts", params=params)


def make_controller(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    orch = RequestOrchestrator("http://api.test", client=client, registry=InFlightRegistry())
    return orch, ListRefreshController(orch, posts_descriptor, mapper=map_posts, **kwargs)


class TestListRefresh(unittest.IsolatedAsyncioTestCase):
    async def test_mount_loads_items(self) -> None:
        changes = []
        _, ctl = make_controller(
            lambda request: httpx.Response(200, json={"items": [{"id": 1, "title": "Hello", "version": 3}]}),
            on_change=lambda c: changes.append(list(c.items)),
        )
        ctl.mount(AUTH, {"tag_id": None})
        await ctl.wait()
        self.assertFalse(ctl.loading)
        self.assertEqual(ctl.items[0]["id"], "1")
        self.assertEqual(ctl.items[0]["version"], 3)
        self.assertEqual(len(changes), 1)

    async def test_stale_tag_response_is_discarded(self) -> None:
        release_first = asyncio.Event()
        requested = []

        async def handler(request: httpx.Request) -> httpx.Response:
            tag = request.url.params.get("tagId")
            requested.append(tag)
            if tag == "1":
                await release_first.wait()
            return httpx.Response(200, json={"items": [{"id": f"post-tag-{tag}"}]})

        _, ctl = make_controller(handler)
        ctl.mount(AUTH, {"tag_id": "1"})
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        ctl.update(AUTH, {"tag_id": "2"})
        release_first.set()
        await ctl.wait()

        self.assertEqual([p["id"] for p in ctl.items], ["post-tag-2"])
        self.assertIsNone(ctl.error)

    async def test_superseded_fetch_resolves_cancelled(self) -> None:
        gates = {"1": asyncio.Event(), "2": asyncio.Event()}

        async def handler(request: httpx.Request) -> httpx.Response:
            tag = request.url.params.get("tagId")
            await gates[tag].wait()
            return httpx.Response(200, json={"items": [{"id": f"post-tag-{tag}"}]})

        _, ctl = make_controller(handler)
        first = ctl.mount(AUTH, {"tag_id": "1"})
        await asyncio.sleep(0)
        second = ctl.update(AUTH, {"tag_id": "2"})
        gates["2"].set()
        await second
        gates["1"].set()
        first_result = await first
        self.assertTrue(first_result.cancelled)
        self.assertEqual([p["id"] for p in ctl.items], ["post-tag-2"])

    async def test_update_with_same_deps_is_noop(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"items": []})

        _, ctl = make_controller(handler)
        ctl.mount(AUTH, {"tag_id": "1"})
        await ctl.wait()
        self.assertIsNone(ctl.update(AUTH, {"tag_id": "1"}))
        self.assertIsNotNone(ctl.update(AuthContext("tok", "org-2"), {"tag_id": "1"}))
        await ctl.wait()
        self.assertEqual(len(calls), 2)

    async def test_unauthorized_sets_redirect(self) -> None:
        _, ctl = make_controller(lambda request: httpx.Response(401))
        ctl.mount(AUTH)
        await ctl.wait()
        self.assertTrue(ctl.redirect_to_login)
        self.assertIsNone(ctl.error)

    async def test_server_error_clears_items(self) -> None:
        _, ctl = make_controller(lambda request: httpx.Response(500, json={"message": "Failed to load posts"}))
        ctl.items = [{"id": "old"}]
        ctl.mount(AUTH)
        await ctl.wait()
        self.assertEqual(ctl.items, [])
        self.assertEqual(ctl.error, "Failed to load posts")

    async def test_invalid_url_settles_with_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.InvalidURL("bad")

        orch, ctl = make_controller(handler)
        task = ctl.mount(AUTH)
        await ctl.wait()
        self.assertIsNone(task.exception())
        self.assertFalse(ctl.loading)
        self.assertEqual(ctl.items, [])
        self.assertEqual(ctl.error, "bad")
        self.assertEqual(len(orch.registry), 0)

    async def test_unmount_drops_result(self) -> None:
        gate = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await gate.wait()
            return httpx.Response(200, json={"items": [{"id": "x"}]})

        orch, ctl = make_controller(handler)
        task = ctl.mount(AUTH)
        await asyncio.sleep(0)
        ctl.unmount()
        gate.set()
        result = await task
        self.assertTrue(result.cancelled)
        self.assertIsNone(ctl.items)
        self.assertEqual(len(orch.registry), 0)
        self.assertIsNone(ctl.refresh())


if __name__ == "__main__":
    unittest.main()
