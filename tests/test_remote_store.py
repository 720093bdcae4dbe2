import json
import unittest

import httpx

from medsync.models import RemoteConfig
from medsync.remote_store import RemoteStoreError, RestRemoteStore


class RestRemoteStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder = lambda request: httpx.Response(200, json=[])
        self.config = RemoteConfig(
            base_url="https://db.example.com",
            api_key="anon-key",
            access_token="user-token",
            user_id="user-1",
        )

    def _store(self, config: RemoteConfig | None = None) -> RestRemoteStore:
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.responder(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        return RestRemoteStore(config or self.config, http_client=client)

    async def test_insert_posts_record_with_headers(self) -> None:
        self.responder = lambda request: httpx.Response(201, json=[{"id": "e1", "title": "Plantão UTI"}])
        store = self._store()
        row = await store.insert("events", {"id": "e1", "title": "Plantão UTI"})
        self.assertEqual(row, {"id": "e1", "title": "Plantão UTI"})
        request = self.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.url.path, "/rest/v1/events")
        self.assertEqual(request.headers["apikey"], "anon-key")
        self.assertEqual(request.headers["Authorization"], "Bearer user-token")
        self.assertEqual(request.headers["Prefer"], "return=representation")
        self.assertEqual(json.loads(request.content), [{"id": "e1", "title": "Plantão UTI"}])

    async def test_update_filters_with_eq(self) -> None:
        self.responder = lambda request: httpx.Response(200, json=[{"id": "e1", "title": "x"}])
        store = self._store()
        rows = await store.update("events", {"title": "x"}, {"id": "e1", "user_id": "user-1"})
        self.assertEqual(rows, [{"id": "e1", "title": "x"}])
        request = self.requests[0]
        self.assertEqual(request.method, "PATCH")
        self.assertEqual(request.url.params["id"], "eq.e1")
        self.assertEqual(request.url.params["user_id"], "eq.user-1")

    async def test_delete_with_empty_body(self) -> None:
        self.responder = lambda request: httpx.Response(204)
        store = self._store()
        await store.delete("events", {"id": "e1", "user_id": "user-1"})
        self.assertEqual(self.requests[0].method, "DELETE")

    async def test_select_orders_rows(self) -> None:
        self.responder = lambda request: httpx.Response(200, json=[{"id": "a"}, {"id": "b"}])
        store = self._store()
        rows = await store.select("events", {"user_id": "user-1"}, order="start_date.asc")
        self.assertEqual([row["id"] for row in rows], ["a", "b"])
        params = self.requests[0].url.params
        self.assertEqual(params["select"], "*")
        self.assertEqual(params["order"], "start_date.asc")

    async def test_api_key_is_used_as_bearer_without_token(self) -> None:
        store = self._store(RemoteConfig(base_url="https://db.example.com", api_key="anon-key"))
        await store.select("events", {})
        self.assertEqual(self.requests[0].headers["Authorization"], "Bearer anon-key")

    async def test_http_error_carries_status_and_message(self) -> None:
        self.responder = lambda request: httpx.Response(409, json={"message": "duplicate key"})
        store = self._store()
        with self.assertRaises(RemoteStoreError) as ctx:
            await store.insert("events", {"id": "e1"})
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertIn("duplicate key", str(ctx.exception))
        self.assertFalse(ctx.exception.transient)

    async def test_server_errors_are_transient(self) -> None:
        self.responder = lambda request: httpx.Response(503, text="unavailable")
        store = self._store()
        with self.assertRaises(RemoteStoreError) as ctx:
            await store.select("events", {})
        self.assertTrue(ctx.exception.transient)

    async def test_network_failure_is_wrapped(self) -> None:
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        self.responder = fail
        store = self._store()
        with self.assertRaises(RemoteStoreError) as ctx:
            await store.insert("events", {"id": "e1"})
        self.assertIsNone(ctx.exception.status_code)
        self.assertTrue(ctx.exception.transient)

    async def test_unconfigured_store_fails_without_request(self) -> None:
        store = self._store(RemoteConfig())
        with self.assertRaises(RemoteStoreError):
            await store.insert("events", {"id": "e1"})
        self.assertEqual(self.requests, [])


if __name__ == "__main__":
    unittest.main()
