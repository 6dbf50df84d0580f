import asyncio
import unittest

import httpx

from opencode_serve_client.client import OpenCodeClient
from opencode_serve_client.errors import (
    ConnectionFailureError,
    NotFoundError,
    OperationCancelledError,
    OperationTimeoutError,
    ProtocolError,
    ServerError,
)
from opencode_serve_client.models import CreateSessionRequest, MessageListOptions, Role, SessionStatus
from tests.client.base import BASE_URL, FakeOpenCodeServer, make_config, run_with_client


class SessionLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.server = FakeOpenCodeServer(reply_text="pong")

    def test_ping_round_trip_then_delete(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session(CreateSessionRequest(title="ping test"))
            reply = await client.send_message(session.id, "ping")
            history = await client.list_messages(session.id, limit=2)
            await client.delete_session(session.id)
            with self.assertRaises(NotFoundError) as ctx:
                await client.get_session(session.id)
            return session, reply, history, ctx.exception

        session, reply, history, missing = run_with_client(self.server, scenario)

        self.assertEqual("ping test", session.title)
        self.assertEqual(Role.ASSISTANT, reply.role)
        self.assertEqual("pong", reply.text)
        self.assertGreaterEqual(len(history), 2)
        self.assertEqual([Role.USER, Role.ASSISTANT], [m.role for m in history])
        self.assertLess(history[0].info.created_at, history[1].info.created_at)
        self.assertEqual("ping", history[0].text)
        self.assertEqual(session.id, missing.resource_id)
        self.assertIn(session.id, str(missing))

    def test_delete_of_deleted_session_succeeds(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            await client.delete_session(session.id)
            await client.delete_session(session.id)
            return session

        session = run_with_client(self.server, scenario)

        self.assertEqual(2, self.server.count("DELETE", f"/session/{session.id}"))

    def test_list_and_update_sessions(self) -> None:
        async def scenario(client: OpenCodeClient):
            first = await client.create_session()
            await client.create_session()
            renamed = await client.update_session(first.id, "renamed")
            return renamed, await client.list_sessions()

        renamed, sessions = run_with_client(self.server, scenario)

        self.assertEqual("renamed", renamed.title)
        self.assertEqual(2, len(sessions))
        self.assertEqual("renamed", sessions[0].title)

    def test_get_message_and_abort(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            reply = await client.send_message(session.id, "ping")
            fetched = await client.get_message(session.id, reply.info.id)
            aborted = await client.abort_session(session.id)
            return reply, fetched, aborted

        reply, fetched, aborted = run_with_client(self.server, scenario)

        self.assertEqual(reply.info.id, fetched.info.id)
        self.assertEqual("pong", fetched.text)
        self.assertTrue(aborted)

    def test_session_status_map(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            self.server.busy.add(session.id)
            statuses = await client.get_session_status()
            return session, statuses, client.known_sessions[session.id].status

        session, statuses, cached = run_with_client(self.server, scenario)

        self.assertEqual({session.id: SessionStatus.BUSY}, statuses)
        self.assertEqual(SessionStatus.BUSY, cached)

    def test_directory_is_sent_with_every_request(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            await client.get_session(session.id)

        run_with_client(self.server, scenario, directory="/work/project")

        self.assertEqual(["/work/project", "/work/project"], self.server.directories)

    def test_respond_to_permission(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            await client.respond_to_permission(session.id, "perm_1", "always", remember=True)
            with self.assertRaises(ValueError):
                await client.respond_to_permission(session.id, "perm_1", "maybe")
            return session

        session = run_with_client(self.server, scenario)

        self.assertEqual(("POST", f"/session/{session.id}/permissions/perm_1"), self.server.requests[-1])
        self.assertEqual({"response": "always", "remember": True}, self.server.bodies[-1])

    def test_list_messages_leaves_caller_options_untouched(self) -> None:
        options = MessageListOptions(limit=10, role="assistant")

        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            await client.send_message(session.id, "ping")
            return await client.list_messages(session.id, limit=1, options=options)

        history = run_with_client(self.server, scenario)

        self.assertEqual(10, options.limit)
        self.assertEqual(1, len(history))
        self.assertEqual({"limit": "1", "role": "assistant"}, self.server.queries[-1])

    def test_malformed_time_field_is_a_protocol_error(self) -> None:
        self.server.raw_replies[("POST", "/session")] = {"id": "ses_x", "time": 5}

        async def scenario(client: OpenCodeClient):
            await client.create_session()

        with self.assertRaises(ProtocolError) as ctx:
            run_with_client(self.server, scenario)

        self.assertIn(f"{BASE_URL}/session", str(ctx.exception))
        self.assertIn("time", str(ctx.exception))

    def test_mixed_pagination_is_rejected(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            with self.assertRaises(ValueError):
                await client.list_messages(session.id, options=MessageListOptions(skip=2, before="msg_1"))
            with self.assertRaises(ValueError):
                await client.list_messages(session.id, options=MessageListOptions(before="a", after="b"))

        run_with_client(self.server, scenario)

        self.assertEqual(1, len(self.server.requests))


class RetryAndErrorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.server = FakeOpenCodeServer()

    def test_reads_are_retried_on_server_errors(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            self.server.fail_next = [503, 502]
            return session, await client.get_session(session.id)

        session, fetched = run_with_client(self.server, scenario)

        self.assertEqual(session.id, fetched.id)
        self.assertEqual(3, self.server.count("GET", f"/session/{session.id}"))

    def test_retry_exhaustion_returns_last_server_error(self) -> None:
        async def scenario(client: OpenCodeClient):
            self.server.fail_next = [500, 500, 503]
            await client.list_sessions()

        with self.assertRaises(ServerError) as ctx:
            run_with_client(self.server, scenario)

        self.assertEqual(503, ctx.exception.status)
        self.assertEqual(3, self.server.count("GET", "/session"))

    def test_create_session_is_not_retried(self) -> None:
        async def scenario(client: OpenCodeClient):
            self.server.fail_next = [503]
            await client.create_session()

        with self.assertRaises(ServerError):
            run_with_client(self.server, scenario)

        self.assertEqual(1, self.server.count("POST", "/session"))

    def test_send_message_is_not_retried(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            self.server.fail_next = [500]
            try:
                await client.send_message(session.id, "ping")
            finally:
                self.assertEqual(1, self.server.count("POST", f"/session/{session.id}/message"))

        with self.assertRaises(ServerError):
            run_with_client(self.server, scenario)

    def test_send_message_timeout_names_the_operation(self) -> None:
        self.server.message_delay = 1.0

        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            await client.send_message(session.id, "ping", timeout=0.05)

        with self.assertRaises(OperationTimeoutError) as ctx:
            run_with_client(self.server, scenario)

        self.assertEqual("send message", ctx.exception.operation)

    def test_zero_timeout_is_not_replaced_by_the_default(self) -> None:
        self.server.message_delay = 1.0

        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            loop = asyncio.get_running_loop()
            started = loop.time()
            with self.assertRaises(OperationTimeoutError) as ctx:
                await client.send_message(session.id, "ping", timeout=0)
            return loop.time() - started, ctx.exception

        elapsed, error = run_with_client(self.server, scenario)

        self.assertLess(elapsed, 0.5)
        self.assertEqual(0, error.seconds)

    def test_deletes_are_retried_through_the_policy(self) -> None:
        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            self.server.fail_next = [502]
            await client.delete_session(session.id)
            return session

        session = run_with_client(self.server, scenario)

        self.assertEqual(2, self.server.count("DELETE", f"/session/{session.id}"))
        self.assertNotIn(session.id, self.server.sessions)

    def test_send_message_cancel_signal(self) -> None:
        self.server.message_delay = 1.0

        async def scenario(client: OpenCodeClient):
            session = await client.create_session()
            cancel = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, cancel.set)
            started = asyncio.get_running_loop().time()
            with self.assertRaises(OperationCancelledError):
                await client.send_message(session.id, "ping", cancel=cancel)
            return asyncio.get_running_loop().time() - started

        elapsed = run_with_client(self.server, scenario)

        self.assertLess(elapsed, 0.5)


class HealthCheckTests(unittest.TestCase):
    def test_reachable_server_is_healthy(self) -> None:
        server = FakeOpenCodeServer()

        async def scenario(client: OpenCodeClient):
            return await client.check_health()

        health = run_with_client(server, scenario)

        self.assertTrue(health)
        self.assertIsNone(health.error)
        self.assertEqual(["/project"], [p for _, p in server.requests])

    def test_unreachable_server_reports_connection_failure(self) -> None:
        attempts = []

        def refuse(request: httpx.Request) -> httpx.Response:
            attempts.append(request.url.path)
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

        async def scenario():
            unreachable = "http://127.0.0.1:9"
            async with httpx.AsyncClient(base_url=unreachable, transport=httpx.MockTransport(refuse)) as http_client:
                config = make_config(base_url=unreachable)
                async with OpenCodeClient(config, http_client=http_client) as client:
                    return await client.check_health()

        health = asyncio.run(scenario())

        self.assertFalse(health)
        self.assertIsInstance(health.error, ConnectionFailureError)
        self.assertEqual("http://127.0.0.1:9", health.error.base_url)
        self.assertIn("http://127.0.0.1:9", str(health.error))
        self.assertEqual(3, len(attempts))

    def test_html_body_is_a_protocol_error(self) -> None:
        server = FakeOpenCodeServer()
        server.health_body = b"<!DOCTYPE html><html><body>proxy</body></html>"

        async def scenario(client: OpenCodeClient):
            await client.check_health()

        with self.assertRaises(ProtocolError) as ctx:
            run_with_client(server, scenario)

        self.assertIn(f"{BASE_URL}/project", str(ctx.exception))


class ScopedSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.server = FakeOpenCodeServer()

    def test_scoped_session_is_deleted_when_block_raises(self) -> None:
        captured = {}

        async def scenario(client: OpenCodeClient):
            with self.assertRaises(RuntimeError):
                async with client.scoped_session() as session:
                    captured["id"] = session.id
                    raise RuntimeError("boom")
            return client.registry.live_sessions

        live = run_with_client(self.server, scenario)

        self.assertEqual([], live)
        self.assertNotIn(captured["id"], self.server.sessions)
        self.assertEqual(1, self.server.count("DELETE", f"/session/{captured['id']}"))

    def test_close_releases_open_scopes(self) -> None:
        async def scenario(client: OpenCodeClient):
            scope = await client.create_session_scope()
            return scope

        scope = run_with_client(self.server, scenario)

        self.assertTrue(scope.released)
        self.assertEqual({}, self.server.sessions)
        self.assertEqual(1, self.server.count("DELETE", f"/session/{scope.session_id}"))

    def test_scoped_session_honours_cancel_signal(self) -> None:
        async def scenario(client: OpenCodeClient):
            cancel = asyncio.Event()
            cancel.set()
            with self.assertRaises(OperationCancelledError):
                async with client.scoped_session(cancel=cancel):
                    self.fail("block must not run")
            with self.assertRaises(OperationCancelledError):
                await client.create_session_scope(cancel=cancel)
            return client.registry.live_sessions

        live = run_with_client(self.server, scenario)

        self.assertEqual([], live)
        self.assertEqual(0, self.server.count("POST", "/session"))

    def test_create_session_scope_with_unset_cancel(self) -> None:
        async def scenario(client: OpenCodeClient):
            scope = await client.create_session_scope(CreateSessionRequest(title="scoped"), cancel=asyncio.Event())
            live = client.registry.live_sessions
            await scope.release()
            return scope, live

        scope, live = run_with_client(self.server, scenario)

        self.assertEqual("scoped", scope.session.title)
        self.assertEqual([scope.session_id], live)
        self.assertNotIn(scope.session_id, self.server.sessions)


if __name__ == "__main__":
    unittest.main()
