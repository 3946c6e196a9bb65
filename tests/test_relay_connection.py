from __future__ import annotations

import asyncio
import json
from typing import Any

from relay_fakes import FakeBackend, FakeWs


def _conn(backend: FakeBackend, **overrides: Any):  # type: ignore[no-untyped-def]
    from mcp_servers.browser_relay.config import RelayConfig
    from mcp_servers.browser_relay.connection import RelayConnection

    cfg = {"context_retry_delay": 0.0, "reattach_delay": 0.0, **overrides}
    ws = FakeWs()
    conn = RelayConnection(ws, backend, config=RelayConfig(**cfg), client_id="chrome-test")
    return conn, ws


async def _settle(conn) -> None:  # type: ignore[no-untyped-def]
    for _ in range(3):
        await conn.drain_events()
        await conn.wait_idle()


async def _call(conn, ws, request_id: Any, method: str, params: dict | None = None) -> dict:  # type: ignore[no-untyped-def]
    frame: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        frame["params"] = params
    task = await conn.handle_raw(json.dumps(frame))
    assert task is not None
    await task
    await _settle(conn)
    return ws.responses()[request_id]


def _tabs(*ids: str) -> FakeBackend:
    backend = FakeBackend()
    for tab in ids:
        backend.add_tab(tab, url=f"https://example.com/{tab}")
    return backend


def test_unknown_method_keeps_string_id() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("1"))
        resp = await _call(conn, ws, "tenantA:17", "doesNotExist")
        assert resp["id"] == "tenantA:17"
        assert resp["error"]["code"] == -32601
        assert "doesNotExist" in resp["error"]["message"]

    asyncio.run(_run())


def test_current_tab_is_null_until_a_tab_is_selected() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3", "4"))
        resp = await _call(conn, ws, 1, "getTabs")
        assert resp["result"]["currentTab"] is None
        assert [t["id"] for t in resp["result"]["tabs"]] == ["3", "4"]

        resp = await _call(conn, ws, 2, "selectTab", {"tabIndex": 1})
        assert resp["result"]["success"] is True
        assert resp["result"]["currentTab"]["id"] == "4"

        resp = await _call(conn, ws, 3, "getTabs")
        assert resp["result"]["currentTab"]["id"] == "4"

    asyncio.run(_run())


def test_tab_commands_without_attachment_ask_to_retry() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3"))
        resp = await _call(conn, ws, 5, "getConsoleMessages")
        assert resp["error"]["code"] == -32001
        assert "retry" in resp["error"]["message"].lower()

    asyncio.run(_run())


def test_malformed_frame_does_not_kill_connection() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3"))
        assert await conn.handle_raw("{not json") is None
        err = ws.sent[-1]
        assert err["id"] is None
        assert err["error"]["code"] == -32700

        resp = await _call(conn, ws, 2, "getTabs")
        assert resp["result"]["count"] == 1
        assert conn.closed is False

    asyncio.run(_run())


def test_console_capture_for_attached_tab() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3"))
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})

        conn.backend.emit("3", "Runtime.consoleAPICalled", {"type": "log", "args": [{"type": "string", "value": "hello"}]})
        await _settle(conn)

        resp = await _call(conn, ws, 2, "getConsoleMessages")
        assert [m["text"] for m in resp["result"]["messages"]] == ["hello"]
        assert resp["result"]["currentTab"]["id"] == "3"

        forwarded = [n for n in ws.notifications("forwardCDPEvent") if n["method"] == "Runtime.consoleAPICalled"]
        assert forwarded and forwarded[0]["tabId"] == "3"
        assert "tenant" not in forwarded[0]

        await _call(conn, ws, 3, "clearConsoleMessages")
        resp = await _call(conn, ws, 4, "getConsoleMessages")
        assert resp["result"]["messages"] == []

    asyncio.run(_run())


def test_tenants_cannot_share_a_tab_until_owner_disconnects() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3", "4"))
        resp = await _call(conn, ws, "alpha:1", "selectTab", {"tabIndex": 0})
        assert resp["result"]["success"] is True

        resp = await _call(conn, ws, "beta:1", "selectTab", {"tabIndex": 0})
        assert resp["error"]["code"] == -32002
        assert "alpha" in resp["error"]["message"]

        resp = await _call(conn, ws, "beta:2", "selectTab", {"tabIndex": 1})
        assert resp["result"]["currentTab"]["id"] == "4"

        await conn.handle_raw(json.dumps({"jsonrpc": "2.0", "method": "client_disconnected", "params": {"tenant": "alpha"}}))
        assert conn.registry.tenant_for_tab("3") is None

        resp = await _call(conn, ws, "beta:3", "selectTab", {"tabIndex": 0})
        assert resp["result"]["currentTab"]["id"] == "3"
        assert conn.registry.tenant_for_tab("3") == "beta"
        assert conn.registry.tenant_for_tab("4") is None

    asyncio.run(_run())


def test_tenant_events_are_tagged_and_routed_to_owner() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3", "4"))
        await _call(conn, ws, "alpha:1", "selectTab", {"tabIndex": 0})
        await _call(conn, ws, "beta:1", "selectTab", {"tabIndex": 1})

        conn.backend.emit("4", "Runtime.consoleAPICalled", {"args": [{"value": "for beta"}]})
        await _settle(conn)

        alpha = await _call(conn, ws, "alpha:2", "getConsoleMessages")
        beta = await _call(conn, ws, "beta:2", "getConsoleMessages")
        assert alpha["result"]["messages"] == []
        assert [m["text"] for m in beta["result"]["messages"]] == ["for beta"]

        forwarded = [n for n in ws.notifications("forwardCDPEvent") if n["tabId"] == "4"]
        assert forwarded and all(n["tenant"] == "beta" for n in forwarded)

    asyncio.run(_run())


def test_tenants_are_served_independently() -> None:
    class SlowBackend(FakeBackend):
        def __init__(self) -> None:
            super().__init__()
            self.release = asyncio.Event()

        async def send_command(self, tab_id, method, params=None, *, session_id=None):  # type: ignore[no-untyped-def]
            if method == "Slow.wait":
                self.calls.append(("send", (tab_id, method, dict(params or {}))))
                await self.release.wait()
                return {"done": True}
            return await super().send_command(tab_id, method, params, session_id=session_id)

    async def _run() -> None:
        backend = SlowBackend()
        backend.add_tab("3")
        backend.add_tab("4")
        conn, ws = _conn(backend)
        await _call(conn, ws, "alpha:1", "selectTab", {"tabIndex": 0})
        await _call(conn, ws, "beta:1", "selectTab", {"tabIndex": 1})

        slow = await conn.handle_raw(
            json.dumps({"id": "alpha:2", "method": "forwardCDPCommand", "params": {"method": "Slow.wait"}})
        )
        fast = await conn.handle_raw(json.dumps({"id": "beta:2", "method": "getTabs"}))
        assert slow is not None and fast is not None
        await asyncio.wait_for(fast, timeout=2)
        assert "beta:2" in ws.responses()
        assert "alpha:2" not in ws.responses()

        backend.release.set()
        await asyncio.wait_for(slow, timeout=2)
        assert ws.responses()["alpha:2"]["result"]["done"] is True

    asyncio.run(_run())


def test_forward_cdp_command_pins_main_context() -> None:
    async def _run() -> None:
        backend = _tabs("3")
        backend.command_results["Runtime.evaluate"] = {"result": {"type": "number", "value": 2}}
        conn, ws = _conn(backend)
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})
        ctx_id = conn.get_slot(":direct").main_context_id
        assert ctx_id is not None

        resp = await _call(
            conn, ws, 2, "forwardCDPCommand", {"method": "Runtime.evaluate", "params": {"expression": "1+1"}}
        )
        assert resp["result"]["result"]["value"] == 2
        _tab, _method, params = backend.calls_of("send")[-1]
        assert params["contextId"] == ctx_id

        await _call(
            conn, ws, 3, "forwardCDPCommand", {"method": "Runtime.evaluate", "params": {"expression": "1", "contextId": 7}}
        )
        assert backend.calls_of("send")[-1][2]["contextId"] == 7

        await _call(conn, ws, 4, "forwardCDPCommand", {"method": "DOM.getDocument"})
        assert "contextId" not in backend.calls_of("send")[-1][2]

    asyncio.run(_run())


def test_forward_cdp_command_retries_without_stale_context() -> None:
    class StaleContextBackend(FakeBackend):
        async def send_command(self, tab_id, method, params=None, *, session_id=None):  # type: ignore[no-untyped-def]
            if method == "Runtime.evaluate" and (params or {}).get("expression") == "document.title":
                self.calls.append(("send", (tab_id, method, dict(params or {}))))
                if "contextId" in (params or {}):
                    raise RuntimeError("Cannot find context with specified id")
                return {"result": {"value": "ok"}}
            return await super().send_command(tab_id, method, params, session_id=session_id)

    async def _run() -> None:
        backend = StaleContextBackend()
        backend.add_tab("3")
        conn, ws = _conn(backend)
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})

        resp = await _call(
            conn, ws, 2, "forwardCDPCommand", {"method": "Runtime.evaluate", "params": {"expression": "document.title"}}
        )
        assert resp["result"]["result"]["value"] == "ok"
        attempts = [p for (_t, m, p) in backend.calls_of("send") if p.get("expression") == "document.title"]
        assert "contextId" in attempts[0]
        assert "contextId" not in attempts[1]

    asyncio.run(_run())


def test_forward_cdp_command_errors_are_reported() -> None:
    async def _run() -> None:
        backend = _tabs("3")
        backend.command_errors["Page.navigate"] = RuntimeError("Cannot navigate to invalid URL")
        conn, ws = _conn(backend)
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})

        resp = await _call(conn, ws, 2, "forwardCDPCommand", {"method": "Page.navigate", "params": {"url": "::"}})
        assert resp["error"]["code"] == -32000
        assert "invalid URL" in resp["error"]["message"]

        resp = await _call(conn, ws, 3, "forwardCDPCommand", {"params": {}})
        assert resp["error"]["code"] == -32602

    asyncio.run(_run())


def test_stealth_hides_console_but_keeps_network() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3"))
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0, "stealth": True})
        assert ws.notifications("setStealthMode")[-1] == {"stealthMode": True}

        conn.backend.emit("3", "Runtime.consoleAPICalled", {"args": [{"value": "secret"}]})
        conn.backend.emit("3", "Network.requestWillBeSent", {"requestId": "r1", "request": {"url": "https://a/"}})
        conn.backend.emit("3", "Network.responseReceived", {"requestId": "r1", "response": {"status": 200}})
        await _settle(conn)

        console = await _call(conn, ws, 2, "getConsoleMessages")
        network = await _call(conn, ws, 3, "getNetworkRequests")
        assert console["result"]["messages"] == []
        assert [r["statusCode"] for r in network["result"]["requests"]] == [200]

        methods = [n["method"] for n in ws.notifications("forwardCDPEvent")]
        assert "Runtime.consoleAPICalled" not in methods
        assert "Network.responseReceived" in methods

        await _call(conn, ws, 4, "setStealthMode", {"stealth": False})
        conn.backend.emit("3", "Runtime.consoleAPICalled", {"args": [{"value": "visible"}]})
        await _settle(conn)
        console = await _call(conn, ws, 5, "getConsoleMessages")
        assert [m["text"] for m in console["result"]["messages"]] == ["visible"]

    asyncio.run(_run())


def test_navigation_detach_recovers_and_commands_resume() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("5"))
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})
        slot = conn.get_slot(":direct")
        first_ctx = slot.main_context_id

        conn.backend.drop("5", "target_closed")
        await _settle(conn)

        assert slot.state == "attached"
        assert slot.tab_id == "5"
        assert slot.main_context_id != first_ctx
        resp = await _call(conn, ws, 2, "getNetworkRequests")
        assert resp["result"]["currentTab"]["id"] == "5"
        assert conn.registry.tenant_for_tab("5") == ":direct"

    asyncio.run(_run())


def test_command_sent_while_recovering_waits_for_the_tab() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("5"), reattach_delay=0.02)
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})
        slot = conn.get_slot(":direct")

        conn.backend.drop("5", "target_closed")
        await conn.drain_events()
        await asyncio.sleep(0)
        assert slot.state == "recovering"

        resp = await _call(conn, ws, 2, "forwardCDPCommand", {"method": "DOM.getDocument"})
        assert "error" not in resp
        assert resp["result"]["currentTab"]["id"] == "5"
        assert ("send", ("5", "DOM.getDocument", {})) in conn.backend.calls

    asyncio.run(_run())


def test_reselecting_own_tab_during_recovery_keeps_ownership() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("5"), reattach_delay=0.05)
        await _call(conn, ws, "a:1", "selectTab", {"tabIndex": 0})
        slot = conn.get_slot("a")

        conn.backend.drop("5", "target_closed")
        await conn.drain_events()
        await asyncio.sleep(0)
        assert slot.state == "recovering"

        resp = await _call(conn, ws, "a:2", "selectTab", {"tabIndex": 0})
        assert resp["result"]["currentTab"]["id"] == "5"
        assert slot.state == "attached"
        assert conn.registry.tenant_for_tab("5") == "a"
        assert conn.backend.calls_of("detach") == []

        resp = await _call(conn, ws, "b:1", "selectTab", {"tabIndex": 0})
        assert resp["error"]["code"] == -32002
        assert conn.registry.tenant_for_tab("5") == "a"
        assert conn.get_slot("b").tab_id is None

    asyncio.run(_run())


def test_create_tab_refuses_browser_internal_urls() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("1"))
        resp = await _call(conn, ws, 1, "createTab", {"url": "chrome://settings"})
        assert resp["error"]["code"] == -32004
        assert "chrome://settings" in resp["error"]["message"]
        assert conn.backend.calls_of("create_tab") == []
        assert conn.backend.calls_of("attach") == []

        resp = await _call(conn, ws, 2, "getTabs")
        assert resp["result"]["currentTab"] is None

    asyncio.run(_run())


def test_command_and_session_registries_log_separately() -> None:
    from mcp_servers.browser_relay import registry as sessions
    from mcp_servers.browser_relay.server import registry as commands

    assert commands.logger.name == "mcp.relay.commands"
    assert sessions.logger.name != commands.logger.name


def test_closed_tab_leaves_connection_detached() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("7"))
        await _call(conn, ws, "t:1", "selectTab", {"tabIndex": 0})

        conn.backend.remove_tab("7")
        conn.backend.drop("7", "target_closed")
        await _settle(conn)

        resp = await _call(conn, ws, "t:2", "getConsoleMessages")
        assert resp["error"]["code"] == -32001
        assert conn.registry.resolve_tab("t") is None
        assert conn.registry.tenant_for_tab("7") is None

    asyncio.run(_run())


def test_tab_lifecycle_commands() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("1", "2"))
        conn.backend.add_tab("9", url="chrome://settings")

        resp = await _call(conn, ws, 1, "createTab", {"url": "https://new.example/"})
        assert resp["result"]["tab"]["url"] == "https://new.example/"
        new_id = resp["result"]["tab"]["id"]
        assert resp["result"]["currentTab"]["id"] == new_id

        resp = await _call(conn, ws, 2, "selectTab", {"tabIndex": 2})
        assert resp["error"]["code"] == -32004
        assert "chrome://settings" in resp["error"]["message"]

        resp = await _call(conn, ws, 3, "selectTab", {"tabIndex": 40})
        assert resp["error"]["code"] == -32602

        resp = await _call(conn, ws, 4, "activateTab", {"tabIndex": 1})
        assert resp["result"]["activated"] is True
        assert conn.backend.calls_of("activate_tab") == ["2"]
        assert resp["result"]["currentTab"]["id"] == new_id

        resp = await _call(conn, ws, 5, "closeTab")
        assert resp["result"]["closedTabId"] == new_id
        assert resp["result"]["currentTab"] is None
        assert new_id not in conn.backend.tabs

        await _call(conn, ws, 6, "selectTab", {"tabIndex": 0})
        resp = await _call(conn, ws, 7, "detachTab")
        assert resp["result"]["detached"] is True
        assert resp["result"]["currentTab"] is None

        resp = await _call(conn, ws, 8, "detachTab")
        assert resp["error"]["code"] == -32001

    asyncio.run(_run())


def test_attach_to_tab_creates_blank_tab_when_needed() -> None:
    async def _run() -> None:
        backend = _tabs("1")
        backend.command_results["Target.getTargetInfo"] = {"targetInfo": {"targetId": "t", "type": "page"}}
        conn, ws = _conn(backend)

        resp = await _call(conn, ws, 1, "attachToTab")
        assert resp["result"]["targetInfo"]["type"] == "page"
        created = backend.calls_of("create_tab")
        assert created and created[0][1] == "about:blank"

        await _call(conn, ws, 2, "attachToTab")
        assert len(backend.calls_of("create_tab")) == 1

    asyncio.run(_run())


def test_control_ids_use_their_own_session() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("3", "4"))
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})
        resp = await _call(conn, ws, "proxy_control:auth", "authenticate")
        assert resp["id"] == "proxy_control:auth"
        assert resp["result"]["client_id"] == "chrome-test"
        assert resp["result"]["currentTab"] is None

        resp = await _call(conn, ws, "proxy_control:tabs", "selectTab", {"tabIndex": 1})
        assert resp["result"]["currentTab"]["id"] == "4"
        assert conn.get_slot(":direct").tab_id == "3"

    asyncio.run(_run())


def test_handshake_and_server_notifications(tmp_path) -> None:  # type: ignore[no-untyped-def]
    from mcp_servers.browser_relay.client_id import ClientIdentity
    from mcp_servers.browser_relay.config import RelayConfig
    from mcp_servers.browser_relay.connection import RELAY_VERSION, RelayConnection

    async def _run() -> None:
        identity = ClientIdentity(tmp_path)
        ws = FakeWs()
        conn = RelayConnection(
            ws, FakeBackend(), config=RelayConfig(access_token="s3cret", browser_name="Chromium"), identity=identity
        )
        await conn.send_handshake()
        [hello] = ws.notifications("extension_handshake")
        assert hello["name"] == "Chromium"
        assert hello["accessToken"] == "s3cret"
        assert hello["version"] == RELAY_VERSION
        assert hello["clientId"].startswith("chrome-")
        assert hello["clientId"] == identity.stable_id()

        await conn.handle_raw(json.dumps({"type": "connection_status", "connected": True, "clients": 2}))
        assert conn.server_status["clients"] == 2

        await conn.handle_raw(json.dumps({"method": "authenticated", "params": {"client_id": "srv-1"}}))
        assert conn.server_client_id == "srv-1"
        assert ClientIdentity(tmp_path).server_id() == "srv-1"

    asyncio.run(_run())


def test_reload_self_answers_then_closes_socket() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("1"))
        resp = await _call(conn, ws, 1, "reloadSelf")
        assert resp["result"]["reloaded"] is True
        assert ws.closed is True

    asyncio.run(_run())


def test_diagnostics_commands() -> None:
    async def _run() -> None:
        backend = _tabs("1")
        backend.extensions = [{"id": "abc", "name": "uBlock Origin", "enabled": True}]
        conn, ws = _conn(backend)
        await conn.handle_raw("garbage")
        await _call(conn, ws, "t:1", "selectTab", {"tabIndex": 0})

        logs = await _call(conn, ws, "t:2", "getLogs")
        assert logs["result"]["count"] >= 1
        assert {"ts", "level", "message"} <= set(logs["result"]["logs"][0])

        exts = await _call(conn, ws, "t:3", "listExtensions")
        assert exts["result"]["extensions"][0]["name"] == "uBlock Origin"

        status = await _call(conn, ws, "t:4", "getStatus")
        assert status["result"]["tenants"] == ["t"]
        assert status["result"]["slots"]["t"]["state"] == "attached"

    asyncio.run(_run())


def test_close_releases_everything() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("1", "2"))
        await _call(conn, ws, 1, "selectTab", {"tabIndex": 0})
        await _call(conn, ws, "t:1", "selectTab", {"tabIndex": 1})

        await conn.close("test")
        assert ws.closed is True
        assert sorted(conn.backend.calls_of("detach")) == ["1", "2"]
        assert conn.registry.bound_tabs() == []
        assert conn.telemetry.tab_ids() == []

        sent = len(ws.sent)
        await conn.send_notification("late", {})
        assert len(ws.sent) == sent

    asyncio.run(_run())


def test_reaper_sweep_releases_slots_of_vanished_tabs() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("1", "2"))
        await _call(conn, ws, "t:1", "selectTab", {"tabIndex": 0})
        conn.backend.emit("1", "Runtime.consoleAPICalled", {"args": [{"value": "x"}]})
        await _settle(conn)

        conn.backend.remove_tab("1")
        evicted = await conn.reaper.sweep()
        assert evicted == {"1"}
        assert conn.telemetry.get_console("1") == []
        assert conn.registry.tenant_for_tab("1") is None

        resp = await _call(conn, ws, "t:2", "getConsoleMessages")
        assert resp["error"]["code"] == -32001

    asyncio.run(_run())


def test_open_test_page_and_clear_telemetry() -> None:
    async def _run() -> None:
        conn, ws = _conn(_tabs("1"), test_page_url="https://diag.example/")
        resp = await _call(conn, ws, 1, "openTestPage")
        assert resp["result"]["url"] == "https://diag.example/"
        assert conn.backend.tabs[resp["result"]["tab"]["id"]].url == "https://diag.example/"
        assert resp["result"]["currentTab"] is None

        await _call(conn, ws, 2, "selectTab", {"tabIndex": 0})
        conn.backend.emit("1", "Runtime.consoleAPICalled", {"args": [{"value": "x"}]})
        conn.backend.emit("1", "Network.requestWillBeSent", {"requestId": "r1", "request": {"url": "https://a/"}})
        await _settle(conn)

        await _call(conn, ws, 3, "clearTelemetry")
        assert conn.telemetry.get_console("1") == []
        assert conn.telemetry.pending_count() == 0

    asyncio.run(_run())
