"""Tests for the transport channel and credential broker."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from inkwell.ai.errors import AbortedError, ErrorCode, ProtocolError, TransportError
from inkwell.ai.orchestration.cancellation import CancellationToken
from inkwell.ai.transport import ProviderRoute, TransportChannel
from inkwell.services.credentials import CredentialVault

from helpers import block_forever, make_broker, sse, stalling_body, wait_until


def _route(family: str = "openai", url: str = "https://api.example.com/v1/chat/completions") -> ProviderRoute:
    return ProviderRoute(family=family, url=url, credential_ref="test")


# =============================================================================
# Authentication
# =============================================================================


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_bearer_header_for_openai_family(self, vault: CredentialVault) -> None:
        vault.store("test", "sk-secret")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        channel = TransportChannel(make_broker(vault, handler))
        payload = await channel.send(_route(), {"model": "m"}, CancellationToken(1))

        assert payload == {"ok": True}
        assert seen[0].headers["Authorization"] == "Bearer sk-secret"
        assert json.loads(seen[0].content) == {"model": "m"}

    @pytest.mark.asyncio
    async def test_anthropic_headers(self, vault: CredentialVault) -> None:
        vault.store("test", "ant-key")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        channel = TransportChannel(make_broker(vault, handler))
        await channel.send(_route("anthropic", "https://api.anthropic.com/v1/messages"), {}, CancellationToken(1))

        assert seen[0].headers["x-api-key"] == "ant-key"
        assert seen[0].headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_gemini_key_goes_in_query(self, vault: CredentialVault) -> None:
        vault.store("test", "g-key")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        channel = TransportChannel(make_broker(vault, handler))
        route = _route("gemini", "https://generativelanguage.googleapis.com/v1beta/models/g:generateContent")
        await channel.send(route, {}, CancellationToken(1))

        assert seen[0].url.params["key"] == "g-key"
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_missing_credential_sends_no_auth(self, vault: CredentialVault) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        channel = TransportChannel(make_broker(vault, handler))
        await channel.send(_route(), {}, CancellationToken(1))

        assert "Authorization" not in seen[0].headers


# =============================================================================
# Buffered calls
# =============================================================================


class TestBufferedSend:
    @pytest.mark.asyncio
    async def test_http_error_status(self, vault: CredentialVault) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="rate limited")

        channel = TransportChannel(make_broker(vault, handler))

        with pytest.raises(TransportError) as excinfo:
            await channel.send(_route(), {}, CancellationToken(1))

        assert excinfo.value.status_code == 429
        assert excinfo.value.error_code == ErrorCode.HTTP_STATUS
        assert "API error (429): rate limited" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_network_failure(self, vault: CredentialVault) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        channel = TransportChannel(make_broker(vault, handler))

        with pytest.raises(TransportError) as excinfo:
            await channel.send(_route(), {}, CancellationToken(1))

        assert excinfo.value.message.startswith("AI request failed")

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self, vault: CredentialVault) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        channel = TransportChannel(make_broker(vault, handler))

        with pytest.raises(TransportError) as excinfo:
            await channel.send(_route(), {}, CancellationToken(1))

        assert excinfo.value.error_code == ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_invalid_json_is_protocol_error(self, vault: CredentialVault) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>gateway</html>")

        channel = TransportChannel(make_broker(vault, handler))

        with pytest.raises(ProtocolError) as excinfo:
            await channel.send(_route(), {}, CancellationToken(1))

        assert excinfo.value.details["body"] == "<html>gateway</html>"

    @pytest.mark.asyncio
    async def test_abort_tears_down_inflight_request(self, vault: CredentialVault) -> None:
        gate = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await gate.wait()
            return httpx.Response(200, json={})

        broker = make_broker(vault, handler)
        channel = TransportChannel(broker)
        token = CancellationToken(1)
        task = asyncio.create_task(channel.send(_route(), {}, token))
        await wait_until(lambda: len(broker.inflight) == 1)

        token.cancel()

        with pytest.raises(AbortedError):
            await asyncio.wait_for(task, 1.0)
        assert broker.inflight == ()


# =============================================================================
# Streams
# =============================================================================


class TestStreams:
    @pytest.mark.asyncio
    async def test_stream_delivers_lines_in_order(self, vault: CredentialVault) -> None:
        body = sse({"n": 1}) + sse({"n": 2}) + sse("[DONE]")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        broker = make_broker(vault, handler)
        handle = await TransportChannel(broker).open_stream(_route(), {}, CancellationToken(1))
        lines: list[str] = []
        while True:
            line = await handle.next_line()
            if line is None:
                break
            if line:
                lines.append(line)

        assert lines == ['data: {"n": 1}', 'data: {"n": 2}', "data: [DONE]"]
        assert broker.inflight == ()

    @pytest.mark.asyncio
    async def test_stream_error_status_raises_before_handle(self, vault: CredentialVault) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="invalid key")

        channel = TransportChannel(make_broker(vault, handler))

        with pytest.raises(TransportError) as excinfo:
            await channel.open_stream(_route(), {}, CancellationToken(1))

        assert excinfo.value.status_code == 401

    @pytest.mark.asyncio
    async def test_silent_server_times_out_before_headers(self, vault: CredentialVault) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await block_forever()
            return httpx.Response(200)

        broker = make_broker(vault, handler, timeout=0.05)

        with pytest.raises(TransportError) as excinfo:
            await asyncio.wait_for(
                TransportChannel(broker).open_stream(_route(), {}, CancellationToken(1)), 1.0
            )

        assert excinfo.value.error_code == ErrorCode.TIMEOUT
        assert broker.inflight == ()

    @pytest.mark.asyncio
    async def test_cancelling_token_aborts_open_stream(self, vault: CredentialVault) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=stalling_body(sse({"n": 1})))

        broker = make_broker(vault, handler)
        token = CancellationToken(1)
        handle = await TransportChannel(broker).open_stream(_route(), {}, token)
        assert await handle.next_line() == 'data: {"n": 1}'

        token.cancel()

        assert broker.inflight == ()
        with pytest.raises(AbortedError):
            while await handle.next_line() is not None:
                pass
