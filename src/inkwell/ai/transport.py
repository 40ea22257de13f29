"""Transport channel and the credential-holding broker behind it.

Adapters describe *where* a request goes with a :class:`ProviderRoute` that
names a credential reference, never a secret. The :class:`CredentialBroker`
is the only object that resolves the reference, attaches the provider's
authentication and talks HTTP. Every in-flight call is registered under a
request id so an abort can tear the underlying connection down rather than
just stop reading from it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import httpx

from ..services.credentials import CredentialVault
from ..utils.logging import redact_url
from .errors import AbortedError, ErrorCode, ProtocolError, TransportError
from .orchestration.cancellation import CancellationToken, race

__all__ = [
    "ProviderRoute",
    "CredentialBroker",
    "StreamHandle",
    "TransportChannel",
    "DEFAULT_REQUEST_TIMEOUT",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 180.0
_STREAM_QUEUE_SIZE = 256
_ERROR_BODY_LIMIT = 500
_ANTHROPIC_VERSION = "2023-06-01"


@dataclass(slots=True, frozen=True)
class ProviderRoute:
    """Destination of one provider call, free of secrets."""

    family: str
    url: str
    credential_ref: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Broker
# -----------------------------------------------------------------------------


class CredentialBroker:
    """Trusted intermediary that owns credentials and HTTP connections."""

    def __init__(
        self,
        vault: CredentialVault,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._vault = vault
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    @property
    def inflight(self) -> tuple[str, ...]:
        return tuple(self._inflight)

    def has_credential(self, credential_ref: str | None) -> bool:
        return self._vault.has(credential_ref)

    async def fetch(self, request_id: str, route: ProviderRoute, body: Mapping[str, Any]) -> str:
        """Perform a buffered POST and return the raw response text."""

        url, headers = self._authorize(route)
        task = asyncio.create_task(self._post(url, headers, body))
        self._inflight[request_id] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._inflight.pop(request_id, None)
        if task.cancelled():
            raise AbortedError("AI request aborted")
        return task.result()

    async def open_stream(
        self, request_id: str, route: ProviderRoute, body: Mapping[str, Any]
    ) -> "StreamHandle":
        """Start a streamed POST; returns once response headers are accepted.

        The body may then idle for as long as the caller's watchdog allows, but
        the headers must arrive within the request timeout.
        """

        url, headers = self._authorize(route)
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=_STREAM_QUEUE_SIZE)
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._pump(request_id, url, headers, body, queue, ready))
        self._inflight[request_id] = task
        try:
            await asyncio.wait({ready, task}, timeout=self._timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self.abort(request_id)
            raise
        if not ready.done() and not task.done():
            self.abort(request_id)
            ready.cancel()
            LOGGER.error("Stream %s sent no response headers within %.1fs", request_id, self._timeout)
            raise TransportError(
                f"AI request timed out: no response within {self._timeout:g}s",
                error_code=ErrorCode.TIMEOUT,
            )
        if not ready.done():
            ready.cancel()
            if task.cancelled():
                raise AbortedError("AI request aborted")
            exc = task.exception()
            if exc is not None:
                raise exc
        return StreamHandle(request_id, queue, task, self)

    def abort(self, request_id: str) -> bool:
        """Tear down the connection serving ``request_id`` if it is still open."""

        task = self._inflight.pop(request_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        LOGGER.debug("Broker aborted request %s", request_id)
        return True

    async def aclose(self) -> None:
        for request_id in list(self._inflight):
            self.abort(request_id)
        if self._owns_client:
            await self._client.aclose()

    def _authorize(self, route: ProviderRoute) -> tuple[str, dict[str, str]]:
        secret = self._vault.resolve(route.credential_ref)
        headers = {"Content-Type": "application/json", **dict(route.headers)}
        url = route.url
        if route.family == "anthropic":
            headers.setdefault("anthropic-version", _ANTHROPIC_VERSION)
            if secret:
                headers["x-api-key"] = secret
        elif route.family == "gemini":
            if secret:
                separator = "&" if "?" in url else "?"
                url = f"{url}{separator}key={secret}"
        elif route.family == "ollama":
            pass
        elif secret:
            headers["Authorization"] = f"Bearer {secret}"
        return url, headers

    async def _post(self, url: str, headers: Mapping[str, str], body: Mapping[str, Any]) -> str:
        LOGGER.debug("POST %s", redact_url(url))
        try:
            response = await self._client.post(url, json=body, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise TransportError("AI request timed out", error_code=ErrorCode.TIMEOUT) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"AI request failed: {exc}") from exc
        if response.status_code >= 400:
            raise _status_error(response.status_code, response.text)
        return response.text

    async def _pump(
        self,
        request_id: str,
        url: str,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        queue: asyncio.Queue[str],
        ready: asyncio.Future[None],
    ) -> None:
        LOGGER.debug("POST (stream) %s", redact_url(url))
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with self._client.stream(
                "POST", url, json=body, headers=headers, timeout=timeout
            ) as response:
                if response.status_code >= 400:
                    payload = await response.aread()
                    raise _status_error(response.status_code, payload.decode("utf-8", "replace"))
                if not ready.done():
                    ready.set_result(None)
                async for line in response.aiter_lines():
                    await queue.put(line)
        except httpx.TimeoutException as exc:
            raise TransportError("AI request timed out", error_code=ErrorCode.TIMEOUT) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"AI request failed: {exc}") from exc
        finally:
            self._inflight.pop(request_id, None)


def _status_error(status_code: int, body: str) -> TransportError:
    return TransportError(
        f"API error ({status_code}): {body[:_ERROR_BODY_LIMIT]}",
        error_code=ErrorCode.HTTP_STATUS,
        status_code=status_code,
    )


# -----------------------------------------------------------------------------
# Stream handle
# -----------------------------------------------------------------------------


class StreamHandle:
    """Bounded line channel fed by the broker's pump task.

    ``next_line`` returns ``None`` once the stream closed cleanly, raises
    :class:`AbortedError` if the connection was torn down and re-raises the
    pump's failure otherwise.
    """

    def __init__(
        self,
        request_id: str,
        queue: asyncio.Queue[str],
        task: asyncio.Task[None],
        broker: CredentialBroker,
    ) -> None:
        self.request_id = request_id
        self._queue = queue
        self._task = task
        self._broker = broker
        self._release: Callable[[], None] | None = None

    @property
    def closed(self) -> bool:
        return self._task.done() and self._queue.empty()

    def attach_release(self, release: Callable[[], None]) -> None:
        self._release = release

    async def next_line(self) -> str | None:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._task.done():
            return self._finish()
        getter = asyncio.ensure_future(self._queue.get())
        try:
            await asyncio.wait({getter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            getter.cancel()
            raise
        if getter.done() and not getter.cancelled():
            return getter.result()
        getter.cancel()
        if not self._queue.empty():
            return self._queue.get_nowait()
        return self._finish()

    def abort(self) -> None:
        """Ask the broker to tear down the connection."""

        self._broker.abort(self.request_id)
        self._run_release()

    def close(self) -> None:
        if not self._task.done():
            self._broker.abort(self.request_id)
        self._run_release()

    def _finish(self) -> None:
        self._run_release()
        if self._task.cancelled():
            raise AbortedError("Stream aborted")
        exc = self._task.exception()
        if exc is not None:
            raise exc
        return None

    def _run_release(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()


# -----------------------------------------------------------------------------
# Channel
# -----------------------------------------------------------------------------


class TransportChannel:
    """Caller-side entry point: request ids, cancellation wiring, JSON decoding."""

    def __init__(self, broker: CredentialBroker) -> None:
        self._broker = broker

    @property
    def broker(self) -> CredentialBroker:
        return self._broker

    async def send(
        self, route: ProviderRoute, body: Mapping[str, Any], token: CancellationToken
    ) -> Any:
        """Buffered call; returns the decoded JSON body."""

        request_id = _new_request_id()
        unregister = token.on_cancel(lambda: self._broker.abort(request_id))
        try:
            text = await race(self._broker.fetch(request_id, route, body), token)
        finally:
            unregister()
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProtocolError(
                "Provider returned a body that is not valid JSON",
                details={"body": text[:_ERROR_BODY_LIMIT]},
            ) from exc

    async def open_stream(
        self, route: ProviderRoute, body: Mapping[str, Any], token: CancellationToken
    ) -> StreamHandle:
        """Open a streamed call whose connection is torn down if ``token`` fires."""

        request_id = _new_request_id()
        unregister = token.on_cancel(lambda: self._broker.abort(request_id))
        try:
            handle = await race(self._broker.open_stream(request_id, route, body), token)
        except BaseException:
            unregister()
            raise
        handle.attach_release(unregister)
        return handle


def _new_request_id() -> str:
    return f"req-{uuid.uuid4().hex}"
