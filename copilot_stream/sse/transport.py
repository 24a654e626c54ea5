"""
SSE Transport
=============

Transport layer under the connection manager. A transport owns exactly one
HTTP streaming request and reports what happens to it through callbacks:
``on_response`` (status and headers), ``on_open``, ``on_message`` for every
decoded SSEMessage, and ``on_error`` when the stream fails or ends.

``close()`` is synchronous; once it returns no further callback fires.
"""

from typing import Any, Callable, Mapping, Optional, Protocol
import asyncio
import codecs

import aiohttp

from copilot_stream.config.logging import get_logger
from copilot_stream.config.settings import StreamSettings, get_settings
from .events import SSEDecoder
from .models import SSEMessage

logger = get_logger(__name__)

OpenCallback = Callable[[], Any]
MessageCallback = Callable[[SSEMessage], Any]
ErrorCallback = Callable[["TransportError"], Any]
ResponseCallback = Callable[[int, Mapping[str, str]], Any]


class TransportError(Exception):
    """Exception describing a failed or terminated stream."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.headers = dict(headers or {})


class Transport(Protocol):
    """One streaming request; created per connection attempt."""

    def start(self) -> None: ...

    def close(self) -> None: ...

    @property
    def closed(self) -> bool: ...


class TransportFactory(Protocol):
    def __call__(
        self,
        url: str,
        headers: Mapping[str, str],
        on_open: OpenCallback,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        on_response: Optional[ResponseCallback] = None,
    ) -> Transport: ...


class AiohttpSSETransport:
    """Streams text/event-stream over an aiohttp GET request."""

    def __init__(
        self,
        url: str,
        headers: Mapping[str, str],
        on_open: OpenCallback,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        on_response: Optional[ResponseCallback] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            **dict(headers),
        }
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self._on_response = on_response
        self._timeout = timeout or aiohttp.ClientTimeout(total=None, connect=10)
        self._session = session
        self._owns_session = session is None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.logger: Any = logger.bind(component="sse_transport", url=url)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the reader task on the running event loop."""
        if self._task is not None:
            raise RuntimeError("Transport already started")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        """Stop the stream. Safe to call from inside a transport callback."""
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        self.logger.debug("Transport closed")

    async def _run(self) -> None:
        session = self._session
        if session is None:
            session = aiohttp.ClientSession(timeout=self._timeout)

        try:
            async with session.get(self.url, headers=self.headers) as response:
                if self._closed:
                    return
                if self._on_response is not None:
                    self._on_response(response.status, dict(response.headers))
                if response.status >= 400:
                    body = await response.text()
                    raise TransportError(
                        f"Stream request failed: {response.status} {body[:200]}".strip(),
                        status=response.status,
                        headers=dict(response.headers),
                    )
                if self._closed:
                    return

                self._on_open()
                await self._read_stream(response)

            if not self._closed:
                raise TransportError("Stream closed by server")

        except asyncio.CancelledError:
            if not self._closed:
                raise
        except TransportError as e:
            self._fail(e)
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
            self._fail(TransportError(str(e) or type(e).__name__))
        finally:
            if self._owns_session and not session.closed:
                await session.close()

    async def _read_stream(self, response: aiohttp.ClientResponse) -> None:
        decoder = SSEDecoder()
        text_decoder = codecs.getincrementaldecoder("utf-8")()

        async for chunk in response.content.iter_any():
            if self._closed:
                return
            for message in decoder.feed(text_decoder.decode(chunk)):
                self._on_message(message)
                if self._closed:
                    return

    def _fail(self, error: TransportError) -> None:
        if self._closed:
            return
        self.logger.warning("Transport error", error=error.message, status=error.status)
        self._on_error(error)


def create_transport_factory(
    settings: Optional[StreamSettings] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> TransportFactory:
    """
    Build a factory producing AiohttpSSETransport instances.

    Args:
        settings: Supplies connect/read timeouts (defaults to get_settings())
        session: Optional shared session; when omitted each transport owns one

    Returns:
        Callable matching the TransportFactory protocol
    """
    settings = settings or get_settings()
    timeout = aiohttp.ClientTimeout(
        total=None,
        connect=settings.connect_timeout_seconds,
        sock_read=settings.read_timeout_seconds,
    )

    def factory(
        url: str,
        headers: Mapping[str, str],
        on_open: OpenCallback,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        on_response: Optional[ResponseCallback] = None,
    ) -> AiohttpSSETransport:
        return AiohttpSSETransport(
            url,
            headers,
            on_open=on_open,
            on_message=on_message,
            on_error=on_error,
            on_response=on_response,
            timeout=timeout,
            session=session,
        )

    return factory
