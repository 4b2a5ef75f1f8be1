"""
Sync Transport

Message channels between a client and the relay. A transport carries text
frames in order and reports open, message and close events to its handlers.
``send`` never blocks: frames are queued and written by the transport.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

from boardsync.errors import TransportError
from boardsync.logging import get_logger

if TYPE_CHECKING:
    from boardsync.sync.server import RelayHub

logger = get_logger("sync.transport")

# Seconds a closing WebSocketTransport waits for queued frames to go out
CLOSE_FLUSH_TIMEOUT = 2.0


class Transport(ABC):
    """A single client-side channel to the relay."""

    def __init__(self):
        self._on_open: list[Callable[[], None]] = []
        self._on_message: list[Callable[[str], None]] = []
        self._on_close: list[Callable[[bool], None]] = []

    def on_open(self, handler: Callable[[], None]) -> None:
        """Add handler called once the channel is usable."""
        self._on_open.append(handler)

    def on_message(self, handler: Callable[[str], None]) -> None:
        """Add handler called with every received frame."""
        self._on_message.append(handler)

    def on_close(self, handler: Callable[[bool], None]) -> None:
        """Add handler called when the channel closes; the flag is True when unexpected."""
        self._on_close.append(handler)

    def _emit_open(self) -> None:
        for handler in self._on_open:
            try:
                handler()
            except Exception as e:
                logger.error(f"Open handler error: {e}")

    def _emit_message(self, raw: str) -> None:
        for handler in self._on_message:
            try:
                handler(raw)
            except Exception as e:
                logger.error(f"Message handler error: {e}")

    def _emit_close(self, unexpected: bool) -> None:
        for handler in self._on_close:
            try:
                handler(unexpected)
            except Exception as e:
                logger.error(f"Close handler error: {e}")

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if frames can be sent."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel. Raises TransportError on failure."""

    @abstractmethod
    def send(self, message: str) -> None:
        """Queue a frame for sending. Frames sent while closed are dropped."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel intentionally."""


class WebSocketTransport(Transport):
    """Transport over a websockets client connection."""

    def __init__(self, url: str, open_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.open_timeout = open_timeout
        self._websocket = None
        self._queue: asyncio.Queue[str] | None = None
        self._reader: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._websocket is not None and not self._closing

    async def connect(self) -> None:
        try:
            import websockets
        except ImportError as e:
            raise TransportError("websockets not installed. Install with: pip install websockets") from e

        try:
            self._websocket = await asyncio.wait_for(websockets.connect(self.url), timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Connection to {self.url} failed: {e}") from e

        self._closing = False
        self._queue = asyncio.Queue()
        self._reader = asyncio.create_task(self._read_loop())
        self._writer = asyncio.create_task(self._write_loop())
        logger.info(f"Connected to {self.url}")
        self._emit_open()

    def send(self, message: str) -> None:
        if not self.is_open or self._queue is None:
            logger.debug("Dropping frame on closed transport")
            return
        self._queue.put_nowait(message)

    async def close(self) -> None:
        if self._websocket is None:
            return
        self._closing = True
        if self._queue is not None and self._writer is not None and not self._writer.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=CLOSE_FLUSH_TIMEOUT)
            except asyncio.TimeoutError:
                logger.debug(f"Dropping {self._queue.qsize()} unsent frames on close")
        if self._writer:
            self._writer.cancel()
        try:
            await self._websocket.close()
        except Exception as e:
            logger.debug(f"Close error: {e}")
        if self._reader:
            await asyncio.gather(self._reader, return_exceptions=True)

    async def _read_loop(self) -> None:
        import websockets

        try:
            async for raw in self._websocket:
                if isinstance(raw, bytes):
                    raw = raw.decode()
                self._emit_message(raw)
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"Connection closed: {e}")
        finally:
            self._finish()

    async def _write_loop(self) -> None:
        import websockets

        try:
            while True:
                raw = await self._queue.get()
                try:
                    await self._websocket.send(raw)
                finally:
                    self._queue.task_done()
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"Write on closed connection: {e}")

    def _finish(self) -> None:
        unexpected = not self._closing
        self._closing = True
        if self._writer:
            self._writer.cancel()
        self._websocket = None
        if unexpected:
            logger.warning(f"Connection to {self.url} lost")
        self._emit_close(unexpected)


class MemoryTransport(Transport):
    """In-process transport bound to a RelayHub.

    Frames are delivered through the event loop, one callback per frame,
    so ordering matches a real socket.
    """

    def __init__(self, hub: "RelayHub"):
        super().__init__()
        self.hub = hub
        self.connection_id: str | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        if not self.hub.accepting:
            raise TransportError("Relay is not accepting connections")
        self.connection_id = self.hub.register(self._deliver)
        self._open = True
        self._emit_open()

    def send(self, message: str) -> None:
        if not self._open:
            logger.debug("Dropping frame on closed transport")
            return
        asyncio.get_running_loop().call_soon(self._forward, self.connection_id, message)

    def _forward(self, connection_id: str, message: str) -> None:
        if self._open and self.connection_id == connection_id:
            self.hub.handle(connection_id, message)

    def _deliver(self, message: str) -> None:
        connection_id = self.connection_id
        asyncio.get_running_loop().call_soon(self._receive, connection_id, message)

    def _receive(self, connection_id: str, message: str) -> None:
        if self._open and self.connection_id == connection_id:
            self._emit_message(message)

    async def close(self) -> None:
        # Frames already sent reach the relay before the channel goes away
        await asyncio.sleep(0)
        self._shutdown(unexpected=False)

    def drop(self) -> None:
        """Simulate the network failing underneath the client."""
        self._shutdown(unexpected=True)

    def _shutdown(self, unexpected: bool) -> None:
        if not self._open:
            return
        self._open = False
        self.hub.unregister(self.connection_id)
        self._emit_close(unexpected)
