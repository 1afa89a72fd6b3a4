import asyncio
import logging
from typing import Optional, Tuple

from protocol import Packet, RECV_BUFFER_SIZE

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when a socket is required but not open."""


class BootstrapError(RuntimeError):
    """Raised when a socket cannot be set up (resolve, bind, connect, handshake)."""


class UDPTransport:
    """
    Wraps one asyncio datagram endpoint. Received datagrams are queued so a
    receive loop can read them one at a time with a deadline.
    """

    def __init__(self):
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.closed = False
        self._queue: Optional[asyncio.Queue] = None

    class _Protocol(asyncio.DatagramProtocol):
        def __init__(self, outer):
            self.outer = outer

        def connection_made(self, transport):
            self.outer.transport = transport
            logger.info("UDP Transport connection made")

        def datagram_received(self, data, addr):
            if len(data) > RECV_BUFFER_SIZE:
                logger.debug(f"Truncating {len(data)} byte datagram from {addr} to {RECV_BUFFER_SIZE}")
                data = data[:RECV_BUFFER_SIZE]
            self.outer._queue.put_nowait((data, addr))

        def error_received(self, exc):
            logger.error(f"UDP Transport error received: {exc}")
            self.outer._queue.put_nowait(exc)

        def connection_lost(self, exc):
            logger.info("UDP Transport connection lost")
            # Wakes up a reader blocked in recv()
            self.outer._queue.put_nowait(None)

    async def start_server(self, host: str, port: int):
        """
        Binds the UDP socket to the given host and port.
        """
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: self._Protocol(self),
            local_addr=(host, port)
        )
        logger.info(f"UDP Server started on {host}:{self.local_address[1]}")

    async def connect(self, host: str, port: int):
        """
        Resolves host:port and connects the UDP socket to it.
        """
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: self._Protocol(self),
            remote_addr=(host, port)
        )
        logger.info(f"UDP Client connected to {host}:{port} from {self.local_address}")

    @property
    def local_address(self) -> Optional[tuple]:
        if self.transport is None:
            return None
        return self.transport.get_extra_info("sockname")

    async def recv(self, timeout: Optional[float] = None) -> Optional[Tuple[bytes, tuple]]:
        """
        Returns the next (data, addr) pair, or None once the socket is closed.
        Raises asyncio.TimeoutError when nothing arrives within timeout, and
        re-raises OSError reported by the socket.
        """
        if self._queue is None:
            raise TransportError("Transport is not open. Cannot receive.")
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if isinstance(item, Exception):
            raise item
        return item

    def sendto(self, data: bytes, addr: Optional[tuple] = None):
        if self.transport is None or self.closed:
            raise TransportError("Transport is not open. Cannot send.")
        self.transport.sendto(data, addr)

    def send_packet(self, packet: Packet, addr: Optional[tuple] = None) -> int:
        """
        Serializes and sends a packet. addr is omitted on a connected socket.
        Returns the number of bytes sent.
        """
        data = packet.pack()
        self.sendto(data, addr)
        return len(data)

    def close(self):
        """
        Closes the transport.
        """
        self.closed = True
        # An endpoint attached after an earlier close() is released too
        if self.transport and not self.transport.is_closing():
            self.transport.close()
            logger.info("UDP Transport closed")
