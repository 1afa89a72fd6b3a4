import asyncio
import logging
from typing import Callable, Optional

from protocol import Packet, MalformedPacket
from transport import UDPTransport, BootstrapError, TransportError
from control import handle_client_control, is_control
import udp_protocol as UDP

logger = logging.getLogger(__name__)


class UDPClient:
    """
    One session with one server: handshake on connect, a receive loop that
    hides control packets, and an explicit close.
    """

    def __init__(self, host: str, port: int, read_timeout: float = UDP.DEFAULT_READ_TIMEOUT):
        self.host = host
        self.port = port
        self.read_timeout = read_timeout
        self.transport = UDPTransport()
        self.closed = False
        self._connected = False
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> UDPTransport:
        """
        Opens the socket and sends the handshake. Runs once per session; any
        later or concurrent call waits for the first and gets the same handle.
        Raises BootstrapError if the server address cannot be resolved or the
        handshake cannot be sent.
        """
        async with self._connect_lock:
            if self.closed and not self._connected:
                raise TransportError("Session is closed")
            if not self._connected:
                try:
                    await self.transport.connect(self.host, self.port)
                    if self.closed:
                        # close() ran while the endpoint was being created
                        self.transport.close()
                        raise TransportError("Session is closed")
                    self.transport.send_packet(Packet(UDP.TYPE_SYSTEM, UDP.VERB_HANDSHAKE))
                except OSError as e:
                    raise BootstrapError(f"Connect to {self.host}:{self.port} failed: {e}") from e
                self._connected = True
                logger.info(f"Sent handshake to {self.host}:{self.port}")
        return self.transport

    def send(self, packet_type: str, data: str):
        self.transport.send_packet(Packet(packet_type, data))

    async def receive(self, handler: Callable[[Packet], None], done: Optional[asyncio.Event] = None):
        """
        Delivers application packets to handler until the session is closed,
        either locally or by a close packet from the server.
        Sets done, if given, when the loop exits.
        """
        try:
            if not self.closed:
                await self.connect()
            await self._receive_loop(handler)
        finally:
            if done is not None:
                done.set()

    async def _receive_loop(self, handler: Callable[[Packet], None]):
        while not self.closed:
            try:
                item = await self.transport.recv(self.read_timeout)
            except asyncio.TimeoutError:
                continue
            except OSError as e:
                if self.closed:
                    break
                logger.warning(f"Read data failed: {e}")
                continue

            # A read that completes after close() is discarded
            if self.closed or item is None:
                break

            data, _ = item
            try:
                packet = Packet.unpack(data)
            except MalformedPacket as e:
                logger.warning(f"Dropping malformed packet from server: {e}")
                continue

            if is_control(packet):
                handle_client_control(self, packet.data)
                continue

            handler(packet)

    def close(self):
        """
        Tells the server this session is leaving and releases the socket.
        Closing twice is a no-op.
        """
        if self.closed:
            return
        if self._connected and not self.transport.closed:
            self.transport.send_packet(Packet(UDP.TYPE_SYSTEM, UDP.VERB_CLOSE))
        self.closed = True
        self.transport.close()
        logger.info(f"Session with {self.host}:{self.port} closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
