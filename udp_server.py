import asyncio
import logging
from typing import Callable, List, Optional

from protocol import Packet, MalformedPacket
from transport import UDPTransport, BootstrapError, TransportError
from peer_manager import PeerRegistry, format_addr
from stats_manager import StatsManager
from control import handle_server_control, is_control
import udp_protocol as UDP

logger = logging.getLogger(__name__)

PacketHandler = Callable[[UDPTransport, tuple, Packet], None]
PacketLogger = Callable[[str], None]


class UDPServer:
    """
    Accepts datagrams from any peer, keeps the registry of handshaken peers
    and forwards application packets to a handler.

    The receive loop runs as a single task and handles one packet at a time,
    so a slow handler throttles intake.
    """

    def __init__(self, host: str = "0.0.0.0", read_timeout: float = UDP.DEFAULT_READ_TIMEOUT,
                 packet_logger: Optional[PacketLogger] = None):
        self.host = host
        self.read_timeout = read_timeout
        self.transport = UDPTransport()
        self.peers = PeerRegistry()
        self.stats = StatsManager()
        self.closed = False
        self._packet_logger = packet_logger
        self._listen_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def port(self) -> Optional[int]:
        addr = self.transport.local_address
        return addr[1] if addr else None

    async def listen(self, port: int, handler: PacketHandler) -> asyncio.Future:
        """
        Binds the socket and starts the receive loop. Returns the loop task,
        which completes once the server is shut down.

        Only the first call binds; later calls return an already completed
        future and leave the running listener alone.
        """
        async with self._listen_lock:
            if self._task is not None:
                done = asyncio.get_running_loop().create_future()
                done.set_result(None)
                return done

            try:
                await self.transport.start_server(self.host, port)
            except OSError as e:
                raise BootstrapError(f"Listen on {self.host}:{port} failed: {e}") from e

            self._task = asyncio.create_task(self._receive_loop(handler), name=f"udp-server-{self.port}")
            return self._task

    def set_logger(self, logger_fn: Optional[PacketLogger]):
        """
        Installs the packet logger, called with the encoded form of every
        packet received from now on.
        """
        self._packet_logger = logger_fn

    async def _receive_loop(self, handler: PacketHandler):
        logger.info(f"Listening for packets on port {self.port}")
        while not self.closed:
            try:
                item = await self.transport.recv(self.read_timeout)
            except asyncio.TimeoutError:
                continue
            except OSError as e:
                if self.closed:
                    break
                logger.warning(f"Error on socket: {e}")
                self.stats.add_error()
                continue

            if self.closed or item is None:
                break

            data, addr = item
            try:
                packet = Packet.unpack(data)
            except MalformedPacket as e:
                logger.warning(f"Dropping malformed packet from {format_addr(addr)}: {e}")
                self.stats.add_malformed()
                continue

            self.stats.add_download(len(data), format_addr(addr))
            self._log_packet(packet)

            if is_control(packet):
                handle_server_control(self.peers, packet.data, addr)
                continue

            try:
                handler(self.transport, addr, packet)
            except Exception:
                logger.exception(f"Handler failed on packet from {format_addr(addr)}")

        logger.info("Listener stopped")

    def _log_packet(self, packet: Packet):
        logger_fn = self._packet_logger
        if logger_fn is None:
            return
        try:
            logger_fn(packet.pack().decode("utf-8"))
        except Exception:
            # A broken packet logger must not stop the listener
            logger.debug("Packet logger failed", exc_info=True)

    def _require_socket(self):
        if self.transport.transport is None or self.transport.closed:
            raise TransportError("UDP server is not listening")

    def _send(self, packet: Packet, addr: tuple):
        sent = self.transport.send_packet(packet, addr)
        self.stats.add_upload(sent)

    def send_to(self, index: int, packet_type: str, data: str):
        """
        Sends one packet to the peer at registry position index.
        Raises TransportError when not listening and IndexError for a bad index;
        callers check the index against list_peers().
        """
        self._require_socket()
        self._send(Packet(packet_type, data), self.peers.get(index))

    def broadcast(self, packet_type: str, data: str) -> int:
        """
        Sends one packet to every registered peer, in registry order.
        Returns the number of datagrams sent.
        """
        self._require_socket()
        packet = Packet(packet_type, data)
        peers = self.peers.snapshot()
        for addr in peers:
            self._send(packet, addr)
        return len(peers)

    def broadcast_except(self, packet_type: str, data: str, exclude_addr: tuple) -> int:
        """
        Sends one packet to every registered peer except exclude_addr,
        matched by address value. Returns the number of datagrams sent.
        """
        self._require_socket()
        packet = Packet(packet_type, data)
        excluded = format_addr(exclude_addr)
        count = 0
        for addr in self.peers.snapshot():
            if format_addr(addr) == excluded:
                continue
            self._send(packet, addr)
            count += 1
        return count

    def list_peers(self) -> List[str]:
        return [format_addr(addr) for addr in self.peers.snapshot()]

    def shutdown(self):
        """
        Tells every peer to close, then stops the receive loop and releases
        the socket.
        """
        if self.closed:
            return
        if self.transport.transport is not None:
            self.broadcast(UDP.TYPE_SYSTEM, UDP.VERB_CLOSE)
        self.closed = True
        self.transport.close()
        logger.info("Server shut down")
