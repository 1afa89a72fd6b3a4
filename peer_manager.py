import logging
import threading
from typing import Iterator, List

logger = logging.getLogger(__name__)


def format_addr(addr: tuple) -> str:
    """
    Canonical string form of a socket address: host:port, or [host]:port for IPv6.
    """
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class PeerRegistry:
    """
    Ordered list of handshaken peer addresses, in handshake order.
    Written by the server receive loop, read by send operations from anywhere,
    so every access goes through the lock.
    """

    def __init__(self):
        self._addrs: List[tuple] = []
        self._lock = threading.Lock()

    def add(self, addr: tuple):
        """
        Appends the address. Duplicate handshakes give duplicate entries.
        """
        with self._lock:
            self._addrs.append(addr)
            count = len(self._addrs)
        logger.info(f"Peer {format_addr(addr)} connected ({count} total)")

    def remove(self, addr: tuple) -> bool:
        """
        Removes the first entry whose string form matches addr.
        Returns False if no entry matched.
        """
        key = format_addr(addr)
        with self._lock:
            for i, entry in enumerate(self._addrs):
                if format_addr(entry) == key:
                    del self._addrs[i]
                    break
            else:
                return False
            count = len(self._addrs)
        logger.info(f"Peer {key} disconnected ({count} remaining)")
        return True

    def get(self, index: int) -> tuple:
        with self._lock:
            return self._addrs[index]

    def snapshot(self) -> List[tuple]:
        with self._lock:
            return list(self._addrs)

    def __len__(self):
        with self._lock:
            return len(self._addrs)

    def __iter__(self) -> Iterator[tuple]:
        return iter(self.snapshot())

    def __repr__(self):
        return f"<PeerRegistry {[format_addr(a) for a in self.snapshot()]}>"
