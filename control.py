import logging

from protocol import Packet
from peer_manager import PeerRegistry, format_addr
import udp_protocol as UDP

logger = logging.getLogger(__name__)


def is_control(packet: Packet) -> bool:
    return packet.is_control


def handle_client_control(session, verb: str):
    """
    Applies a control verb received by a client session.
    Unknown verbs are ignored and never reach the application handler.
    """
    if verb == UDP.VERB_CLOSE:
        logger.info("Server closed the session")
        session.close()
    else:
        logger.debug(f"Ignoring control verb {verb!r}")


def handle_server_control(registry: PeerRegistry, verb: str, addr: tuple):
    """
    Applies a control verb received by the server from addr.

    handshake: Unknown -> Connected, appends addr to the registry.
    close:     Connected -> Unknown, removes the first matching entry.
    """
    if verb == UDP.VERB_HANDSHAKE:
        registry.add(addr)
    elif verb == UDP.VERB_CLOSE:
        if not registry.remove(addr):
            logger.debug(f"Close from unregistered peer {format_addr(addr)}")
    else:
        logger.debug(f"Ignoring control verb {verb!r} from {format_addr(addr)}")
