import asyncio
import argparse
import logging
import sys

from udp_server import UDPServer
from udp_client import UDPClient
from transport import UDPTransport, BootstrapError
from dashboard import start_dashboard
from protocol import Packet
import udp_protocol as UDP

logger = logging.getLogger("Main")

TYPE_MESSAGE = "message"
TYPE_PEERS = "peers"


def setup_logging(level: str, log_file: str = None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w'))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


async def run_server(args):
    """
    Relay: every application packet is forwarded to all other peers.
    A "peers" packet is answered with the current registry.
    """
    server = UDPServer(host=args.host or "0.0.0.0", read_timeout=args.read_timeout)
    if args.log_packets:
        server.set_logger(lambda line: logger.info(f"Packet: {line}"))

    def relay(sock: UDPTransport, addr: tuple, packet: Packet):
        if packet.type == TYPE_PEERS:
            sock.send_packet(Packet(TYPE_PEERS, ",".join(server.list_peers())), addr)
            return
        server.broadcast_except(packet.type, packet.data, addr)

    listener = await server.listen(args.port, relay)
    logger.info(f"Server listening on UDP port {server.port}")

    runner = None
    if args.dashboard_port:
        runner = await start_dashboard(server, args.dashboard_port)

    try:
        await listener
    except asyncio.CancelledError:
        pass
    finally:
        server.shutdown()
        if runner:
            await runner.cleanup()


async def run_client(args):
    client = UDPClient(args.host or "127.0.0.1", args.port, read_timeout=args.read_timeout)
    await client.connect()
    logger.info(f"Connected to {client.host}:{client.port}, type messages, Ctrl-D to quit")

    def show(packet: Packet):
        print(f"[{packet.type}] {packet.data}")

    done = asyncio.Event()
    receiver = asyncio.create_task(client.receive(show, done))

    loop = asyncio.get_running_loop()
    try:
        while not client.closed:
            reader = loop.run_in_executor(None, sys.stdin.readline)
            finished, _ = await asyncio.wait({reader, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in finished:
                # stdin read is still pending in the executor
                logger.info("Session closed by server, press Enter to exit")
                break
            line = reader.result()
            if not line:
                break
            line = line.rstrip("\n")
            if line == "/peers":
                client.send(TYPE_PEERS, "")
            elif line:
                client.send(TYPE_MESSAGE, line)
    except asyncio.CancelledError:
        pass
    finally:
        client.close()
        await done.wait()
        await receiver


async def main():
    parser = argparse.ArgumentParser(description="Connection-oriented messaging over UDP")
    parser.add_argument('--role', choices=['server', 'client'], required=True, help="Run as server or client")
    parser.add_argument('--port', type=int, required=True, help="UDP port to bind (server) or dial (client)")
    parser.add_argument('--host', type=str, help="Bind address (server) or server address (client)")
    parser.add_argument('--read-timeout', type=float, default=UDP.DEFAULT_READ_TIMEOUT,
                        help="Seconds between closed-flag checks in the receive loop")
    parser.add_argument('--dashboard-port', type=int, default=0, help="Serve the HTTP dashboard on this port (server)")
    parser.add_argument('--log-packets', action='store_true', help="Log every received packet (server)")
    parser.add_argument('--log-file', type=str, help="Also write logs to this file")
    parser.add_argument('--log-level', type=str, default="INFO")

    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    try:
        if args.role == "server":
            await run_server(args)
        else:
            await run_client(args)
    except BootstrapError as e:
        logger.critical(str(e))
        sys.exit(1)


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
