import asyncio
import logging
import sys
import os

import pytest

# Ensure the parent directory is in the path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from udp_server import UDPServer
from udp_client import UDPClient
from transport import UDPTransport, BootstrapError, TransportError
from peer_manager import format_addr
from protocol import Packet, RECV_BUFFER_SIZE
import udp_protocol as UDP

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(message)s')

HOST = "127.0.0.1"
READ_TIMEOUT = 0.05
WAIT_TIMEOUT = 2.0


async def wait_until(predicate, timeout=WAIT_TIMEOUT):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


def ignore(sock, addr, packet):
    pass


async def start_server(handler=ignore):
    server = UDPServer(HOST, read_timeout=READ_TIMEOUT)
    listener = await server.listen(0, handler)
    return server, listener


async def connect_clients(server, count):
    clients = [UDPClient(HOST, server.port, read_timeout=READ_TIMEOUT) for _ in range(count)]
    for client in clients:
        await client.connect()
    await wait_until(lambda: len(server.peers) == count)
    return clients


async def stop(server, listener, clients=(), tasks=()):
    for client in clients:
        client.close()
    if tasks:
        await asyncio.wait_for(asyncio.gather(*tasks), WAIT_TIMEOUT)
    server.shutdown()
    await asyncio.wait_for(listener, WAIT_TIMEOUT)


def test_handshake_registers_each_client():
    async def scenario():
        server, listener = await start_server()
        assert server.list_peers() == []

        clients = await connect_clients(server, 3)
        expected = {format_addr(c.transport.local_address) for c in clients}
        assert set(server.list_peers()) == expected
        assert len(server.list_peers()) == 3

        await stop(server, listener, clients)

    asyncio.run(scenario())


def test_close_removes_registry_entry():
    async def scenario():
        server, listener = await start_server()
        leaving, staying = await connect_clients(server, 2)

        leaving.close()
        await wait_until(lambda: len(server.peers) == 1)
        assert server.list_peers() == [format_addr(staying.transport.local_address)]

        await stop(server, listener, [staying])

    asyncio.run(scenario())


def test_broadcast_reaches_every_peer():
    async def scenario():
        server, listener = await start_server()
        clients = await connect_clients(server, 3)
        received = [[] for _ in clients]
        tasks = [asyncio.create_task(c.receive(received[i].append)) for i, c in enumerate(clients)]

        assert server.broadcast("chat", "hello") == 3
        assert server.stats.packets_sent == 3
        await wait_until(lambda: all(len(r) == 1 for r in received))
        assert all(r == [Packet("chat", "hello")] for r in received)

        await stop(server, listener, clients, tasks)

    asyncio.run(scenario())


def test_broadcast_except_skips_sender_by_value():
    async def scenario():
        server, listener = await start_server()
        clients = await connect_clients(server, 3)
        received = [[] for _ in clients]
        tasks = [asyncio.create_task(c.receive(received[i].append)) for i, c in enumerate(clients)]

        # A fresh tuple, not the object stored in the registry
        sender = tuple(clients[0].transport.local_address)
        assert server.broadcast_except("chat", "from 0", sender) == 2
        await wait_until(lambda: len(received[1]) == 1 and len(received[2]) == 1)
        await asyncio.sleep(0.1)
        assert received[0] == []
        assert received[1] == received[2] == [Packet("chat", "from 0")]

        await stop(server, listener, clients, tasks)

    asyncio.run(scenario())


def test_send_to_by_registry_index():
    async def scenario():
        server, listener = await start_server()
        clients = await connect_clients(server, 2)
        received = [[] for _ in clients]
        tasks = [asyncio.create_task(c.receive(received[i].append)) for i, c in enumerate(clients)]

        target = server.list_peers().index(format_addr(clients[1].transport.local_address))
        server.send_to(target, "direct", "only you")
        await wait_until(lambda: len(received[1]) == 1)
        await asyncio.sleep(0.1)
        assert received[1] == [Packet("direct", "only you")]
        assert received[0] == []

        with pytest.raises(IndexError):
            server.send_to(len(server.list_peers()), "direct", "nobody")

        await stop(server, listener, clients, tasks)

    asyncio.run(scenario())


def test_handler_can_reply_to_sender():
    async def scenario():
        def echo(sock, addr, packet):
            sock.send_packet(Packet("echo", packet.data), addr)

        server, listener = await start_server(echo)
        client, = await connect_clients(server, 1)
        received = []
        task = asyncio.create_task(client.receive(received.append))

        client.send("message", "ping")
        await wait_until(lambda: received)
        assert received == [Packet("echo", "ping")]

        await stop(server, listener, [client], [task])

    asyncio.run(scenario())


def test_control_packets_do_not_reach_handler():
    async def scenario():
        seen = []
        server, listener = await start_server(lambda sock, addr, packet: seen.append(packet))
        client, = await connect_clients(server, 1)

        client.send(UDP.TYPE_SYSTEM, "reboot")
        client.send("chat", "visible")
        await wait_until(lambda: seen)
        assert seen == [Packet("chat", "visible")]
        assert len(server.peers) == 1

        await stop(server, listener, [client])

    asyncio.run(scenario())


def test_malformed_datagram_is_dropped():
    async def scenario():
        seen = []
        server, listener = await start_server(lambda sock, addr, packet: seen.append(packet))

        raw = UDPTransport()
        await raw.connect(HOST, server.port)
        raw.sendto(b"{not json")
        raw.sendto(b'{"Type": 1, "Data": "x"}')
        await wait_until(lambda: server.stats.malformed_count == 2)
        assert len(server.peers) == 0
        assert not listener.done()

        raw.send_packet(Packet("chat", "valid"))
        await wait_until(lambda: seen)
        assert seen == [Packet("chat", "valid")]
        raw.close()

        await stop(server, listener)

    asyncio.run(scenario())


def test_oversized_datagram_is_truncated_and_dropped():
    async def scenario():
        seen = []
        server, listener = await start_server(lambda sock, addr, packet: seen.append(packet))

        raw = UDPTransport()
        await raw.connect(HOST, server.port)
        # Valid JSON, but longer than a single read
        raw.send_packet(Packet("chat", "x" * RECV_BUFFER_SIZE))
        await wait_until(lambda: server.stats.malformed_count == 1)
        assert seen == []
        assert not listener.done()

        raw.send_packet(Packet("chat", "fits"))
        await wait_until(lambda: seen)
        assert seen == [Packet("chat", "fits")]
        assert server.stats.malformed_count == 1
        raw.close()

        await stop(server, listener)

    asyncio.run(scenario())


def test_handler_error_does_not_stop_listener():
    async def scenario():
        seen = []

        def fragile(sock, addr, packet):
            if packet.data == "boom":
                raise RuntimeError("handler failure")
            seen.append(packet)

        server, listener = await start_server(fragile)
        client, = await connect_clients(server, 1)
        client.send("chat", "boom")
        client.send("chat", "after")
        await wait_until(lambda: seen)
        assert seen == [Packet("chat", "after")]
        assert not listener.done()

        await stop(server, listener, [client])

    asyncio.run(scenario())


def test_packet_logger_receives_encoded_packets():
    async def scenario():
        lines = []
        server, listener = await start_server()
        server.set_logger(lines.append)
        client, = await connect_clients(server, 1)
        client.send("chat", "logged")
        await wait_until(lambda: len(lines) == 2)
        assert lines == [
            '{"Type":"system","Data":"handshake"}',
            '{"Type":"chat","Data":"logged"}',
        ]

        await stop(server, listener, [client])

    asyncio.run(scenario())


def test_failing_packet_logger_is_ignored():
    async def scenario():
        def broken(line):
            raise IOError("disk full")

        server, listener = await start_server()
        server.set_logger(broken)
        client, = await connect_clients(server, 1)
        assert server.list_peers() == [format_addr(client.transport.local_address)]
        assert not listener.done()

        await stop(server, listener, [client])

    asyncio.run(scenario())


def test_listen_twice_is_noop():
    async def scenario():
        server, listener = await start_server()
        port = server.port
        again = await server.listen(0, ignore)
        assert again.done()
        assert again is not listener
        assert not listener.done()
        assert server.port == port

        await stop(server, listener)

    asyncio.run(scenario())


def test_listen_on_busy_port_fails():
    async def scenario():
        server, listener = await start_server()
        other = UDPServer(HOST, read_timeout=READ_TIMEOUT)
        with pytest.raises(BootstrapError):
            await other.listen(server.port, ignore)

        await stop(server, listener)

    asyncio.run(scenario())


def test_send_without_listener_fails():
    server = UDPServer(HOST)
    with pytest.raises(TransportError):
        server.broadcast("chat", "nobody")
    with pytest.raises(TransportError):
        server.send_to(0, "chat", "nobody")


def test_shutdown_closes_every_client():
    async def scenario():
        server, listener = await start_server()
        clients = await connect_clients(server, 2)
        received = [[] for _ in clients]
        dones = [asyncio.Event() for _ in clients]
        tasks = [asyncio.create_task(c.receive(received[i].append, dones[i])) for i, c in enumerate(clients)]

        server.shutdown()
        await asyncio.wait_for(asyncio.gather(*(d.wait() for d in dones)), WAIT_TIMEOUT)
        await asyncio.wait_for(asyncio.gather(*tasks), WAIT_TIMEOUT)
        await asyncio.wait_for(listener, WAIT_TIMEOUT)

        assert all(c.closed for c in clients)
        assert received == [[], []]
        assert server.closed

        # Second shutdown is a no-op
        server.shutdown()

    asyncio.run(scenario())
