import shutil
import socket
from unittest.mock import MagicMock

import pytest

from rendezvous.crypto.identity import LocalKeyRing, derive_identity
from rendezvous.peer.record import Eligibility
from rendezvous.protocol.handler import MessageDispatcher
from rendezvous.protocol.json_handler import send_json
from rendezvous.protocol.message import (
    ACK,
    ConfirmationMessage,
    MessageState,
    UnrecognizedMessage,
    build_announcement,
    encode,
)
from rendezvous.server import MessageListener, ServerContext


def exchange(sock, message):
    sock.sendall(encode(message))
    return sock.recv(1)


def handle_of(ring):
    return derive_identity(ring.public_key_ring()).handle


def test_first_announcement_then_update(connect, context, ring):
    sock = connect()
    assert exchange(sock, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)) == ACK
    stored = context.directory.find_existing(handle_of(ring))
    assert stored.eligibility is Eligibility.CANDIDATE
    assert stored.name == "Alice"
    assert stored.storage_available == 1000
    assert stored.inet_address == "127.0.0.1"
    assert stored.port == 4000

    assert exchange(sock, build_announcement(ring, "Alice", "alice@example.com", 2000, 4000)) == ACK
    stored = context.directory.find_existing(handle_of(ring))
    assert stored.storage_available == 2000
    assert stored.eligibility is Eligibility.CANDIDATE


def test_bad_key_ring_keeps_connection_open(connect, context, ring):
    sock = connect()
    broken = build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)
    broken.client_update.public_key_ring = b"not a key ring"
    assert exchange(sock, broken) == ACK
    assert list(context.directory.records()) == []

    assert exchange(sock, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)) == ACK
    assert context.directory.find_existing(handle_of(ring)) is not None


def test_forged_signature_is_not_stored(connect, context, ring):
    sock = connect()
    forged = build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)
    forged.client_update.signature = LocalKeyRing().sign(forged.client_update.signing_bytes())
    assert exchange(sock, forged) == ACK
    assert list(context.directory.records()) == []


def test_unrecognized_type_then_normal_message(connect, context, ring):
    sock = connect()
    send_json(sock, {"type": "FILE_REQ", "transaction_id": "tx-1", "filename": "a"})
    assert sock.recv(1) == ACK
    assert exchange(sock, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)) == ACK
    assert context.directory.find_existing(handle_of(ring)) is not None


def test_malformed_frame_closes_connection(connect, ring):
    sock = connect()
    sock.sendall(b"this is not json\n")
    assert sock.recv(1) == b""

    other = connect()
    assert exchange(other, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)) == ACK


def test_connections_are_served_concurrently(connect, context):
    rings = [LocalKeyRing() for _ in range(4)]
    # all sockets open at once, each one holding a worker
    socks = [connect() for _ in rings]
    for sock, ring in zip(reversed(socks), reversed(rings)):
        assert exchange(sock, build_announcement(ring, "Peer", "p@example.com", 10, 4000)) == ACK
    assert len(list(context.directory.records())) == 4


def test_bind_failure_is_fatal(config, listener):
    config.listen_port = listener.port
    with pytest.raises(OSError):
        MessageListener(ServerContext.from_config(config)).start("127.0.0.1")


def test_start_twice_is_refused(listener):
    with pytest.raises(RuntimeError):
        listener.start("127.0.0.1")


# Message states, observed through the dispatcher directly

def processed(context, msg):
    msg.set_state(MessageState.NEEDS_PROCESSING)
    return MessageDispatcher(context).process_message(msg, "10.0.0.5")


def test_valid_announcement_finishes(context, ring):
    msg = processed(context, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000))
    assert msg.state is MessageState.FINISHED


def test_forged_announcement_errors(context, ring):
    msg = build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)
    msg.client_update.storage_available = 1
    assert processed(context, msg).state is MessageState.ERROR
    assert list(context.directory.records()) == []


def test_unrecognized_message_errors(context, caplog):
    msg = processed(context, UnrecognizedMessage("tx-7", "PING"))
    assert msg.state is MessageState.ERROR
    assert any("tx-7" in r.getMessage() and "10.0.0.5" in r.getMessage() for r in caplog.records)


def test_confirmation_message_is_not_accepted_inbound(context):
    assert processed(context, ConfirmationMessage("tx-8", 9000)).state is MessageState.ERROR


def test_confirmation_queued_after_success(config, ring):
    sink = MagicMock()
    context = ServerContext.from_config(config, confirmations=sink)
    msg = processed(context, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000, "tx-9"))
    assert msg.state is MessageState.FINISHED
    host, port, confirmation = sink.enqueue.call_args[0]
    assert (host, port) == ("10.0.0.5", 4000)
    assert confirmation == ConfirmationMessage("tx-9", config.listen_port)


def test_no_confirmation_for_rejected_announcement(config, ring):
    sink = MagicMock()
    context = ServerContext.from_config(config, confirmations=sink)
    msg = build_announcement(ring, "Alice", "alice@example.com", 1000, 4000)
    msg.client_update.signature = b""
    assert processed(context, msg).state is MessageState.ERROR
    sink.enqueue.assert_not_called()


def test_failing_confirmation_sink_does_not_fail_message(config, ring):
    sink = MagicMock()
    sink.enqueue.side_effect = RuntimeError("queue full")
    context = ServerContext.from_config(config, confirmations=sink)
    msg = processed(context, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000))
    assert msg.state is MessageState.FINISHED


def test_idle_connection_is_closed(config, ring):
    config.idle_timeout = 0.2
    listener = MessageListener(ServerContext.from_config(config))
    listener.start("127.0.0.1")
    try:
        sock = socket.create_connection(("127.0.0.1", listener.port), timeout=5)
        assert sock.recv(1) == b""
        sock.close()
    finally:
        listener.stop()


def test_directory_corruption_is_reported(context, ring, caplog):
    processed(context, build_announcement(ring, "Alice", "alice@example.com", 1000, 4000))
    handle = handle_of(ring)
    shutil.copytree(
        context.directory.peer_directory(Eligibility.CANDIDATE, handle),
        context.directory.peer_directory(Eligibility.REJECTED, handle))

    msg = processed(context, build_announcement(ring, "Alice", "alice@example.com", 2000, 4000))
    assert msg.state is MessageState.ERROR
    assert any(r.levelname == "CRITICAL" for r in caplog.records)
