import socket

import pytest

from rendezvous.config import ServerConfig
from rendezvous.crypto.identity import LocalKeyRing
from rendezvous.protocol.message import ClientUpdate
from rendezvous.server import MessageListener, ServerContext


def signed_update(ring, name="Alice", email="alice@example.com", storage=1000):
    update = ClientUpdate(name, email, storage, ring.public_key_ring())
    update.signature = ring.sign(update.signing_bytes())
    return update


@pytest.fixture
def ring():
    return LocalKeyRing()


@pytest.fixture
def config(tmp_path):
    return ServerConfig(listen_port=0, directory_root=str(tmp_path / "friends"), idle_timeout=5)


@pytest.fixture
def context(config):
    return ServerContext.from_config(config)


@pytest.fixture
def listener(context):
    listener = MessageListener(context)
    listener.start("127.0.0.1")
    yield listener
    listener.stop()


@pytest.fixture
def connect(listener):
    socks = []

    def _connect():
        sock = socket.create_connection(("127.0.0.1", listener.port), timeout=5)
        socks.append(sock)
        return sock

    yield _connect
    for sock in socks:
        sock.close()
