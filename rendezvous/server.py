import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from rendezvous.config import ServerConfig
from rendezvous.logs import get_logger
from rendezvous.peer.directory import PeerDirectory
from rendezvous.peer.manager import PeerManager
from rendezvous.protocol.handler import MessageDispatcher

logger = get_logger(__name__)


@dataclass
class ServerContext:
    """Everything the listener and its workers share, built once at startup."""

    config: ServerConfig
    directory: PeerDirectory
    peer_manager: PeerManager
    # outbound delivery lives elsewhere; anything with enqueue(host, port, message)
    confirmations: Optional[object] = None

    @classmethod
    def from_config(cls, config, confirmations=None):
        directory = PeerDirectory(config.directory_root)
        return cls(config, directory, PeerManager(directory), confirmations)


class MessageListener:
    def __init__(self, context: ServerContext):
        self.context = context
        self.dispatcher = MessageDispatcher(context)
        self.port = None
        self._sock = None
        self._listen_thread = None
        self._executor = None
        self._running = threading.Event()

    def start(self, host=""):
        """
        Bind the listening socket and start accepting. Failing to bind is
        fatal: the OSError propagates and nothing is retried.
        """
        if self._listen_thread is not None:
            raise RuntimeError("Listen thread already started")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, self.context.config.listen_port))
            sock.listen()
        except OSError as e:
            sock.close()
            logger.error(f"Couldn't start listening on port {self.context.config.listen_port}: {e}")
            raise
        self._sock = sock
        self.port = sock.getsockname()[1]
        self._executor = ThreadPoolExecutor(
            max_workers=self.context.config.worker_count,
            thread_name_prefix="rendezvous-conn",
        )
        self._running.set()
        self._listen_thread = threading.Thread(target=self.listen_for_messages, name="rendezvous-accept", daemon=True)
        self._listen_thread.start()
        logger.info(f"Listening for peer messages on port {self.port}")
        return self.port

    def listen_for_messages(self):
        while self._running.is_set():
            try:
                conn, addr = self._sock.accept()
            except OSError as e:
                if not self._running.is_set():
                    break
                logger.error(f"Accept failed: {e}")
                continue
            logger.debug(f"Accepted connection from {addr}")
            try:
                future = self._executor.submit(self.dispatcher.handle_connection, conn, addr)
            except RuntimeError as e:
                logger.error(f"Dropping connection from {addr}: {e}")
                conn.close()
                continue
            future.add_done_callback(lambda f, addr=addr: self._report(f, addr))

    @staticmethod
    def _report(future, addr):
        exc = future.exception()
        if exc is not None:
            logger.error(f"Connection handler for {addr} crashed: {exc!r}", exc_info=exc)

    def stop(self):
        """Stop accepting; connections in flight are not waited for."""
        self._running.clear()
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._sock.close()
        if self._listen_thread is not None:
            self._listen_thread.join(timeout=5)
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        logger.info("Listener stopped")
