import socket

from rendezvous.errors import (
    DirectoryCorruption,
    MalformedMessage,
    RendezvousError,
    UnrecognizedMessageType,
)
from rendezvous.logs import get_logger
from rendezvous.peer.record import utcnow
from rendezvous.protocol.message import (
    ACK,
    ConfirmationMessage,
    MessageState,
    MessageType,
    decode,
)

logger = get_logger(__name__)


class MessageDispatcher:
    def __init__(self, context):
        self.context = context

    def handle_connection(self, conn, addr):
        """
        Serve every message a peer sends on ``conn`` until it hangs up.
        An acknowledgment byte follows each processed message, whatever the outcome.
        """
        logger.debug(f"Handling connection from {addr}")
        address = addr[0]
        try:
            conn.settimeout(self.context.config.idle_timeout)
            reader = conn.makefile("rb")
            writer = conn.makefile("wb")
            with reader, writer:
                while True:
                    msg = decode(reader)
                    if msg is None:
                        logger.debug(f"Peer {addr} closed the connection")
                        break
                    msg.set_state(MessageState.NEEDS_PROCESSING)
                    self.process_message(msg, address)
                    writer.write(ACK)
                    writer.flush()
        except MalformedMessage as e:
            logger.error(f"Malformed message from {addr}: {e}")
        except socket.timeout:
            logger.warning(f"Connection from {addr} idle too long, closing")
        except OSError as e:
            logger.error(f"Error talking to {addr}: {e}")
        finally:
            logger.debug(f"Connection from {addr} finished")
            conn.close()

    def process_message(self, msg, address):
        logger.debug(f"Processing {msg.transaction_id}")
        msg.set_state(MessageState.PROCESSING)

        try:
            self._route(msg, address)
        except DirectoryCorruption as e:
            msg.set_state(MessageState.ERROR)
            logger.critical(f"Directory corruption while processing {msg.transaction_id} "
                            f"from {address}: {e}")
        except RendezvousError as e:
            msg.set_state(MessageState.ERROR)
            logger.error(f"Error processing {msg.transaction_id} from {address}: "
                         f"{type(e).__name__}: {e}")
        else:
            msg.set_state(MessageState.FINISHED)

        logger.debug(f"Processed {msg.transaction_id}: {msg.state.value}")
        return msg

    def _route(self, msg, address):
        if msg.type is MessageType.CLIENT_STARTUP:
            self.context.peer_manager.handle_update(
                msg.client_update, utcnow(), address, msg.origin_port)
            self._confirm(msg, address)
        else:
            raise UnrecognizedMessageType(f"Unexpected message type {msg.type_name!r}")

    def _confirm(self, msg, address):
        sink = self.context.confirmations
        if sink is None:
            return
        confirmation = ConfirmationMessage(msg.transaction_id, self.context.config.listen_port)
        try:
            sink.enqueue(address, msg.origin_port, confirmation)
        except Exception as e:
            # announcement is already stored at this point
            logger.error(f"Could not queue confirmation for {msg.transaction_id} to {address}: {e}")
