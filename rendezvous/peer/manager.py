"""
Handles peer announcements on the server: peers connect when they start up,
and the server tracks who is reliably up so the circle assignment can match
friends with one another.
"""
import logging

from rendezvous.crypto.identity import derive_identity, verify_signature
from rendezvous.errors import SignatureMismatch
from rendezvous.logs import get_logger
from rendezvous.peer.record import utcnow

logger = get_logger(__name__)
update_log = logging.getLogger(__name__ + ".updates")


class PeerManager:
    def __init__(self, directory):
        self.directory = directory

    def handle_update(self, update, seen, inet_address, origin_port):
        """
        Apply a peer's announcement to its stored record.

        The identity is derived from the key ring inside the announcement and
        the signature is checked against it before anything is touched. A key
        ring with new keys yields a new handle and therefore a new candidate
        record; it never takes over an existing one.
        """
        identity = derive_identity(update.public_key_ring)
        if not verify_signature(update, identity):
            raise SignatureMismatch(f"Signature does not match identity {identity.handle}")

        with self.directory.locks.locked(identity.handle):
            user = self.directory.find_existing(identity.handle)
            if user is None:
                logger.info(f"New peer {identity.handle} from {inet_address}")
                user = self.directory.create(update, identity, inet_address, origin_port, seen or utcnow())
            else:
                user = user.apply_update(update, identity, inet_address, origin_port, seen or utcnow())

            update_log.info(user.update_log_entry())
            self.directory.save(user)
        return user
