"""
Durable store of peer records on disk.

Layout::

    <root>/<eligibility>/<identity handle>/peer.json
    <root>/<eligibility>/<identity handle>/pubring-<digest>.pem

``peer.json`` names the key ring file it belongs to. Key ring files are
content addressed and written before the metadata is swapped in, so a crash at
any point leaves either the old or the new pair on disk, never a mix.
"""
import hashlib
import json
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager

from rendezvous.crypto.identity import PublicIdentityHandle, derive_identity
from rendezvous.errors import DirectoryCorruption, PersistenceFailure, RendezvousError
from rendezvous.logs import get_logger
from rendezvous.peer.record import Eligibility, PeerRecord, format_timestamp, parse_timestamp

logger = get_logger(__name__)

METADATA_FILE_NAME = "peer.json"
KEYRING_PREFIX = "pubring-"
KEYRING_SUFFIX = ".pem"


def _write_atomic(path, data: bytes):
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class IdentityLocks:
    """
    One lock per identity handle; unrelated identities never wait on each other.
    An entry lives only while someone holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def locked(self, handle: PublicIdentityHandle):
        key = handle.handle_string
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)


class PeerDirectory:
    def __init__(self, root):
        self.root = os.path.abspath(root)
        self.locks = IdentityLocks()
        os.makedirs(self.root, exist_ok=True)

    def peer_directory(self, eligibility: Eligibility, handle: PublicIdentityHandle):
        return os.path.join(self.root, str(eligibility), handle.handle_string)

    def find_existing(self, handle: PublicIdentityHandle):
        """Look the handle up in every category; None if it was never stored."""
        found = [
            eligibility for eligibility in Eligibility
            if os.path.exists(os.path.join(self.peer_directory(eligibility, handle), METADATA_FILE_NAME))
        ]
        if len(found) > 1:
            logger.error(f"Identity {handle} stored under several categories: {[str(e) for e in found]}")
            raise DirectoryCorruption(
                f"Identity {handle} is stored under {', '.join(str(e) for e in found)}")
        if not found:
            return None
        return self.load(found[0], handle)

    def load(self, eligibility: Eligibility, handle: PublicIdentityHandle) -> PeerRecord:
        directory = self.peer_directory(eligibility, handle)
        try:
            with open(os.path.join(directory, METADATA_FILE_NAME), "r", encoding="utf-8") as f:
                meta = json.load(f)
            with open(os.path.join(directory, meta["keyring_file"]), "rb") as f:
                key_ring = f.read()
            identity = derive_identity(key_ring)
            record = PeerRecord(
                identity=identity,
                name=meta["name"],
                email=meta["email"],
                storage_available=int(meta["storage_available"]),
                last_seen=parse_timestamp(meta["last_update"]),
                inet_address=meta["inet_address"],
                port=int(meta["port"]),
                eligibility=eligibility,
            )
        except (OSError, ValueError, KeyError, TypeError, RendezvousError) as e:
            raise DirectoryCorruption(f"Could not load peer from {directory}: {e}") from e
        if identity.handle != handle:
            raise DirectoryCorruption(
                f"Key ring in {directory} belongs to {identity.handle}, not {handle}")
        return record

    def create(self, update, identity, inet_address, port, seen=None) -> PeerRecord:
        return PeerRecord.create(update, identity, inet_address, port, seen)

    def save(self, record: PeerRecord):
        """Write the record under its current eligibility, replacing what was there."""
        handle = record.handle.handle_string
        directory = self.peer_directory(record.eligibility, record.handle)
        key_ring = record.key_ring
        keyring_file = KEYRING_PREFIX + hashlib.sha256(key_ring).hexdigest()[:16] + KEYRING_SUFFIX
        meta = {
            "name": record.name,
            "email": record.email,
            "storage_available": record.storage_available,
            "last_update": format_timestamp(record.last_seen),
            "inet_address": record.inet_address,
            "port": record.port,
            "keyring_file": keyring_file,
        }
        try:
            os.makedirs(directory, exist_ok=True)
            _write_atomic(os.path.join(directory, keyring_file), key_ring)
            _write_atomic(
                os.path.join(directory, METADATA_FILE_NAME),
                json.dumps(meta, indent=2, sort_keys=True).encode("utf-8"))
            for name in os.listdir(directory):
                if name.startswith(KEYRING_PREFIX) and name != keyring_file:
                    os.unlink(os.path.join(directory, name))
        except OSError as e:
            logger.error(f"Could not save peer {handle}: {e}")
            raise PersistenceFailure(f"Could not save peer {handle}: {e}") from e
        logger.debug(f"Saved peer {handle} under {record.eligibility}")

    def move(self, record: PeerRecord, eligibility: Eligibility) -> PeerRecord:
        """
        Move a stored peer to another category, leaving no copy behind.

        Runs under the identity's lock and starts from the record as currently
        stored, so an announcement saved in the meantime is carried along.
        """
        with self.locks.locked(record.handle):
            current = self.find_existing(record.handle)
            if current is None:
                raise PersistenceFailure(f"Peer {record.handle} is not stored")
            moved = current.transition_to(eligibility)
            old_directory = self.peer_directory(current.eligibility, current.handle)
            self.save(moved)
            try:
                shutil.rmtree(old_directory)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise PersistenceFailure(f"Could not remove {old_directory}: {e}") from e
        logger.info(f"Moved peer {current.handle} from {current.eligibility} to {eligibility}")
        return moved

    def records(self, eligibility=None):
        categories = [eligibility] if eligibility else list(Eligibility)
        for category in categories:
            category_dir = os.path.join(self.root, str(category))
            if not os.path.isdir(category_dir):
                continue
            for name in sorted(os.listdir(category_dir)):
                if name.startswith("."):
                    continue
                # left behind by a save that never got as far as the metadata
                if not os.path.exists(os.path.join(category_dir, name, METADATA_FILE_NAME)):
                    continue
                yield self.load(category, PublicIdentityHandle.from_string(name))
