import hashlib
import os
import re
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from rendezvous.errors import InvalidKeyRing, NoSigningOrEncryptingKey
from rendezvous.logs import get_logger

logger = get_logger(__name__)

_PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z ]+)-----.+?-----END \1-----", re.DOTALL)

KEY_ID_LENGTH = 16


def _pem_blocks(data):
    return [m.group(0) for m in _PEM_BLOCK.finditer(data)]


def _raw_public_bytes(key):
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def key_id(key):
    """Short hex fingerprint of a public key."""
    return hashlib.sha256(_raw_public_bytes(key)).hexdigest()[:KEY_ID_LENGTH]


@dataclass(frozen=True)
class PublicIdentityHandle:
    signing_key_id: str
    encrypting_key_id: str

    @property
    def handle_string(self):
        return f"{self.signing_key_id}-{self.encrypting_key_id}"

    @classmethod
    def from_string(cls, value):
        signing, sep, encrypting = value.partition("-")
        if not sep or not signing or not encrypting:
            raise ValueError(f"Not an identity handle: {value!r}")
        return cls(signing, encrypting)

    def __str__(self):
        return self.handle_string


class KeyRing:
    """
    A public key ring: one or more PEM encoded public keys. The first Ed25519
    key is the designated signing key and the first X25519 key the designated
    encrypting key; any other keys ride along untouched.
    """

    def __init__(self, data, keys):
        self.data = bytes(data)
        self.keys = keys

    @classmethod
    def parse(cls, data):
        if not isinstance(data, (bytes, bytearray)):
            raise InvalidKeyRing("Key ring must be bytes")
        blocks = _pem_blocks(bytes(data))
        if not blocks:
            raise InvalidKeyRing("Key ring contains no PEM encoded keys")
        keys = []
        for block in blocks:
            try:
                keys.append(serialization.load_pem_public_key(block))
            except (ValueError, UnsupportedAlgorithm) as e:
                raise InvalidKeyRing(f"Could not parse key ring: {e}") from e
        return cls(data, keys)

    @property
    def signing_key(self):
        return next((k for k in self.keys if isinstance(k, Ed25519PublicKey)), None)

    @property
    def encrypting_key(self):
        return next((k for k in self.keys if isinstance(k, X25519PublicKey)), None)


@dataclass(frozen=True)
class PublicIdentity:
    key_ring: KeyRing = field(compare=False)
    handle: PublicIdentityHandle

    def verify(self, signature: bytes, message: bytes) -> bool:
        try:
            self.key_ring.signing_key.verify(signature, message)
            return True
        except InvalidSignature:
            return False


def make_public_identity(key_ring):
    signing = key_ring.signing_key
    encrypting = key_ring.encrypting_key
    if signing is None or encrypting is None:
        raise NoSigningOrEncryptingKey(
            "Key ring needs both an Ed25519 signing key and an X25519 encrypting key")
    return PublicIdentity(key_ring, PublicIdentityHandle(key_id(signing), key_id(encrypting)))


def derive_identity(key_ring_bytes) -> PublicIdentity:
    """Parse a key ring blob and reduce it to its public identity."""
    return make_public_identity(KeyRing.parse(key_ring_bytes))


def verify_signature(message, identity: PublicIdentity) -> bool:
    """True when ``message`` was signed by the signing key behind ``identity``."""
    signature = message.signature
    if not signature:
        return False
    return identity.verify(signature, message.signing_bytes())


class LocalKeyRing:
    """
    The private half of a peer's identity, persisted as PEM at ``key_path``.
    Peers use it to sign their announcements.
    """

    def __init__(self, key_path=None):
        self.key_path = key_path
        if key_path and os.path.exists(key_path):
            with open(key_path, "rb") as f:
                self._load(f.read())
        else:
            self.signing_key = Ed25519PrivateKey.generate()
            self.encrypting_key = X25519PrivateKey.generate()
            self._store()

    def _load(self, data):
        keys = [serialization.load_pem_private_key(b, password=None) for b in _pem_blocks(data)]
        self.signing_key = next((k for k in keys if isinstance(k, Ed25519PrivateKey)), None)
        self.encrypting_key = next((k for k in keys if isinstance(k, X25519PrivateKey)), None)
        if self.signing_key is None or self.encrypting_key is None:
            raise NoSigningOrEncryptingKey(f"{self.key_path} lacks a signing or encrypting key")

    def _store(self):
        if not self.key_path:
            return
        with open(self.key_path, "wb") as f:
            for key in (self.signing_key, self.encrypting_key):
                f.write(key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption()
                ))

    def sign(self, message: bytes) -> bytes:
        return self.signing_key.sign(message)

    def public_key_ring(self) -> bytes:
        return b"".join(
            key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo
            )
            for key in (self.signing_key, self.encrypting_key)
        )

    def migrate(self):
        # Fresh keys mean a fresh identity handle on the server side.
        self.signing_key = Ed25519PrivateKey.generate()
        self.encrypting_key = X25519PrivateKey.generate()
        self._store()
        logger.info("Local key ring migrated to new keys")
