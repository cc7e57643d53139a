"""
Message types exchanged with peers, and the codec that turns them into
newline-delimited JSON frames and back.

Every frame carries a ``type`` discriminant and a ``transaction_id``. Frames
whose type this server does not know still decode, as an
``UnrecognizedMessage``, so the connection can carry on with the next one.
"""
import base64
import binascii
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum

from rendezvous.errors import InvalidStateTransition, MalformedMessage
from rendezvous.protocol.json_handler import dump_frame, recv_json

ACK = b"\x01"


class MessageType(Enum):
    CLIENT_STARTUP = "CLIENT_STARTUP"
    CONFIRMATION = "CONFIRMATION"


class MessageState(Enum):
    NEEDS_PROCESSING = "needs_processing"
    PROCESSING = "processing"
    FINISHED = "finished"
    ERROR = "error"


_ALLOWED_STATES = {
    None: {MessageState.NEEDS_PROCESSING},
    MessageState.NEEDS_PROCESSING: {MessageState.PROCESSING, MessageState.ERROR},
    MessageState.PROCESSING: {MessageState.FINISHED, MessageState.ERROR},
    MessageState.FINISHED: set(),
    MessageState.ERROR: set(),
}


def new_transaction_id():
    return uuid.uuid4().hex


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(value, name) -> bytes:
    if not isinstance(value, str):
        raise MalformedMessage(f"{name} must be a base64 string")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise MalformedMessage(f"{name} is not valid base64") from e


def _require(obj, name, kind):
    value = obj.get(name)
    # bool is an int subclass; never accept it where a number is expected
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise MalformedMessage(f"Field '{name}' missing or not {kind.__name__}")
    return value


class Message:
    """Common state tracking for every message variant; state is never sent on the wire."""

    type = None

    def __post_init__(self):
        self.state = None

    def set_state(self, state: MessageState):
        if state not in _ALLOWED_STATES[self.state]:
            raise InvalidStateTransition(
                f"Message {self.transaction_id} cannot go from {self.state} to {state}")
        self.state = state

    @property
    def type_name(self):
        return self.type.value

    def payload(self):
        return {}

    def to_dict(self):
        return {"type": self.type_name, "transaction_id": self.transaction_id, **self.payload()}


@dataclass
class ClientUpdate:
    """What a peer reports about itself, signed with its own key ring."""

    name: str
    email: str
    storage_available: int
    public_key_ring: bytes
    signature: bytes = b""

    def signing_bytes(self) -> bytes:
        body = {
            "name": self.name,
            "email": self.email,
            "storage_available": self.storage_available,
            "public_key_ring": _b64e(self.public_key_ring),
        }
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def to_dict(self):
        return {
            "name": self.name,
            "email": self.email,
            "storage_available": self.storage_available,
            "public_key_ring": _b64e(self.public_key_ring),
            "signature": _b64e(self.signature),
        }

    @classmethod
    def from_dict(cls, obj):
        if not isinstance(obj, dict):
            raise MalformedMessage("Field 'update' must be an object")
        storage = _require(obj, "storage_available", int)
        if storage < 0:
            raise MalformedMessage("storage_available must not be negative")
        return cls(
            name=_require(obj, "name", str),
            email=_require(obj, "email", str),
            storage_available=storage,
            public_key_ring=_b64d(obj.get("public_key_ring"), "public_key_ring"),
            signature=_b64d(obj.get("signature"), "signature"),
        )


@dataclass
class ClientStartupMessage(Message):
    """Announcement a peer sends when it comes up."""

    type = MessageType.CLIENT_STARTUP

    transaction_id: str
    client_update: ClientUpdate
    origin_port: int

    def payload(self):
        return {"origin_port": self.origin_port, "update": self.client_update.to_dict()}

    @classmethod
    def from_dict(cls, obj):
        port = _require(obj, "origin_port", int)
        if not 0 < port < 65536:
            raise MalformedMessage(f"origin_port {port} out of range")
        return cls(obj["transaction_id"], ClientUpdate.from_dict(obj.get("update")), port)


@dataclass
class ConfirmationMessage(Message):
    """Tells a peer its announcement with ``transaction_id`` was processed."""

    type = MessageType.CONFIRMATION

    transaction_id: str
    origin_port: int

    def payload(self):
        return {"origin_port": self.origin_port}

    @classmethod
    def from_dict(cls, obj):
        return cls(obj["transaction_id"], _require(obj, "origin_port", int))


@dataclass
class UnrecognizedMessage(Message):
    transaction_id: str
    type_label: str
    body: dict = field(default_factory=dict)

    @property
    def type_name(self):
        return self.type_label

    def payload(self):
        return {k: v for k, v in self.body.items() if k not in ("type", "transaction_id")}


_DECODERS = {
    MessageType.CLIENT_STARTUP.value: ClientStartupMessage.from_dict,
    MessageType.CONFIRMATION.value: ConfirmationMessage.from_dict,
}


def parse_message(obj) -> Message:
    type_name = _require(obj, "type", str)
    _require(obj, "transaction_id", str)
    decoder = _DECODERS.get(type_name)
    if decoder is None:
        return UnrecognizedMessage(obj["transaction_id"], type_name, dict(obj))
    return decoder(obj)


def decode(stream):
    """Read exactly one message from ``stream``; None once the peer has closed."""
    obj = recv_json(stream)
    if obj is None:
        return None
    return parse_message(obj)


def encode(message: Message) -> bytes:
    return dump_frame(message.to_dict())


def build_announcement(local_key_ring, name, email, storage_available, origin_port, transaction_id=None):
    """Assemble and sign a startup announcement for the holder of ``local_key_ring``."""
    update = ClientUpdate(name, email, storage_available, local_key_ring.public_key_ring())
    update.signature = local_key_ring.sign(update.signing_bytes())
    return ClientStartupMessage(transaction_id or new_transaction_id(), update, origin_port)
