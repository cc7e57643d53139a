class RendezvousError(Exception):
    """Base class for every failure raised while handling peer traffic."""


class MalformedMessage(RendezvousError):
    """A frame could not be decoded; ends the connection's read loop."""


class UnrecognizedMessageType(RendezvousError):
    pass


class InvalidStateTransition(RendezvousError):
    pass


class InvalidKeyRing(RendezvousError):
    pass


class NoSigningOrEncryptingKey(RendezvousError):
    pass


class SignatureMismatch(RendezvousError):
    pass


class DirectoryCorruption(RendezvousError):
    """More than one stored record claims a single identity."""


class PersistenceFailure(RendezvousError):
    pass


class InvalidEligibilityTransition(RendezvousError):
    pass
