from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum

from rendezvous.crypto.identity import PublicIdentity
from rendezvous.errors import InvalidEligibilityTransition

TIMESTAMP_FORMAT = "%Y.%m.%d %H:%M:%S %Z"
SEP = "~"


class Eligibility(Enum):
    # could become eligible if up with enough storage consistently enough
    CANDIDATE = "candidate"
    # ready for a backup circle, not placed in one yet
    ELIGIBLE = "eligible"
    # currently in a backup circle
    IN_CIRCLE = "in_circle"
    # taken out of consideration, e.g. down too often or abusive
    REJECTED = "rejected"

    def __str__(self):
        return self.value


_TRANSITIONS = {
    Eligibility.CANDIDATE: {Eligibility.ELIGIBLE, Eligibility.REJECTED},
    Eligibility.ELIGIBLE: {Eligibility.IN_CIRCLE, Eligibility.REJECTED},
    Eligibility.IN_CIRCLE: {Eligibility.REJECTED},
    Eligibility.REJECTED: set(),
}


def format_timestamp(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def utcnow():
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass(frozen=True)
class PeerRecord:
    """
    One storage node out on the network, as last reported by itself.

    Records are immutable; every change yields a new record so an update that
    fails to persist leaves nothing behind in memory.
    """

    identity: PublicIdentity
    name: str
    email: str
    storage_available: int
    last_seen: datetime
    inet_address: str
    port: int
    eligibility: Eligibility = Eligibility.CANDIDATE

    @property
    def handle(self):
        return self.identity.handle

    @property
    def key_ring(self) -> bytes:
        return self.identity.key_ring.data

    @classmethod
    def create(cls, update, identity, inet_address, port, seen=None):
        return cls(
            identity=identity,
            name=update.name,
            email=update.email,
            storage_available=update.storage_available,
            last_seen=seen or utcnow(),
            inet_address=inet_address,
            port=port,
        )

    def apply_update(self, update, identity, inet_address, port, seen=None):
        """The record as it stands after a verified announcement; eligibility is kept."""
        return replace(
            self,
            identity=identity,
            name=update.name,
            email=update.email,
            storage_available=update.storage_available,
            last_seen=seen or utcnow(),
            inet_address=inet_address,
            port=port,
        )

    def transition_to(self, eligibility: Eligibility):
        if eligibility not in _TRANSITIONS[self.eligibility]:
            raise InvalidEligibilityTransition(
                f"{self.handle} cannot move from {self.eligibility} to {eligibility}")
        return replace(self, eligibility=eligibility)

    def update_log_entry(self):
        return SEP.join([
            "User changed",
            self.handle.handle_string,
            self.name,
            self.email,
            str(self.storage_available),
            format_timestamp(self.last_seen),
            self.inet_address,
            str(self.port),
        ])
