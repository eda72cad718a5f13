# relay/models/event.py
import hashlib
import json
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Event kinds with dedicated validation rules
AUCTION_KIND = 33222
BID_KIND = 1077  # NIP-15 uses 1021 for bids; this relay keeps 1077


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: List[List[str]],
    content: str
) -> str:
    """
    Derive the event identifier from its content.

    The id is the sha256 of the compact JSON array
    [0, pubkey, created_at, kind, tags, content], as defined by NIP-01.
    """
    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class Event(BaseModel):
    """
    A signed, content-addressed record submitted to the relay.

    Events are immutable once built. The signature is carried through to
    storage but is checked by the transport layer, not here.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., pattern=r"^[0-9a-f]{64}$", description="sha256 of the serialized event")
    pubkey: str = Field(..., pattern=r"^[0-9a-f]{64}$", description="Author public key (hex)")
    created_at: int = Field(..., ge=0, description="Unix timestamp in seconds")
    kind: int = Field(..., ge=0, description="Kind tag selecting validation rules")
    tags: List[List[str]] = Field(default_factory=list)
    content: str = ""
    sig: str = Field(..., pattern=r"^[0-9a-f]{128}$", description="Schnorr signature (hex)")

    def expected_id(self) -> str:
        return compute_event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    def has_valid_id(self) -> bool:
        return self.id == self.expected_id()

    def tag_values(self, name: str) -> List[str]:
        """Return the first value of every tag called `name`."""
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]

    def first_tag_value(self, name: str) -> Optional[str]:
        values = self.tag_values(name)
        return values[0] if values else None

    def to_json(self) -> str:
        return self.model_dump_json()
