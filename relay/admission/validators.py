# relay/admission/validators.py
"""
Kind-specific structural validation for events admitted without payment.

Each validator is a plain function `check(event, store) -> ValidationOutcome`
registered under a name and an event kind. Validators never write; the bid
validator is the only one that reads from the event store.

Auction descriptor (kind 33222), JSON content:
    {
        "item": {"name": "...", "description": "..."},
        "starting_price": 1000,
        "currency": "sat",
        "closes_at": 1767225600
    }
Tags may carry the same fields (price, currency, closed_at, description);
values found in the content take precedence.

Bid (kind 1077): content is the amount as an integer string and a single
["e", <auction event id>] tag points at the auction.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from relay.admission.errors import ValidationFailure
from relay.models.event import AUCTION_KIND, BID_KIND, Event
from relay.services.event_store import EventFilter, EventStore

logger = logging.getLogger(__name__)

AUCTION_NOT_FOUND = "auction-not-found"
AUCTION_CLOSED = "auction-closed"
BID_TOO_LOW = "bid-too-low"
MALFORMED_BID = "malformed-bid"

# ASCII digits only
INTEGER_PATTERN = re.compile(r"-?[0-9]+")


@dataclass(frozen=True)
class ValidationOutcome:
    accepted: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationOutcome":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> "ValidationOutcome":
        return cls(accepted=False, reason=reason)


Validator = Callable[[Event, EventStore], ValidationOutcome]


@dataclass(frozen=True)
class NamedValidator:
    name: str
    kind: int
    check: Validator


@dataclass
class ValidatorRegistry:
    """Ordered collection of validators, consulted by event kind."""
    validators: List[NamedValidator] = field(default_factory=list)

    def register(self, name: str, kind: int, check: Validator) -> None:
        if any(v.name == name for v in self.validators):
            raise ValueError(f"Validator '{name}' is already registered")
        self.validators.append(NamedValidator(name=name, kind=kind, check=check))

    def for_kind(self, kind: int) -> List[NamedValidator]:
        return [v for v in self.validators if v.kind == kind]

    def handles(self, kind: int) -> bool:
        return any(v.kind == kind for v in self.validators)

    def validate(self, event: Event, store: EventStore) -> ValidationOutcome:
        """
        Run every validator for the event's kind; the first rejection wins.

        Validators may either return a rejection or raise ValidationFailure.
        """
        for validator in self.for_kind(event.kind):
            try:
                outcome = validator.check(event, store)
            except ValidationFailure as e:
                outcome = ValidationOutcome.reject(e.reason)
            if not outcome.accepted:
                logger.info(f"Validator '{validator.name}' rejected event {event.id}: {outcome.reason}")
                return outcome
        return ValidationOutcome.ok()


def _parse_int(value: Any) -> Optional[int]:
    """Accept ints and integer strings; reject bools, floats and junk."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and INTEGER_PATTERN.fullmatch(value.strip()):
        return int(value.strip())
    return None


def _auction_fields(event: Event) -> Dict[str, Any]:
    """
    Merge the auction descriptor from tags and JSON content.

    Raises:
        ValidationFailure: The content is not a JSON object
    """
    descriptor: Dict[str, Any] = {}

    tag_fields = {
        "price": "starting_price",
        "currency": "currency",
        "closed_at": "closes_at",
        "description": "description",
    }
    for tag_name, key in tag_fields.items():
        value = event.first_tag_value(tag_name)
        if value is not None:
            descriptor[key] = value

    if event.content.strip():
        try:
            content = json.loads(event.content)
        except (ValueError, RecursionError):
            raise ValidationFailure("malformed auction content")
        if not isinstance(content, dict):
            raise ValidationFailure("malformed auction content")

        for key in ("starting_price", "currency", "closes_at"):
            if key in content:
                descriptor[key] = content[key]
        item = content.get("item")
        if isinstance(item, dict) and "description" in item:
            descriptor["description"] = item["description"]

    return descriptor


def validate_auction_event(event: Event, store: EventStore) -> ValidationOutcome:
    """Check that an auction-creation event declares a usable auction."""
    try:
        descriptor = _auction_fields(event)
    except ValidationFailure as e:
        return ValidationOutcome.reject(e.reason)

    if "starting_price" not in descriptor:
        return ValidationOutcome.reject("missing starting price")
    starting_price = _parse_int(descriptor["starting_price"])
    if starting_price is None or starting_price <= 0:
        return ValidationOutcome.reject("invalid starting price")

    currency = descriptor.get("currency")
    if not isinstance(currency, str) or not currency.strip():
        return ValidationOutcome.reject("missing currency")

    if descriptor.get("closes_at") is None:
        return ValidationOutcome.reject("missing closing time")
    closes_at = _parse_int(descriptor["closes_at"])
    if closes_at is None:
        return ValidationOutcome.reject("invalid closing time")
    if closes_at <= event.created_at:
        return ValidationOutcome.reject("closing time must be after creation time")

    description = descriptor.get("description")
    if not isinstance(description, str) or not description.strip():
        return ValidationOutcome.reject("missing item description")

    return ValidationOutcome.ok()


def auction_terms(auction: Event) -> Tuple[int, Optional[int]]:
    """Starting price and closing time of a stored (already validated) auction."""
    try:
        descriptor = _auction_fields(auction)
    except ValidationFailure:
        descriptor = {}
    starting_price = _parse_int(descriptor.get("starting_price")) or 0
    closes_at = _parse_int(descriptor.get("closes_at"))
    return starting_price, closes_at


def highest_bid(store: EventStore, auction_id: str, exclude_id: Optional[str] = None) -> Optional[int]:
    """Highest amount among stored bids for an auction, or None without bids."""
    bids = store.query(EventFilter(kinds=[BID_KIND], tags={"e": [auction_id]}))
    amounts = [
        amount for amount in (_parse_int(bid.content) for bid in bids if bid.id != exclude_id)
        if amount is not None and amount > 0
    ]
    return max(amounts) if amounts else None


def validate_bid_event(event: Event, store: EventStore) -> ValidationOutcome:
    """Check a bid against its auction and the current highest bid."""
    auction_refs = event.tag_values("e")
    if not auction_refs:
        return ValidationOutcome.reject(f"{MALFORMED_BID}: missing auction reference")
    if len(set(auction_refs)) > 1:
        return ValidationOutcome.reject(f"{MALFORMED_BID}: multiple auction references")

    amount = _parse_int(event.content)
    if amount is None or amount <= 0:
        return ValidationOutcome.reject(f"{MALFORMED_BID}: amount must be a positive integer")

    auction_id = auction_refs[0]
    auctions = store.query(EventFilter(ids=[auction_id], kinds=[AUCTION_KIND], limit=1))
    if not auctions:
        return ValidationOutcome.reject(AUCTION_NOT_FOUND)

    starting_price, closes_at = auction_terms(auctions[0])
    if closes_at is not None and event.created_at >= closes_at:
        return ValidationOutcome.reject(AUCTION_CLOSED)

    current = highest_bid(store, auction_id, exclude_id=event.id)
    if current is None:
        if amount < starting_price:
            return ValidationOutcome.reject(BID_TOO_LOW)
    elif amount <= current:
        return ValidationOutcome.reject(BID_TOO_LOW)

    return ValidationOutcome.ok()


def default_registry() -> ValidatorRegistry:
    """Validators for the relay's two specialised kinds."""
    registry = ValidatorRegistry()
    registry.register("auction", AUCTION_KIND, validate_auction_event)
    registry.register("bid", BID_KIND, validate_bid_event)
    return registry
