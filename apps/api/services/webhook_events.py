"""RevenueCat webhook payload parsing and classification."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from services.errors import UnresolvableAccountError, ValidationError


ANONYMOUS_ID_PREFIX = "$RCAnonymousID:"
TEST_EVENT_TYPE = "TEST"
GRANT_EVENT_TYPES = frozenset({"INITIAL_PURCHASE", "RENEWAL", "PRODUCT_CHANGE"})
HANDLED_EVENT_TYPES = GRANT_EVENT_TYPES | {
    "BILLING_ISSUE",
    "UNCANCELLATION",
    "EXPIRATION",
    "CANCELLATION",
}
UNSUBSCRIBE_REASON = "UNSUBSCRIBE"


class RevenueCatEvent(BaseModel):
    """The ``event`` object of a RevenueCat webhook body (unknown keys ignored)."""

    model_config = ConfigDict(extra="ignore")

    type: str
    id: Optional[str] = None
    app_user_id: Optional[str] = None
    aliases: Optional[List[str]] = None
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    store_transaction_id: Optional[str] = None
    price_in_purchased_currency: Optional[float] = None
    currency: Optional[str] = None
    event_timestamp_ms: Optional[int] = None
    cancel_reason: Optional[str] = None


@dataclass(frozen=True)
class EventContext:
    event_id: str
    event_type: str
    user_id: str
    product_id: str
    occurred_at: datetime
    price: float
    currency: str
    store_transaction_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionGrant:
    context: EventContext


@dataclass(frozen=True)
class BillingIssue:
    context: EventContext


@dataclass(frozen=True)
class Uncancellation:
    context: EventContext


@dataclass(frozen=True)
class Expiration:
    context: EventContext


@dataclass(frozen=True)
class Cancellation:
    context: EventContext
    reason: Optional[str]

    @property
    def is_unsubscribe(self) -> bool:
        return (self.reason or "").upper() == UNSUBSCRIBE_REASON


@dataclass(frozen=True)
class IncompleteEvent:
    event_type: str
    user_id: str
    missing: str


@dataclass(frozen=True)
class PingEvent:
    event_id: Optional[str]


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str
    event_id: Optional[str]


BillingEvent = Union[
    SubscriptionGrant,
    BillingIssue,
    Uncancellation,
    Expiration,
    Cancellation,
    IncompleteEvent,
    PingEvent,
    UnknownEvent,
]


def decode_event_payload(raw_body: bytes) -> Dict[str, Any]:
    """Return the ``event`` object from a raw webhook body."""
    if not raw_body or not raw_body.strip():
        raise ValidationError("Missing body.")
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Invalid JSON body.") from exc

    event = payload.get("event") if isinstance(payload, dict) else None
    if not isinstance(event, dict):
        raise ValidationError("Body has no event object.")
    return event


def is_test_event(event: Dict[str, Any]) -> bool:
    return event.get("type") == TEST_EVENT_TYPE


def parse_event(event: Dict[str, Any]) -> RevenueCatEvent:
    try:
        return RevenueCatEvent.model_validate(event)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
        raise ValidationError(f"Invalid event fields: {fields}") from exc


def is_anonymous_id(app_user_id: Optional[str]) -> bool:
    return bool(app_user_id) and app_user_id.startswith(ANONYMOUS_ID_PREFIX)


def resolve_app_user_id(app_user_id: Optional[str], aliases: Optional[Sequence[str]] = None) -> str:
    """Map a RevenueCat app_user_id onto the canonical account id.

    Anonymous ids are replaced by the first non-anonymous alias. Raises
    UnresolvableAccountError when no real identifier is available.
    """
    if not app_user_id:
        raise UnresolvableAccountError("Event has no app_user_id.")
    if not is_anonymous_id(app_user_id):
        return app_user_id

    for alias in aliases or ():
        if alias and not is_anonymous_id(alias):
            return alias
    raise UnresolvableAccountError(f"Anonymous id {app_user_id} has no non-anonymous alias.")


def event_time(event: RevenueCatEvent, now: Optional[datetime] = None) -> datetime:
    if event.event_timestamp_ms is None:
        return now or datetime.now(timezone.utc)
    try:
        return datetime.fromtimestamp(event.event_timestamp_ms / 1000.0, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValidationError("Invalid event_timestamp_ms") from exc


def classify_event(event: RevenueCatEvent, now: Optional[datetime] = None) -> BillingEvent:
    """Turn a parsed event into one of the billing event variants.

    Raises UnresolvableAccountError for handled events without a real user,
    and ValidationError for handled events without an id.
    """
    if event.type == TEST_EVENT_TYPE:
        return PingEvent(event_id=event.id)
    if event.type not in HANDLED_EVENT_TYPES:
        return UnknownEvent(event_type=event.type, event_id=event.id)

    user_id = resolve_app_user_id(event.app_user_id, event.aliases)
    if not event.product_id:
        return IncompleteEvent(event_type=event.type, user_id=user_id, missing="product_id")
    if not event.id:
        raise ValidationError(f"{event.type} event is missing event.id.")

    context = EventContext(
        event_id=event.id,
        event_type=event.type,
        user_id=user_id,
        product_id=event.product_id,
        occurred_at=event_time(event, now),
        price=float(event.price_in_purchased_currency or 0),
        currency=event.currency or "USD",
        store_transaction_id=event.store_transaction_id or event.transaction_id,
    )

    if event.type in GRANT_EVENT_TYPES:
        return SubscriptionGrant(context)
    if event.type == "BILLING_ISSUE":
        return BillingIssue(context)
    if event.type == "UNCANCELLATION":
        return Uncancellation(context)
    if event.type == "EXPIRATION":
        return Expiration(context)
    return Cancellation(context, reason=event.cancel_reason)
