"""RevenueCat webhook reconciliation against the account ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import hmac
import logging
from typing import Callable, Optional
import uuid

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.payment import Payment
from services.billing_config import BillingConfig
from services.errors import (
    AccountNotFoundError,
    AuthenticationError,
    DuplicateEventError,
    PersistenceError,
    UnresolvableAccountError,
    WebhookConfigurationError,
)
from services.ledger import AccountSnapshot, SubscriptionFields, apply_delta
from services.webhook_events import (
    BillingEvent,
    BillingIssue,
    Cancellation,
    EventContext,
    Expiration,
    IncompleteEvent,
    PingEvent,
    SubscriptionGrant,
    Uncancellation,
    UnknownEvent,
    classify_event,
    decode_event_payload,
    is_test_event,
    parse_event,
)

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    TEST_EVENT = "test_event"
    UNRESOLVABLE_ACCOUNT = "unresolvable_account"
    MISSING_DATA = "missing_data"
    UNKNOWN_PRODUCT = "unknown_product"
    UNHANDLED_EVENT = "unhandled_event"
    CANCELLATION_DEFERRED = "cancellation_deferred"
    ACCOUNT_NOT_FOUND = "account_not_found"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    snapshot: Optional[AccountSnapshot] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookReconciler:
    """Applies each RevenueCat event to the ledger at most once.

    Every outcome except auth, validation and persistence failures is
    acknowledged so RevenueCat stops redelivering the event.
    """

    def __init__(self, config: BillingConfig, clock: Callable[[], datetime] = _utc_now):
        self._config = config
        self._clock = clock

    def verify_authorization(self, authorization: Optional[str]) -> None:
        secret = self._config.webhook_secret
        if not secret:
            logger.error("RevenueCat webhook secret is not configured.")
            raise WebhookConfigurationError("Webhook secret configuration error.")
        if not authorization:
            logger.warning("RevenueCat webhook missing Authorization header.")
            raise AuthenticationError("Missing Authorization header")
        if not hmac.compare_digest(authorization.encode("utf-8"), secret.encode("utf-8")):
            logger.warning("RevenueCat webhook Authorization header mismatch.")
            raise AuthenticationError("Invalid Authorization header")

    async def process(
        self,
        db: AsyncSession,
        raw_body: bytes,
        authorization: Optional[str],
    ) -> WebhookResult:
        payload = decode_event_payload(raw_body)
        logger.info("RevenueCat webhook received type=%s id=%s", payload.get("type"), payload.get("id"))
        if is_test_event(payload):
            return WebhookResult(WebhookOutcome.TEST_EVENT, event_id=payload.get("id"))

        self.verify_authorization(authorization)
        event = parse_event(payload)
        try:
            billing_event = classify_event(event, now=self._clock())
        except UnresolvableAccountError as exc:
            logger.warning("RevenueCat event %s (%s) not applied: %s", event.id, event.type, exc)
            return WebhookResult(WebhookOutcome.UNRESOLVABLE_ACCOUNT, event_id=event.id)
        return await self.apply(db, billing_event)

    async def apply(self, db: AsyncSession, billing_event: BillingEvent) -> WebhookResult:
        if isinstance(billing_event, PingEvent):
            return WebhookResult(WebhookOutcome.TEST_EVENT, event_id=billing_event.event_id)
        if isinstance(billing_event, UnknownEvent):
            logger.info("Unhandled RevenueCat event type %s; no action taken.", billing_event.event_type)
            return WebhookResult(WebhookOutcome.UNHANDLED_EVENT, event_id=billing_event.event_id)
        if isinstance(billing_event, IncompleteEvent):
            logger.error(
                "RevenueCat %s event for user %s missing %s.",
                billing_event.event_type,
                billing_event.user_id,
                billing_event.missing,
            )
            return WebhookResult(WebhookOutcome.MISSING_DATA, user_id=billing_event.user_id)

        context = billing_event.context
        if isinstance(billing_event, Cancellation):
            return self._handle_cancellation(billing_event)

        plan = None
        if isinstance(billing_event, SubscriptionGrant):
            plan = self._config.catalog.lookup(context.product_id)
            if plan is None:
                logger.warning(
                    "Unknown product %s for %s event %s; no action taken.",
                    context.product_id,
                    context.event_type,
                    context.event_id,
                )
                return self._result(WebhookOutcome.UNKNOWN_PRODUCT, context)

        try:
            await self._ensure_not_processed(db, context.event_id)
            if isinstance(billing_event, SubscriptionGrant):
                snapshot = await apply_delta(
                    db,
                    context.user_id,
                    credits_delta=plan.credits_granted,
                    subscription=SubscriptionFields(
                        is_pro_member=True,
                        pro_membership_expires_at=context.occurred_at + timedelta(days=plan.duration_days),
                        subscription_in_grace_period=False,
                    ),
                    transaction_type="purchase",
                    payment=self._payment(context, status="Success", amount=context.price),
                )
            elif isinstance(billing_event, BillingIssue):
                snapshot = await apply_delta(
                    db,
                    context.user_id,
                    subscription=SubscriptionFields(subscription_in_grace_period=True),
                    transaction_type="billing_issue",
                    payment=self._payment(context, status="BillingIssue", amount=0),
                )
            elif isinstance(billing_event, Uncancellation):
                snapshot = await apply_delta(
                    db,
                    context.user_id,
                    subscription=SubscriptionFields(is_pro_member=True, subscription_in_grace_period=False),
                )
            elif isinstance(billing_event, Expiration):
                snapshot = await apply_delta(
                    db,
                    context.user_id,
                    subscription=SubscriptionFields(
                        is_pro_member=False,
                        clear_pro_membership_expiry=True,
                        subscription_in_grace_period=False,
                    ),
                )
            else:
                return self._result(WebhookOutcome.UNHANDLED_EVENT, context)
            await db.commit()
        except DuplicateEventError:
            await db.rollback()
            logger.info("Duplicate RevenueCat event %s; already processed.", context.event_id)
            return self._result(WebhookOutcome.DUPLICATE, context)
        except IntegrityError:
            # Lost the race on payments.transaction_id to a concurrent delivery.
            await db.rollback()
            logger.info("Duplicate RevenueCat event %s detected on insert.", context.event_id)
            return self._result(WebhookOutcome.DUPLICATE, context)
        except AccountNotFoundError:
            await db.rollback()
            logger.error("User not found with app_user_id %s for event %s.", context.user_id, context.event_id)
            return self._result(WebhookOutcome.ACCOUNT_NOT_FOUND, context)
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Database error processing RevenueCat event %s.", context.event_id)
            raise PersistenceError("Database error during webhook processing.") from exc

        logger.info(
            "RevenueCat %s applied event=%s user=%s credits=%s pro=%s expires=%s grace=%s",
            context.event_type,
            context.event_id,
            context.user_id,
            snapshot.credits_balance,
            snapshot.is_pro_member,
            snapshot.pro_membership_expires_at,
            snapshot.subscription_in_grace_period,
        )
        return WebhookResult(
            WebhookOutcome.APPLIED,
            event_id=context.event_id,
            user_id=context.user_id,
            snapshot=snapshot,
        )

    def _handle_cancellation(self, event: Cancellation) -> WebhookResult:
        context = event.context
        if event.is_unsubscribe:
            logger.info(
                "User %s cancelled auto-renewal for %s; benefits continue until expiration.",
                context.user_id,
                context.product_id,
            )
            return self._result(WebhookOutcome.CANCELLATION_DEFERRED, context)
        logger.info(
            "Cancellation for user %s with reason %s; waiting for EXPIRATION.",
            context.user_id,
            event.reason,
        )
        return self._result(WebhookOutcome.UNHANDLED_EVENT, context)

    async def _ensure_not_processed(self, db: AsyncSession, event_id: str) -> None:
        result = await db.execute(select(Payment.id).where(Payment.transaction_id == event_id).limit(1))
        if result.scalar_one_or_none() is not None:
            raise DuplicateEventError(event_id)

    @staticmethod
    def _payment(context: EventContext, *, status: str, amount: float) -> Payment:
        return Payment(
            id=str(uuid.uuid4()),
            user_id=context.user_id,
            amount=amount,
            currency=context.currency,
            status=status,
            product_id=context.product_id,
            transaction_id=context.event_id,
            store_transaction_id=context.store_transaction_id,
            created_at=context.occurred_at,
        )

    @staticmethod
    def _result(outcome: WebhookOutcome, context: EventContext) -> WebhookResult:
        return WebhookResult(outcome, event_id=context.event_id, user_id=context.user_id)
