import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from models.credit_transaction import CreditTransaction
from models.payment import Payment
from services.errors import (
    AuthenticationError,
    PersistenceError,
    ValidationError,
    WebhookConfigurationError,
)
from services.billing_config import BillingConfig
from services.reconciler import WebhookOutcome, WebhookReconciler


EVENT_TS_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z
EVENT_TIME = datetime.fromtimestamp(EVENT_TS_MS / 1000, tz=timezone.utc)


def _body(**event) -> bytes:
    base = {
        "type": "INITIAL_PURCHASE",
        "id": "evt1",
        "app_user_id": "account-a",
        "product_id": "monthly",
        "event_timestamp_ms": EVENT_TS_MS,
        "price_in_purchased_currency": 9.99,
        "currency": "USD",
        "transaction_id": "store-txn-1",
    }
    base.update(event)
    return json.dumps({"api_version": "1.0", "event": base}).encode()


def _as_utc(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _count(session_maker, model, **filters):
    async with session_maker() as session:
        stmt = select(func.count()).select_from(model)
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        return (await session.execute(stmt)).scalar_one()


async def _process(session_maker, reconciler, body, secret):
    async with session_maker() as session:
        return await reconciler.process(session, body, secret)


@pytest.mark.asyncio
async def test_initial_purchase_scenario_and_redelivery(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=0)
    reconciler = WebhookReconciler(billing_config)

    first = await _process(session_maker, reconciler, _body(), billing_config.webhook_secret)
    assert first.outcome == WebhookOutcome.APPLIED
    assert first.snapshot.credits_balance == 200

    account = await load_account("account-a")
    assert account.credits_balance == 200
    assert account.is_pro_member is True
    assert _as_utc(account.pro_membership_expires_at) == EVENT_TIME + timedelta(days=30)
    assert account.subscription_in_grace_period is False

    async with session_maker() as session:
        payment = (await session.execute(select(Payment).where(Payment.transaction_id == "evt1"))).scalar_one()
        assert payment.status == "Success"
        assert payment.store_transaction_id == "store-txn-1"
        assert payment.amount == pytest.approx(9.99)
        assert _as_utc(payment.created_at) == EVENT_TIME
        purchase = (await session.execute(select(CreditTransaction))).scalar_one()
        assert purchase.type == "purchase"
        assert purchase.amount == 200
        assert purchase.payment_id == payment.id

    second = await _process(session_maker, reconciler, _body(), billing_config.webhook_secret)
    assert second.outcome == WebhookOutcome.DUPLICATE
    assert (await load_account("account-a")).credits_balance == 200
    assert await _count(session_maker, Payment) == 1
    assert await _count(session_maker, CreditTransaction) == 1


@pytest.mark.asyncio
async def test_concurrent_redelivery_applies_once(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=0)
    reconciler = WebhookReconciler(billing_config)

    results = await asyncio.gather(
        *(_process(session_maker, reconciler, _body(), billing_config.webhook_secret) for _ in range(4))
    )
    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes.count(WebhookOutcome.APPLIED.value) == 1
    assert outcomes.count(WebhookOutcome.DUPLICATE.value) == 3
    assert (await load_account("account-a")).credits_balance == 200
    assert await _count(session_maker, Payment) == 1


@pytest.mark.asyncio
async def test_anonymous_id_resolves_through_alias(session_maker, billing_config, make_account, load_account):
    await make_account("real-user-1", credits=3)
    reconciler = WebhookReconciler(billing_config)
    body = _body(app_user_id="$RCAnonymousID:xyz", aliases=["$RCAnonymousID:xyz", "real-user-1"])

    result = await _process(session_maker, reconciler, body, billing_config.webhook_secret)
    assert result.outcome == WebhookOutcome.APPLIED
    assert result.user_id == "real-user-1"
    assert (await load_account("real-user-1")).credits_balance == 203


@pytest.mark.asyncio
async def test_anonymous_id_without_alias_is_acknowledged_without_mutation(session_maker, billing_config):
    reconciler = WebhookReconciler(billing_config)
    body = _body(app_user_id="$RCAnonymousID:xyz", aliases=["$RCAnonymousID:xyz"])

    result = await _process(session_maker, reconciler, body, billing_config.webhook_secret)
    assert result.outcome == WebhookOutcome.UNRESOLVABLE_ACCOUNT
    assert await _count(session_maker, Payment) == 0


@pytest.mark.asyncio
async def test_billing_issue_enters_grace_period(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=40, is_pro_member=True)
    reconciler = WebhookReconciler(billing_config)

    result = await _process(
        session_maker,
        reconciler,
        _body(type="BILLING_ISSUE", id="evt-billing"),
        billing_config.webhook_secret,
    )
    assert result.outcome == WebhookOutcome.APPLIED

    account = await load_account("account-a")
    assert account.subscription_in_grace_period is True
    assert account.credits_balance == 40
    assert account.is_pro_member is True

    async with session_maker() as session:
        payment = (await session.execute(select(Payment))).scalar_one()
        assert payment.status == "BillingIssue"
        assert payment.amount == 0
        assert payment.transaction_id == "evt-billing"
        entry = (await session.execute(select(CreditTransaction))).scalar_one()
        assert entry.type == "billing_issue"
        assert entry.amount == 0


@pytest.mark.asyncio
async def test_cancellation_defers_until_expiration(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=0)
    reconciler = WebhookReconciler(billing_config)
    secret = billing_config.webhook_secret

    await _process(session_maker, reconciler, _body(), secret)
    before = await load_account("account-a")

    cancellation = await _process(
        session_maker,
        reconciler,
        _body(type="CANCELLATION", id="evt-cancel", cancel_reason="UNSUBSCRIBE"),
        secret,
    )
    assert cancellation.outcome == WebhookOutcome.CANCELLATION_DEFERRED
    after_cancel = await load_account("account-a")
    assert after_cancel.is_pro_member is True
    assert after_cancel.pro_membership_expires_at == before.pro_membership_expires_at
    assert after_cancel.credits_balance == 200

    expiration = await _process(session_maker, reconciler, _body(type="EXPIRATION", id="evt-expire"), secret)
    assert expiration.outcome == WebhookOutcome.APPLIED
    expired = await load_account("account-a")
    assert expired.is_pro_member is False
    assert expired.pro_membership_expires_at is None
    assert expired.subscription_in_grace_period is False
    assert expired.credits_balance == 200


@pytest.mark.asyncio
async def test_uncancellation_restores_membership(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=5, subscription_in_grace_period=True)
    reconciler = WebhookReconciler(billing_config)

    result = await _process(
        session_maker,
        reconciler,
        _body(type="UNCANCELLATION", id="evt-uncancel"),
        billing_config.webhook_secret,
    )
    assert result.outcome == WebhookOutcome.APPLIED
    account = await load_account("account-a")
    assert account.is_pro_member is True
    assert account.subscription_in_grace_period is False
    assert account.credits_balance == 5
    assert await _count(session_maker, Payment) == 0


@pytest.mark.asyncio
async def test_renewal_clears_grace_and_extends_from_event_time(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=10, subscription_in_grace_period=True)
    reconciler = WebhookReconciler(billing_config)
    renewal_ms = EVENT_TS_MS + 7 * 86_400_000

    await _process(
        session_maker,
        reconciler,
        _body(type="RENEWAL", id="evt-renew", product_id="toonify_pro_weekly", event_timestamp_ms=renewal_ms),
        billing_config.webhook_secret,
    )
    account = await load_account("account-a")
    assert account.credits_balance == 60
    assert account.subscription_in_grace_period is False
    assert _as_utc(account.pro_membership_expires_at) == EVENT_TIME + timedelta(days=14)


@pytest.mark.asyncio
async def test_noop_outcomes_touch_nothing(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=7)
    reconciler = WebhookReconciler(billing_config)
    secret = billing_config.webhook_secret

    unknown_product = await _process(session_maker, reconciler, _body(product_id="credit_pack_10"), secret)
    unhandled = await _process(session_maker, reconciler, _body(type="TRANSFER", id="evt-transfer"), secret)
    refund = await _process(
        session_maker,
        reconciler,
        _body(type="CANCELLATION", id="evt-refund", cancel_reason="CUSTOMER_SUPPORT"),
        secret,
    )
    missing_product = await _process(session_maker, reconciler, _body(product_id=None, id="evt-noproduct"), secret)

    assert unknown_product.outcome == WebhookOutcome.UNKNOWN_PRODUCT
    assert unhandled.outcome == WebhookOutcome.UNHANDLED_EVENT
    assert refund.outcome == WebhookOutcome.UNHANDLED_EVENT
    assert missing_product.outcome == WebhookOutcome.MISSING_DATA
    assert (await load_account("account-a")).credits_balance == 7
    assert await _count(session_maker, Payment) == 0


@pytest.mark.asyncio
async def test_unknown_account_is_acknowledged_and_left_retryable(session_maker, billing_config, make_account):
    reconciler = WebhookReconciler(billing_config)

    missing = await _process(session_maker, reconciler, _body(app_user_id="ghost"), billing_config.webhook_secret)
    assert missing.outcome == WebhookOutcome.ACCOUNT_NOT_FOUND
    assert await _count(session_maker, Payment) == 0

    await make_account("ghost", credits=0)
    retried = await _process(session_maker, reconciler, _body(app_user_id="ghost"), billing_config.webhook_secret)
    assert retried.outcome == WebhookOutcome.APPLIED


@pytest.mark.asyncio
async def test_authentication_is_required_except_for_test_events(session_maker, billing_config, make_account):
    await make_account("account-a", credits=0)
    reconciler = WebhookReconciler(billing_config)

    with pytest.raises(AuthenticationError):
        await _process(session_maker, reconciler, _body(), None)
    with pytest.raises(AuthenticationError):
        await _process(session_maker, reconciler, _body(), "wrong-secret")
    assert await _count(session_maker, Payment) == 0

    ping = await _process(session_maker, reconciler, _body(type="TEST", id="ping"), None)
    assert ping.outcome == WebhookOutcome.TEST_EVENT

    # A correctly signed retry of the rejected delivery still applies.
    retried = await _process(session_maker, reconciler, _body(), billing_config.webhook_secret)
    assert retried.outcome == WebhookOutcome.APPLIED


@pytest.mark.asyncio
async def test_missing_secret_configuration_is_a_server_error(session_maker, billing_config):
    reconciler = WebhookReconciler(BillingConfig(catalog=billing_config.catalog, webhook_secret=""))
    with pytest.raises(WebhookConfigurationError):
        await _process(session_maker, reconciler, _body(), "anything")


@pytest.mark.asyncio
async def test_malformed_events_are_rejected(session_maker, billing_config):
    reconciler = WebhookReconciler(billing_config)
    secret = billing_config.webhook_secret

    with pytest.raises(ValidationError):
        await _process(session_maker, reconciler, b"", secret)
    with pytest.raises(ValidationError):
        await _process(session_maker, reconciler, b"{oops", secret)
    with pytest.raises(ValidationError):
        await _process(session_maker, reconciler, _body(id=None), secret)


@pytest.mark.asyncio
async def test_transaction_log_reconciles_with_balance(session_maker, billing_config, load_account):
    from services.ledger import ensure_account
    from services.spend_gate import CreditSpendGate

    async with session_maker() as session:
        await ensure_account(session, "account-a", signup_credits=5)

    reconciler = WebhookReconciler(billing_config)
    secret = billing_config.webhook_secret
    await _process(session_maker, reconciler, _body(), secret)
    await _process(session_maker, reconciler, _body(type="BILLING_ISSUE", id="evt-b"), secret)
    await _process(session_maker, reconciler, _body(type="RENEWAL", id="evt-r"), secret)

    gate = CreditSpendGate(billing_config)
    for _ in range(3):
        async with session_maker() as session:
            await gate.try_spend(session, "account-a")

    async with session_maker() as session:
        total = (
            await session.execute(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                    CreditTransaction.user_id == "account-a"
                )
            )
        ).scalar_one()
    account = await load_account("account-a")
    assert account.credits_balance == 5 + 200 + 200 - 3
    assert total == account.credits_balance


@pytest.mark.asyncio
@pytest.mark.parametrize("timestamp_ms", [10**18, -(10**18)])
async def test_out_of_range_timestamp_is_rejected(session_maker, billing_config, make_account, load_account, timestamp_ms):
    await make_account("account-a", credits=0)
    reconciler = WebhookReconciler(billing_config)

    with pytest.raises(ValidationError):
        await _process(session_maker, reconciler, _body(event_timestamp_ms=timestamp_ms), billing_config.webhook_secret)

    assert (await load_account("account-a")).credits_balance == 0
    assert await _count(session_maker, Payment) == 0


@pytest.mark.asyncio
async def test_failed_commit_leaves_no_partial_state(session_maker, billing_config, make_account, load_account):
    await make_account("account-a", credits=4)
    reconciler = WebhookReconciler(billing_config)

    async def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    async with session_maker() as session:
        session.commit = failing_commit
        with pytest.raises(PersistenceError):
            await reconciler.process(session, _body(), billing_config.webhook_secret)

    account = await load_account("account-a")
    assert account.credits_balance == 4
    assert account.is_pro_member is False
    assert account.pro_membership_expires_at is None
    assert await _count(session_maker, Payment) == 0
    assert await _count(session_maker, CreditTransaction) == 0

    retried = await _process(session_maker, reconciler, _body(), billing_config.webhook_secret)
    assert retried.outcome == WebhookOutcome.APPLIED
    assert (await load_account("account-a")).credits_balance == 204
    assert await _count(session_maker, Payment) == 1
