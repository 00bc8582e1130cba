"""Таблица переходов и условная запись статуса."""
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InvalidStateError
from app.models.payment import PaymentStatus
from app.services.payment_state import can_transition, transition_payment
from tests.conftest import create_order, create_payment, create_user

ALL = list(PaymentStatus)


@pytest.mark.parametrize(
    "current,allowed",
    [
        (PaymentStatus.PENDING, {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
        (PaymentStatus.PROCESSING, {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.PENDING}),
        (PaymentStatus.COMPLETED, {PaymentStatus.REFUNDED}),
        (PaymentStatus.FAILED, set()),
        (PaymentStatus.REFUNDED, set()),
    ],
)
def test_transition_table(current, allowed):
    assert {target for target in ALL if can_transition(current, target)} == allowed


@pytest.mark.asyncio
async def test_completion_sets_fields_once(db):
    user = await create_user(db)
    order = await create_order(db, user)
    payment = await create_payment(db, order, external_id=None)

    changed = await transition_payment(
        db,
        payment,
        PaymentStatus.COMPLETED,
        external_id="chr_1",
        card_mask="411111******1111",
        card_brand="Visa",
        provider_response={"id": "chr_1"},
    )

    assert changed is True
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.external_id == "chr_1"
    assert payment.card_mask == "411111******1111"
    assert payment.paid_at is not None

    paid_at = payment.paid_at
    assert await transition_payment(db, payment, PaymentStatus.COMPLETED) is False
    assert payment.paid_at == paid_at


@pytest.mark.asyncio
async def test_illegal_transition_raises(db):
    user = await create_user(db)
    order = await create_order(db, user)
    payment = await create_payment(db, order, status=PaymentStatus.FAILED)

    with pytest.raises(InvalidStateError):
        await transition_payment(db, payment, PaymentStatus.COMPLETED)


@pytest.mark.asyncio
async def test_external_id_is_write_once(db):
    user = await create_user(db)
    order = await create_order(db, user)
    payment = await create_payment(db, order, external_id="chr_original")

    with pytest.raises(InvalidStateError):
        await transition_payment(db, payment, PaymentStatus.COMPLETED, external_id="chr_other")


@pytest.mark.asyncio
async def test_refund_defaults_to_full_amount(db):
    user = await create_user(db)
    order = await create_order(db, user, total="100.00")
    payment = await create_payment(db, order, status=PaymentStatus.COMPLETED)

    assert await transition_payment(db, payment, PaymentStatus.REFUNDED) is True
    assert payment.refund_amount == Decimal("100.00")
    assert payment.refunded_at is not None


@pytest.mark.asyncio
async def test_stale_row_is_not_overwritten(session_factory):
    async with session_factory() as setup:
        user = await create_user(setup)
        order = await create_order(setup, user)
        payment = await create_payment(setup, order)

    async with session_factory() as first, session_factory() as second:
        stale = await first.get(type(payment), payment.id)
        fresh = await second.get(type(payment), payment.id)

        assert await transition_payment(second, fresh, PaymentStatus.FAILED, error_message="declined") is True
        # first все еще видит processing, но запись уже не его
        assert await transition_payment(first, stale, PaymentStatus.COMPLETED) is False
        assert stale.status == PaymentStatus.FAILED.value
        assert stale.paid_at is None


@pytest.mark.asyncio
async def test_second_completion_for_order_conflicts(db):
    user = await create_user(db)
    order = await create_order(db, user)
    await create_payment(db, order, status=PaymentStatus.COMPLETED, external_id="chr_paid")
    pending = await create_payment(db, order, status=PaymentStatus.PENDING, external_id="chr_late")

    with pytest.raises(ConflictError):
        await transition_payment(db, pending, PaymentStatus.COMPLETED)

    await db.refresh(pending)
    assert pending.status == PaymentStatus.PENDING.value
    assert pending.paid_at is None


@pytest.mark.asyncio
async def test_database_allows_one_completed_payment_per_order(db):
    user = await create_user(db)
    order = await create_order(db, user)
    await create_payment(db, order, status=PaymentStatus.COMPLETED, external_id="chr_a")
    await create_payment(db, order, status=PaymentStatus.FAILED, external_id="chr_b")

    with pytest.raises(IntegrityError):
        await create_payment(db, order, status=PaymentStatus.COMPLETED, external_id="chr_c")
    await db.rollback()
