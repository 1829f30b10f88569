import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import (
    CANCELLATION_FEE_PERCENTAGE,
    CURRENCY,
    MIN_PAYOUT_AMOUNT,
    PLATFORM_FEE_RATE,
    TAX_RATE,
)
from .db import new_id, transaction, utcnow
from .errors import Conflict, Forbidden, InvalidTransition, NotFound
from .models import (
    COMPLETED,
    PAYMENT_PENDING,
    ACCEPTED,
    TERMINAL_STATUSES,
    Booking,
    Payment,
    Payout,
    PayoutItem,
    Space,
    StripeAccount,
)
from .processor import PaymentProcessor
from .scheduling import Schedule
from .security import Actor

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
FEE_FIELDS = ("gross_amount", "stripe_fee", "platform_fee", "tax_fee")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def price_for(space: Space, schedule: Schedule) -> Decimal:
    minutes = Decimal(int(schedule.duration.total_seconds() // 60))
    return money(Decimal(space.rate_per_hour) * minutes / Decimal(60))


def compute_fees(gross: Decimal, processor: PaymentProcessor) -> dict:
    """
    Fee snapshot for one booking. The processor fee is charged on the grossed-up
    amount the client actually pays, so it is estimated on that amount.
    """
    gross = money(gross)
    platform_fee = money(gross * PLATFORM_FEE_RATE)
    tax_fee = money(gross * TAX_RATE)
    charge = money(
        (gross + platform_fee + tax_fee + processor.fee_fixed) / (Decimal(1) - processor.fee_percentage)
    )
    stripe_fee = processor.estimate_fee(charge)
    return {
        "gross_amount": gross,
        "stripe_fee": stripe_fee,
        "platform_fee": platform_fee,
        "tax_fee": tax_fee,
        "total_amount": gross + stripe_fee + platform_fee + tax_fee,
    }


def net_of(snapshot) -> Decimal:
    return money(
        Decimal(snapshot.gross_amount)
        - Decimal(snapshot.stripe_fee)
        - Decimal(snapshot.platform_fee)
        - Decimal(snapshot.tax_fee)
    )


def refund_amount_for(payment: Payment, canceled_by: str) -> Decimal:
    total = Decimal(payment.total_amount)
    if canceled_by != "client":
        return money(total)
    penalty = money(Decimal(payment.gross_amount) * CANCELLATION_FEE_PERCENTAGE)
    return max(money(total - penalty), Decimal("0.00"))


async def get_payment(db: AsyncSession, booking_id: str, for_update: bool = False) -> Payment | None:
    stmt = select(Payment).where(Payment.booking_id == booking_id)
    if for_update:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    return res.scalar_one_or_none()


async def authorize_booking_payment(db: AsyncSession, processor: PaymentProcessor, booking: Booking) -> Payment:
    """Creates the booking's single Payment and its intent. Repeat calls return the existing row."""
    payment = await get_payment(db, booking.id, for_update=True)
    if payment is not None:
        return payment

    fees = compute_fees(booking.gross_amount, processor)
    intent = await processor.authorize(
        fees["total_amount"],
        CURRENCY,
        {"booking_id": booking.id, "client_id": booking.client_id},
        f"booking:{booking.id}:authorize:1",
    )
    payment = Payment(
        id=new_id(),
        booking_id=booking.id,
        currency=CURRENCY,
        status="pending",
        attempts=1,
        stripe_payment_intent_id=intent.get("intent_id"),
        stripe_client_secret=intent.get("client_secret"),
        **fees,
    )
    db.add(payment)
    await db.flush()
    return payment


async def release_payment(
    db: AsyncSession, processor: PaymentProcessor, booking: Booking, canceled_by: str
) -> Payment | None:
    """Cancels a not-yet-captured intent or refunds a captured one."""
    payment = await get_payment(db, booking.id, for_update=True)
    if payment is None:
        return None

    if payment.status in ("pending", "failed"):
        if payment.status == "pending" and payment.stripe_payment_intent_id:
            await processor.cancel(
                payment.stripe_payment_intent_id,
                f"payment:{payment.id}:cancel:{payment.attempts}",
            )
        payment.status = "cancelled"

    elif payment.status == "succeeded":
        amount = refund_amount_for(payment, canceled_by)
        if amount > 0:
            await processor.refund(
                payment.stripe_payment_intent_id,
                amount,
                f"payment:{payment.id}:refund",
            )
        payment.refund_amount = amount
        payment.status = "refunded"

    await db.flush()
    return payment


async def reprice_booking(
    db: AsyncSession, processor: PaymentProcessor, booking: Booking, new_gross: Decimal
) -> Payment | None:
    """
    Keeps Payment and any payout line on the same gross snapshot as the booking.
    A price change is refused once money has been captured or paid out.
    """
    new_gross = money(new_gross)
    payment = await get_payment(db, booking.id, for_update=True)

    res = await db.execute(select(PayoutItem).where(PayoutItem.booking_id == booking.id))
    item = res.scalar_one_or_none()

    if payment is None or money(payment.gross_amount) == new_gross:
        return payment

    if payment.status in ("succeeded", "refunded"):
        raise Conflict("the new schedule changes the price of an already captured payment", "PriceLocked")

    if item is not None:
        payout = await db.get(Payout, item.payout_id, with_for_update=True)
        if payout.status != "pending":
            raise Conflict("the booking is part of a payout already in flight", "PayoutInFlight")

    fees = compute_fees(new_gross, processor)

    if payment.status == "pending":
        # the old intent stays live until its replacement exists
        old_intent_id = payment.stripe_payment_intent_id
        intent = await processor.authorize(
            fees["total_amount"],
            payment.currency,
            {"booking_id": booking.id, "client_id": booking.client_id},
            f"booking:{booking.id}:authorize:{payment.attempts + 1}",
        )
        if old_intent_id:
            await processor.cancel(old_intent_id, f"payment:{payment.id}:cancel:{payment.attempts}")
        payment.attempts += 1
        payment.stripe_payment_intent_id = intent.get("intent_id")
        payment.stripe_client_secret = intent.get("client_secret")

    for field, value in fees.items():
        setattr(payment, field, value)

    if item is not None:
        await _reprice_item(db, item, payment)

    await db.flush()
    return payment


async def _reprice_item(db: AsyncSession, item: PayoutItem, payment: Payment):
    payout = await db.get(Payout, item.payout_id)
    for field in FEE_FIELDS:
        setattr(payout, field, money(Decimal(getattr(payout, field)) - Decimal(getattr(item, field))))
        setattr(item, field, getattr(payment, field))
        setattr(payout, field, money(Decimal(getattr(payout, field)) + Decimal(getattr(item, field))))
    item.net_amount = net_of(item)
    payout.net_amount = net_of(payout)


async def accrue(db: AsyncSession, booking: Booking) -> Payout | None:
    """
    Appends the booking's payout line to the host's open payout.
    Returns None when the host has no payout account yet.
    """
    res = await db.execute(select(PayoutItem).where(PayoutItem.booking_id == booking.id))
    item = res.scalar_one_or_none()
    if item is not None:
        return await db.get(Payout, item.payout_id)

    payment = await get_payment(db, booking.id)
    if booking.status != COMPLETED or payment is None or payment.status != "succeeded":
        raise InvalidTransition("only completed, paid bookings accrue a payout")

    res = await db.execute(select(StripeAccount).where(StripeAccount.user_id == booking.host_id))
    account = res.scalar_one_or_none()
    if account is None:
        logger.info("host %s has no payout account, booking %s not accrued", booking.host_id, booking.id)
        return None

    res = await db.execute(
        select(Payout)
        .where(Payout.stripe_account_id == account.id, Payout.status == "pending")
        .order_by(Payout.created_at)
        .limit(1)
        .with_for_update()
    )
    payout = res.scalar_one_or_none()
    if payout is None:
        payout = Payout(
            id=new_id(),
            stripe_account_id=account.id,
            host_id=booking.host_id,
            currency=payment.currency,
            status="pending",
            attempts=1,
            gross_amount=Decimal("0.00"),
            stripe_fee=Decimal("0.00"),
            platform_fee=Decimal("0.00"),
            tax_fee=Decimal("0.00"),
            net_amount=Decimal("0.00"),
        )
        db.add(payout)

    item = PayoutItem(
        id=new_id(),
        payout_id=payout.id,
        booking_id=booking.id,
        **{field: money(getattr(payment, field)) for field in FEE_FIELDS},
    )
    item.net_amount = net_of(item)
    db.add(item)

    for field in FEE_FIELDS:
        setattr(payout, field, money(Decimal(getattr(payout, field)) + Decimal(getattr(item, field))))
    payout.net_amount = net_of(payout)

    await db.flush()
    return payout


class LedgerService:
    """Payment and payout operations that are triggered on their own (processor results, ops)."""

    def __init__(self, session_factory, processor: PaymentProcessor, notifier):
        self.session_factory = session_factory
        self.processor = processor
        self.notifier = notifier

    async def get_payment(self, booking_id: str, actor: Actor) -> Payment:
        async with transaction(self.session_factory) as db:
            booking = await db.get(Booking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            if not actor.is_admin and actor.user_id not in (booking.client_id, booking.host_id):
                raise Forbidden("not a party to this booking")
            payment = await get_payment(db, booking_id)
            if payment is None:
                raise NotFound(f"booking {booking_id} has no payment")
            return payment

    async def record_payment_result(
        self,
        succeeded: bool,
        booking_id: str | None = None,
        intent_id: str | None = None,
        error: str | None = None,
    ) -> Payment:
        target = "succeeded" if succeeded else "failed"
        accepted = False

        async with transaction(self.session_factory) as db:
            stmt = select(Payment).with_for_update()
            if intent_id:
                stmt = stmt.where(Payment.stripe_payment_intent_id == intent_id)
            elif booking_id:
                stmt = stmt.where(Payment.booking_id == booking_id)
            else:
                raise NotFound("payment reference missing")
            res = await db.execute(stmt)
            payment = res.scalar_one_or_none()
            if payment is None:
                raise NotFound("payment not found")

            if payment.status == target:
                return payment
            if payment.status != "pending":
                raise InvalidTransition(f"payment is {payment.status}, cannot become {target}")

            payment.status = target
            payment.error_message = None if succeeded else (error or "payment failed")

            booking = await db.get(Booking, payment.booking_id, with_for_update=True)
            if succeeded and booking.status == PAYMENT_PENDING:
                booking.status = ACCEPTED
                accepted = True

        await self.notifier.emit(f"payment.{target}", payment.booking_id, None, {
            "payment_id": payment.id,
            "total_amount": payment.total_amount,
            "error": payment.error_message,
        })
        if accepted:
            await self.notifier.emit("booking.accepted", payment.booking_id, None, {"status": ACCEPTED})
        return payment

    async def retry_payment(self, booking_id: str, actor: Actor) -> Payment:
        async with transaction(self.session_factory) as db:
            booking = await db.get(Booking, booking_id, with_for_update=True)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            if not actor.is_admin and actor.user_id != booking.client_id:
                raise Forbidden("only the client can retry a payment")
            if booking.status in TERMINAL_STATUSES:
                raise InvalidTransition(f"booking is {booking.status}")

            payment = await get_payment(db, booking_id, for_update=True)
            if payment is None:
                raise NotFound(f"booking {booking_id} has no payment")
            if payment.status != "failed":
                raise InvalidTransition(f"payment is {payment.status}, only failed payments can be retried")

            payment.attempts += 1
            intent = await self.processor.authorize(
                Decimal(payment.total_amount),
                payment.currency,
                {"booking_id": booking.id, "client_id": booking.client_id},
                f"booking:{booking.id}:authorize:{payment.attempts}",
            )
            payment.stripe_payment_intent_id = intent.get("intent_id")
            payment.stripe_client_secret = intent.get("client_secret")
            payment.status = "pending"
            payment.error_message = None

        return payment

    async def accrue_booking(self, booking_id: str) -> Payout:
        async with transaction(self.session_factory) as db:
            booking = await db.get(Booking, booking_id)
            if booking is None:
                raise NotFound(f"booking {booking_id} not found")
            payout = await accrue(db, booking)
            if payout is None:
                raise NotFound(f"host {booking.host_id} has no payout account")
            return payout

    async def register_stripe_account(self, actor: Actor, account_id: str, payouts_enabled: bool = True) -> StripeAccount:
        async with transaction(self.session_factory) as db:
            res = await db.execute(select(StripeAccount).where(StripeAccount.user_id == actor.user_id))
            account = res.scalar_one_or_none()
            if account is None:
                account = StripeAccount(id=new_id(), user_id=actor.user_id)
                db.add(account)
            account.account_id = account_id
            account.payouts_enabled = payouts_enabled
            return account

    async def get_payout(self, payout_id: str, actor: Actor) -> tuple[Payout, list[PayoutItem]]:
        async with transaction(self.session_factory) as db:
            payout = await db.get(Payout, payout_id)
            if payout is None:
                raise NotFound(f"payout {payout_id} not found")
            if not actor.is_admin and actor.user_id != payout.host_id:
                raise Forbidden("not your payout")
            res = await db.execute(select(PayoutItem).where(PayoutItem.payout_id == payout_id))
            return payout, list(res.scalars().all())

    async def list_payouts(self, actor: Actor, status: str | None = None) -> list[Payout]:
        async with transaction(self.session_factory) as db:
            stmt = select(Payout).order_by(Payout.created_at.desc())
            if not actor.is_admin:
                stmt = stmt.where(Payout.host_id == actor.user_id)
            if status:
                stmt = stmt.where(Payout.status == status)
            res = await db.execute(stmt)
            return list(res.scalars().all())

    async def due_payout_ids(self) -> list[str]:
        async with transaction(self.session_factory) as db:
            res = await db.execute(
                select(Payout.id)
                .join(StripeAccount, StripeAccount.id == Payout.stripe_account_id)
                .where(
                    Payout.status == "pending",
                    Payout.net_amount >= MIN_PAYOUT_AMOUNT,
                    StripeAccount.payouts_enabled.is_(True),
                )
            )
            return list(res.scalars().all())

    async def process_payout(self, payout_id: str) -> Payout:
        async with transaction(self.session_factory) as db:
            payout = await db.get(Payout, payout_id, with_for_update=True)
            if payout is None:
                raise NotFound(f"payout {payout_id} not found")
            if payout.status != "pending":
                raise InvalidTransition(f"payout is {payout.status}, only pending payouts can be processed")
            if Decimal(payout.net_amount) < MIN_PAYOUT_AMOUNT:
                raise Conflict(f"payout is below the minimum of {MIN_PAYOUT_AMOUNT}", "BelowMinimum")

            account = await db.get(StripeAccount, payout.stripe_account_id)
            if not account.payouts_enabled:
                raise Conflict("payouts are disabled for this account", "PayoutsDisabled")

            result = await self.processor.transfer(
                account.account_id,
                Decimal(payout.net_amount),
                payout.currency,
                f"payout:{payout.id}:transfer:{payout.attempts}",
            )
            payout.transfer_id = result.get("transfer_id")
            payout.status = "processing"

        logger.info("payout %s sent as transfer %s", payout.id, payout.transfer_id)
        return payout

    async def record_payout_result(
        self,
        completed: bool,
        payout_id: str | None = None,
        transfer_id: str | None = None,
        error: str | None = None,
    ) -> Payout:
        target = "completed" if completed else "failed"

        async with transaction(self.session_factory) as db:
            if payout_id:
                payout = await db.get(Payout, payout_id, with_for_update=True)
            elif transfer_id:
                res = await db.execute(select(Payout).where(Payout.transfer_id == transfer_id).with_for_update())
                payout = res.scalar_one_or_none()
            else:
                raise NotFound("payout reference missing")
            if payout is None:
                raise NotFound("payout not found")

            if payout.status == target:
                return payout
            if payout.status != "processing":
                raise InvalidTransition(f"payout is {payout.status}, cannot become {target}")

            payout.status = target
            if completed:
                payout.payout_date = utcnow()
                payout.error_message = None
            else:
                payout.error_message = error or "transfer failed"

        await self.notifier.emit(f"payout.{target}", None, None, {
            "payout_id": payout.id,
            "host_id": payout.host_id,
            "net_amount": payout.net_amount,
            "error": payout.error_message,
        })
        return payout

    async def retry_payout(self, payout_id: str) -> Payout:
        async with transaction(self.session_factory) as db:
            payout = await db.get(Payout, payout_id, with_for_update=True)
            if payout is None:
                raise NotFound(f"payout {payout_id} not found")
            if payout.status != "failed":
                raise InvalidTransition(f"payout is {payout.status}, only failed payouts can be retried")
            payout.status = "pending"
            payout.attempts += 1
            payout.error_message = None
            payout.transfer_id = None
            return payout
