"""
Wallet ledger side effects.

Balances are never edited directly. Every movement appends a
``Transaction`` and the user's ``wallet_balance`` is then rewritten as the
sum of their ledger inside the same transaction. Each row carries an
idempotency key, so settling the same booking twice cannot charge twice.
"""
import logging
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from stoodio.core.clock import utcnow
from stoodio.core.config import settings
from stoodio.core.exceptions import (
    InsufficientFundsError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from stoodio.core.redis_config import get_redis_client, resource_lock
from stoodio.database.db import atomic
from stoodio.models.bookings import Booking, BookingStatus
from stoodio.models.users import User, UserRole
from stoodio.models.wallet import Transaction, TransactionCategory, TransactionStatus
from stoodio.services.events import publish_event

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
TIPPABLE_STATUSES = {BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value}


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _wallet_lock_key(user_id: int) -> str:
    return f"wallet_lock:{user_id}"


# ---------- ledger primitives ----------
def ledger_sum(db: Session, user_id: int) -> Decimal:
    total = db.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(Transaction.user_id == user_id)
    )
    return money(total or 0)


def _refresh_balance(db: Session, user_id: int) -> None:
    total = (
        select(func.coalesce(func.sum(Transaction.amount), 0))
        .where(Transaction.user_id == user_id)
        .scalar_subquery()
    )
    db.execute(
        update(User).where(User.id == user_id).values(wallet_balance=total),
        execution_options={"synchronize_session": "fetch"},
    )


def append_transaction(
    db: Session,
    *,
    user_id: int,
    amount,
    category: TransactionCategory,
    description: str,
    idempotency_key: str,
    booking_id: Optional[int] = None,
    related_user_name: Optional[str] = None,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    reverses_id: Optional[int] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Transaction]:
    """
    Append one ledger row and re-derive the owner's balance.

    Returns ``None`` when a row with the same idempotency key already exists.
    Must run inside the caller's transaction.
    """
    existing = db.scalar(select(Transaction.id).where(Transaction.idempotency_key == idempotency_key))
    if existing is not None:
        logger.info("ledger key %s already applied, skipping", idempotency_key)
        return None

    tx = Transaction(
        user_id=user_id,
        created_at=now or utcnow(),
        description=description,
        amount=money(amount),
        category=category.value,
        status=status.value,
        related_booking_id=booking_id,
        related_user_name=related_user_name,
        idempotency_key=idempotency_key,
        reverses_id=reverses_id,
        note=note,
    )
    db.add(tx)
    db.flush()  # gets tx.id and makes the row visible to the balance sum
    _refresh_balance(db, user_id)
    logger.info(
        "ledger append user=%s amount=%s category=%s key=%s",
        user_id,
        tx.amount,
        tx.category,
        idempotency_key,
    )
    return tx


def verify_ledger(db: Session, user_id: int) -> bool:
    """True when the cached balance equals the sum of the user's ledger."""
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found.", details={"user_id": user_id})
    db.refresh(user, ["wallet_balance"])
    return money(user.wallet_balance) == ledger_sum(db, user_id)


def recompute_balance(db: Session, user_id: int) -> Decimal:
    """Rebuild the cached balance from the ledger."""
    with atomic(db):
        _refresh_balance(db, user_id)
    return ledger_sum(db, user_id)


def get_transactions(db: Session, user_id: int) -> list[Transaction]:
    return list(
        db.scalars(select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.id)).all()
    )


# ---------- booking settlement ----------
def _charge_key(booking_id: int) -> str:
    return f"booking:{booking_id}:charge"


def _name(db: Session, user_id: Optional[int]) -> Optional[str]:
    if user_id is None:
        return None
    user = db.get(User, user_id)
    return user.name if user else None


def _credit_provider(
    db: Session,
    booking: Booking,
    *,
    user_id: int,
    gross,
    description: str,
    payer_name: Optional[str],
    now: datetime,
) -> None:
    gross = money(gross)
    if gross <= 0:
        return
    append_transaction(
        db,
        user_id=user_id,
        amount=gross,
        category=TransactionCategory.SESSION_PAYOUT,
        description=description,
        idempotency_key=f"booking:{booking.id}:payout:{user_id}",
        booking_id=booking.id,
        related_user_name=payer_name,
        now=now,
    )
    fee = money(gross * settings.PLATFORM_FEE_RATE)
    if fee > 0:
        append_transaction(
            db,
            user_id=user_id,
            amount=-fee,
            category=TransactionCategory.PLATFORM_FEE,
            description=f"Platform fee ({settings.PLATFORM_FEE_RATE * 100:.0f}%)",
            idempotency_key=f"booking:{booking.id}:fee:{user_id}",
            booking_id=booking.id,
            now=now,
        )


def settle_completed_booking(db: Session, booking: Booking, now: Optional[datetime] = None) -> None:
    """
    Apply the money movements for a booking that just reached COMPLETED.

    The payer is debited ``total_cost`` unless the charge was already
    escrowed through checkout. Providers are credited from the amounts
    frozen on the booking, never from their current profile rates.
    """
    now = now or utcnow()
    payer_id = booking.payer_id
    payer_name = _name(db, payer_id)

    append_transaction(
        db,
        user_id=payer_id,
        amount=-money(booking.total_cost),
        category=TransactionCategory.SESSION_PAYMENT,
        description=f"Session payment for booking #{booking.id}",
        idempotency_key=_charge_key(booking.id),
        booking_id=booking.id,
        related_user_name=_name(db, booking.stoodio_id or booking.engineer_id or booking.producer_id),
        now=now,
    )

    if booking.engineer_id and booking.engineer_payout:
        _credit_provider(
            db,
            booking,
            user_id=booking.engineer_id,
            gross=booking.engineer_payout,
            description=f"Engineering payout for booking #{booking.id}",
            payer_name=payer_name,
            now=now,
        )
    if booking.producer_id and booking.pull_up_fee:
        _credit_provider(
            db,
            booking,
            user_id=booking.producer_id,
            gross=booking.pull_up_fee,
            description=f"Pull-up fee for booking #{booking.id}",
            payer_name=payer_name,
            now=now,
        )
    if booking.stoodio_id and booking.stoodio_id != payer_id and booking.room_cost:
        _credit_provider(
            db,
            booking,
            user_id=booking.stoodio_id,
            gross=booking.room_cost,
            description=f"Room payout for booking #{booking.id}",
            payer_name=payer_name,
            now=now,
        )


def reverse_booking_charges(db: Session, booking: Booking, now: Optional[datetime] = None) -> list[Transaction]:
    """Append a refund for every session charge on the booking not yet reversed."""
    now = now or utcnow()
    charges = db.scalars(
        select(Transaction).where(
            Transaction.related_booking_id == booking.id,
            Transaction.category == TransactionCategory.SESSION_PAYMENT.value,
        )
    ).all()

    refunds = []
    for charge in charges:
        refund = append_transaction(
            db,
            user_id=charge.user_id,
            amount=-charge.amount,
            category=TransactionCategory.REFUND,
            description=f"Refund for booking #{booking.id}",
            idempotency_key=f"booking:{booking.id}:refund:{charge.id}",
            booking_id=booking.id,
            related_user_name=charge.related_user_name,
            reverses_id=charge.id,
            now=now,
        )
        if refund is not None:
            refunds.append(refund)
    return refunds


def _escrow_problem(booking: Optional[Booking], payer_id: int, amount: Decimal) -> Optional[str]:
    if booking is None:
        return "booking not found"
    if booking.is_terminal:
        return f"booking is {booking.status}"
    if booking.payer_id != payer_id:
        return "payer is not the paying party"
    if money(booking.total_cost) != amount:
        return f"amount {amount} does not match total cost {money(booking.total_cost)}"
    return None


# ---------- tips ----------
def _tip_recipient(booking: Booking) -> int:
    recipient = booking.engineer_id or booking.producer_id
    if recipient is None:
        raise ValidationError("Booking has no engineer or producer to tip.")
    return recipient


def _tip_in_transaction(
    db: Session,
    *,
    booking: Booking,
    tipper: User,
    amount: Decimal,
    key_prefix: str,
    check_funds: bool,
    note: Optional[str],
    now: datetime,
) -> None:
    if booking.status not in TIPPABLE_STATUSES:
        raise InvalidStateError(
            "Only confirmed or completed sessions can be tipped.",
            details={"booking_id": booking.id, "status": booking.status},
        )
    if tipper.id not in booking.participant_ids():
        raise NotAuthorizedError("Only booking participants can tip.")
    recipient_id = _tip_recipient(booking)
    if recipient_id == tipper.id:
        raise ValidationError("You cannot tip yourself.")
    if db.scalar(select(Transaction.id).where(Transaction.idempotency_key == f"{key_prefix}:debit")) is not None:
        logger.info("tip %s already applied, skipping", key_prefix)
        return
    if check_funds and ledger_sum(db, tipper.id) < amount:
        raise InsufficientFundsError(
            "Insufficient wallet balance for this tip.",
            details={"balance": str(ledger_sum(db, tipper.id)), "amount": str(amount)},
        )

    recipient_name = _name(db, recipient_id)
    debit = append_transaction(
        db,
        user_id=tipper.id,
        amount=-amount,
        category=TransactionCategory.TIP_PAYMENT,
        description="Tip sent",
        idempotency_key=f"{key_prefix}:debit",
        booking_id=booking.id,
        related_user_name=recipient_name,
        note=note,
        now=now,
    )
    if debit is None:
        return
    append_transaction(
        db,
        user_id=recipient_id,
        amount=amount,
        category=TransactionCategory.TIP_PAYOUT,
        description="Tip received",
        idempotency_key=f"{key_prefix}:credit",
        booking_id=booking.id,
        related_user_name=tipper.name,
        note=note,
        now=now,
    )
    publish_event(
        db,
        "tip.sent",
        {"booking_id": booking.id, "from_user_id": tipper.id, "to_user_id": recipient_id, "amount": amount},
    )


def confirm_tip(
    db: Session,
    *,
    booking_id: int,
    tipper_id: int,
    amount,
    request_id: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Tip the engineer (or producer) of a booking from the tipper's wallet.

    A tip is its own wallet event; the booking status is left untouched.
    """
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Tip amount must be positive.")
    key_prefix = f"tip:{tipper_id}:{request_id or uuid.uuid4().hex}"

    with resource_lock(get_redis_client(), _wallet_lock_key(tipper_id)):
        with atomic(db):
            booking = db.get(Booking, booking_id)
            if not booking:
                raise NotFoundError("Booking not found.", details={"booking_id": booking_id})
            tipper = db.get(User, tipper_id)
            if not tipper or not tipper.is_active:
                raise NotAuthorizedError("Unknown or inactive user.")
            _tip_in_transaction(
                db,
                booking=booking,
                tipper=tipper,
                amount=amount,
                key_prefix=key_prefix,
                check_funds=True,
                note=note,
                now=now or utcnow(),
            )


# ---------- checkout callbacks ----------
CHECKOUT_KINDS = ("wallet_topup", "tip", "booking")


def handle_checkout_completed(
    db: Session,
    *,
    checkout_session_id: str,
    kind: str,
    payer_id: int,
    amount,
    booking_id: Optional[int] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Apply a successful external checkout to the ledger.

    The paid amount always lands in the payer's wallet first. A tip is then
    sent from it, and a booking payment is held against the booking until
    completion or cancellation. If the follow-up step no longer applies the
    money stays in the wallet as credit.

    Returns ``False`` when this checkout session was already processed.
    """
    if kind not in CHECKOUT_KINDS:
        raise ValidationError(f"Unknown checkout kind {kind!r}.", details={"kinds": list(CHECKOUT_KINDS)})
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Checkout amount must be positive.")
    now = now or utcnow()

    with atomic(db):
        payer = db.get(User, payer_id)
        if not payer:
            raise NotFoundError("Payer not found.", details={"user_id": payer_id})

        funded = append_transaction(
            db,
            user_id=payer_id,
            amount=amount,
            category=TransactionCategory.ADD_FUNDS,
            description="Wallet top-up",
            idempotency_key=f"checkout:{checkout_session_id}:funds",
            note=note,
            now=now,
        )
        if funded is None:
            return False

        if kind == "wallet_topup":
            publish_event(db, "wallet.topped_up", {"user_id": payer_id, "amount": amount})
            return True

        booking = db.get(Booking, booking_id) if booking_id is not None else None

        if kind == "tip":
            if booking is None:
                logger.warning("checkout %s tip without booking, kept as credit", checkout_session_id)
                return True
            # Tip checks all run before any write, so a rejected tip leaves
            # only the top-up behind.
            try:
                _tip_in_transaction(
                    db,
                    booking=booking,
                    tipper=payer,
                    amount=amount,
                    key_prefix=f"checkout:{checkout_session_id}:tip",
                    check_funds=False,
                    note=note,
                    now=now,
                )
            except (ValidationError, NotAuthorizedError, InvalidStateError) as exc:
                logger.warning(
                    "checkout %s tip on booking %s rejected (%s), kept as credit",
                    checkout_session_id,
                    booking.id,
                    exc.message,
                )
            return True

        problem = _escrow_problem(booking, payer_id, amount)
        if problem:
            logger.warning(
                "checkout %s for booking %s not escrowed (%s), kept as credit",
                checkout_session_id,
                booking_id,
                problem,
            )
            return True
        append_transaction(
            db,
            user_id=payer_id,
            amount=-amount,
            category=TransactionCategory.SESSION_PAYMENT,
            description=f"Session payment for booking #{booking.id}",
            idempotency_key=_charge_key(booking.id),
            booking_id=booking.id,
            related_user_name=_name(db, booking.stoodio_id or booking.engineer_id or booking.producer_id),
            now=now,
        )
        publish_event(db, "booking.paid", {"booking_id": booking.id, "payer_id": payer_id, "amount": amount})
        return True


# ---------- payouts ----------
def request_payout(
    db: Session,
    *,
    user_id: int,
    amount,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """
    Withdraw wallet funds to the user's bank account.

    The withdrawal is recorded as PENDING; the external payout processor
    picks it up from the ``payout.requested`` event.
    """
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Payout amount must be positive.")

    with resource_lock(get_redis_client(), _wallet_lock_key(user_id)):
        with atomic(db):
            user = db.get(User, user_id)
            if not user or not user.is_active:
                raise NotAuthorizedError("Unknown or inactive user.")
            if user.role == UserRole.ARTIST.value:
                raise NotAuthorizedError("Artists cannot request payouts.")
            idempotency_key = f"payout:{user_id}:{request_id or uuid.uuid4().hex}"
            existing = db.scalar(select(Transaction).where(Transaction.idempotency_key == idempotency_key))
            if existing is not None:
                logger.info("payout %s already submitted, returning it", idempotency_key)
                return existing

            balance = ledger_sum(db, user_id)
            if balance < amount:
                raise InsufficientFundsError(
                    "Insufficient wallet balance for this payout.",
                    details={"balance": str(balance), "amount": str(amount)},
                )
            tx = append_transaction(
                db,
                user_id=user_id,
                amount=-amount,
                category=TransactionCategory.WITHDRAWAL,
                description="Payout to bank account",
                idempotency_key=idempotency_key,
                status=TransactionStatus.PENDING,
                now=now,
            )
            publish_event(db, "payout.requested", {"user_id": user_id, "transaction_id": tx.id, "amount": amount})
            return tx
