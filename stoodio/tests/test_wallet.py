"""
Test wallet ledger effects of completion, cancellation, tips, checkout and payouts.
"""
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from stoodio.core.config import settings
from stoodio.core.exceptions import (
    InsufficientFundsError,
    InvalidStateError,
    NotAuthorizedError,
    ValidationError,
)
from stoodio.models.bookings import BookingStatus
from stoodio.models.users import User, UserRole
from stoodio.models.wallet import Transaction, TransactionCategory, TransactionStatus
from stoodio.services.bookings import cancel_booking, complete_booking, create_direct_booking, deny_request
from stoodio.services.wallet import (
    confirm_tip,
    get_transactions,
    handle_checkout_completed,
    ledger_sum,
    recompute_balance,
    request_payout,
    verify_ledger,
)
from stoodio.tests.conftest import NOW, SESSION_DAY, SESSION_START, session_time


def balance(db: Session, user: User) -> Decimal:
    db.refresh(user)
    return user.wallet_balance


def categories(db: Session, user: User) -> list[str]:
    return [t.category for t in get_transactions(db, user.id)]


@pytest.fixture
def session_booking(make_booking, artist, engineer):
    """Confirmed 3h engineering session at 50/h, booked by the artist."""
    return make_booking(
        booked_by_id=artist.id,
        artist_id=artist.id,
        engineer_id=engineer.id,
        engineer_payout=Decimal("150"),
    )


class TestCompletionSettlement:
    """Test money movements when a booking completes."""

    def test_engineer_paid_less_platform_fee(self, db_session: Session, session_booking, artist, engineer):
        completed = complete_booking(
            db_session, booking_id=session_booking.id, requester_id=engineer.id, now=session_time(3)
        )

        assert completed.status == BookingStatus.COMPLETED.value
        assert completed.completed_at == session_time(3)
        assert balance(db_session, artist) == Decimal("-150.00")
        assert balance(db_session, engineer) == Decimal("135.00")
        assert categories(db_session, engineer) == ["SESSION_PAYOUT", "PLATFORM_FEE"]
        assert categories(db_session, artist) == ["SESSION_PAYMENT"]
        assert verify_ledger(db_session, artist.id)
        assert verify_ledger(db_session, engineer.id)

    def test_completion_counts_sessions(self, db_session: Session, session_booking, artist, engineer):
        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))

        db_session.refresh(artist)
        db_session.refresh(engineer)
        assert artist.sessions_completed == 1
        assert engineer.sessions_completed == 1

    def test_completing_twice_pays_once(self, db_session: Session, session_booking, artist, engineer):
        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))
        again = complete_booking(db_session, booking_id=session_booking.id, now=session_time(4))

        assert again.completed_at == session_time(3)
        assert len(get_transactions(db_session, artist.id)) == 1
        assert len(get_transactions(db_session, engineer.id)) == 2
        assert balance(db_session, engineer) == Decimal("135.00")
        db_session.refresh(engineer)
        assert engineer.sessions_completed == 1

    def test_payout_frozen_at_confirmation(self, db_session: Session, session_booking, engineer):
        engineer.pay_rate = Decimal("500")
        db_session.commit()

        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))

        assert ledger_sum(db_session, engineer.id) == Decimal("135.00")

    def test_room_and_pull_up_credited(self, db_session: Session, make_booking, artist, stoodio, producer):
        booking = make_booking(
            request_type="PRODUCER_PULL_UP",
            booked_by_id=artist.id,
            artist_id=artist.id,
            stoodio_id=stoodio.id,
            producer_id=producer.id,
            engineer_pay_rate=Decimal("0"),
            total_cost=Decimal("280"),
            room_cost=Decimal("200"),
            pull_up_fee=Decimal("80"),
        )

        complete_booking(db_session, booking_id=booking.id, now=session_time(3))

        assert balance(db_session, artist) == Decimal("-280.00")
        assert balance(db_session, stoodio) == Decimal("180.00")
        assert balance(db_session, producer) == Decimal("72.00")

    def test_fee_rate_setting(self, db_session: Session, session_booking, engineer, monkeypatch):
        monkeypatch.setattr(settings, "PLATFORM_FEE_RATE", Decimal("0"))

        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))

        assert balance(db_session, engineer) == Decimal("150.00")
        assert categories(db_session, engineer) == ["SESSION_PAYOUT"]

    def test_label_pays_for_label_booking(self, db_session: Session, make_booking, make_user, label, engineer):
        signed = make_user(UserRole.ARTIST, "Signed", label_id=label.id)
        booking = make_booking(
            booked_by_id=signed.id,
            artist_id=signed.id,
            label_id=label.id,
            engineer_id=engineer.id,
            engineer_payout=Decimal("150"),
        )

        complete_booking(db_session, booking_id=booking.id, now=session_time(3))

        assert balance(db_session, label) == Decimal("-150.00")
        assert balance(db_session, signed) == Decimal("0.00")

    def test_only_confirmed_completes(self, db_session: Session, make_booking, artist, engineer):
        booking = make_booking(
            status=BookingStatus.PENDING_APPROVAL.value,
            booked_by_id=artist.id,
            requested_engineer_id=engineer.id,
        )

        with pytest.raises(InvalidStateError):
            complete_booking(db_session, booking_id=booking.id, now=session_time(3))

        assert get_transactions(db_session, artist.id) == []

    def test_stranger_cannot_complete(self, db_session: Session, session_booking, make_user):
        stranger = make_user(UserRole.ENGINEER, "Stranger")

        with pytest.raises(NotAuthorizedError):
            complete_booking(db_session, booking_id=session_booking.id, requester_id=stranger.id, now=NOW)


class TestCheckout:
    """Test handle_checkout_completed."""

    def test_topup(self, db_session: Session, artist):
        applied = handle_checkout_completed(
            db_session, checkout_session_id="cs_1", kind="wallet_topup", payer_id=artist.id, amount="40.5"
        )

        assert applied is True
        assert balance(db_session, artist) == Decimal("40.50")

    def test_same_checkout_applied_once(self, db_session: Session, artist):
        for _ in range(3):
            handle_checkout_completed(
                db_session, checkout_session_id="cs_dup", kind="wallet_topup", payer_id=artist.id, amount=25
            )

        assert balance(db_session, artist) == Decimal("25.00")
        assert categories(db_session, artist) == ["ADD_FUNDS"]

    def test_unknown_kind(self, db_session: Session, artist):
        with pytest.raises(ValidationError):
            handle_checkout_completed(
                db_session, checkout_session_id="cs_x", kind="gift", payer_id=artist.id, amount=10
            )

    def test_escrow_then_complete_charges_once(self, db_session: Session, session_booking, artist, engineer):
        handle_checkout_completed(
            db_session,
            checkout_session_id="cs_book",
            kind="booking",
            payer_id=artist.id,
            amount=150,
            booking_id=session_booking.id,
        )
        assert balance(db_session, artist) == Decimal("0.00")

        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))

        assert balance(db_session, artist) == Decimal("0.00")
        assert categories(db_session, artist) == ["ADD_FUNDS", "SESSION_PAYMENT"]
        assert balance(db_session, engineer) == Decimal("135.00")

    def test_escrow_refunded_on_cancel(self, db_session: Session, session_booking, artist):
        handle_checkout_completed(
            db_session,
            checkout_session_id="cs_book",
            kind="booking",
            payer_id=artist.id,
            amount=150,
            booking_id=session_booking.id,
        )

        cancel_booking(db_session, booking_id=session_booking.id, requester_id=artist.id, now=NOW)

        charge, refund = db_session.scalars(
            select(Transaction)
            .where(Transaction.related_booking_id == session_booking.id)
            .order_by(Transaction.id)
        ).all()
        assert charge.category == TransactionCategory.SESSION_PAYMENT.value
        assert refund.category == TransactionCategory.REFUND.value
        assert refund.reverses_id == charge.id
        assert refund.amount == Decimal("150.00")
        assert charge.amount == Decimal("-150.00")
        assert balance(db_session, artist) == Decimal("150.00")
        assert verify_ledger(db_session, artist.id)

    def test_wrong_amount_kept_as_credit(self, db_session: Session, session_booking, artist):
        handle_checkout_completed(
            db_session,
            checkout_session_id="cs_short",
            kind="booking",
            payer_id=artist.id,
            amount=100,
            booking_id=session_booking.id,
        )

        assert categories(db_session, artist) == ["ADD_FUNDS"]
        assert balance(db_session, artist) == Decimal("100.00")

    def test_tip_checkout(self, db_session: Session, session_booking, artist, engineer):
        handle_checkout_completed(
            db_session,
            checkout_session_id="cs_tip",
            kind="tip",
            payer_id=artist.id,
            amount=20,
            booking_id=session_booking.id,
            note="great mix",
        )

        assert balance(db_session, artist) == Decimal("0.00")
        assert balance(db_session, engineer) == Decimal("20.00")
        assert categories(db_session, engineer) == ["TIP_PAYOUT"]


class TestDeniedRequestRefund:
    """Test that turning down a paid request hands the money back."""

    def test_escrowed_payment_refunded(self, db_session: Session, artist, engineer):
        booking = create_direct_booking(
            db_session,
            requester_id=artist.id,
            request_type="SPECIFIC_ENGINEER",
            booking_date=SESSION_DAY,
            start_time=SESSION_START,
            duration=3,
            total_cost=150,
            engineer_pay_rate=50,
            requested_engineer_id=engineer.id,
            now=NOW,
        )
        assert booking.status == BookingStatus.PENDING_APPROVAL.value
        handle_checkout_completed(
            db_session, checkout_session_id="cs_req", kind="booking", payer_id=artist.id, amount=150,
            booking_id=booking.id,
        )
        assert balance(db_session, artist) == Decimal("0.00")
        charge = db_session.scalar(
            select(Transaction).where(Transaction.category == TransactionCategory.SESSION_PAYMENT.value)
        )

        deny_request(db_session, booking_id=booking.id, approver_id=engineer.id, now=NOW)

        refund = db_session.scalar(
            select(Transaction).where(Transaction.category == TransactionCategory.REFUND.value)
        )
        assert refund.reverses_id == charge.id
        assert refund.amount == Decimal("150.00")
        db_session.refresh(charge)
        assert charge.amount == Decimal("-150.00")
        assert balance(db_session, artist) == Decimal("150.00")
        assert verify_ledger(db_session, artist.id)

    def test_unpaid_request_has_nothing_to_refund(self, db_session: Session, make_booking, artist, engineer):
        booking = make_booking(
            status=BookingStatus.PENDING_APPROVAL.value,
            booked_by_id=artist.id,
            artist_id=artist.id,
            requested_engineer_id=engineer.id,
        )

        deny_request(db_session, booking_id=booking.id, approver_id=engineer.id, now=NOW)

        assert categories(db_session, artist) == []
        assert balance(db_session, artist) == Decimal("0.00")


class TestTips:
    """Test confirm_tip."""

    def _fund(self, db_session, user, amount, sid="cs_fund"):
        handle_checkout_completed(
            db_session, checkout_session_id=sid, kind="wallet_topup", payer_id=user.id, amount=amount
        )

    def test_tip_from_wallet(self, db_session: Session, session_booking, artist, engineer):
        self._fund(db_session, artist, 50)

        confirm_tip(db_session, booking_id=session_booking.id, tipper_id=artist.id, amount=20, now=NOW)

        assert balance(db_session, artist) == Decimal("30.00")
        assert balance(db_session, engineer) == Decimal("20.00")
        db_session.refresh(session_booking)
        assert session_booking.status == BookingStatus.CONFIRMED.value

    def test_tip_retry_with_same_request_id(self, db_session: Session, session_booking, artist, engineer):
        self._fund(db_session, artist, 50)

        for _ in range(2):
            confirm_tip(
                db_session, booking_id=session_booking.id, tipper_id=artist.id, amount=20, request_id="tip-1"
            )

        assert balance(db_session, engineer) == Decimal("20.00")

    def test_request_id_is_per_tipper(self, db_session: Session, make_booking, artist, engineer, stoodio):
        booking = make_booking(
            booked_by_id=artist.id, artist_id=artist.id, engineer_id=engineer.id, stoodio_id=stoodio.id
        )
        self._fund(db_session, artist, 50, sid="cs_artist")
        self._fund(db_session, stoodio, 50, sid="cs_stoodio")

        for tipper in (artist, stoodio):
            confirm_tip(db_session, booking_id=booking.id, tipper_id=tipper.id, amount=20, request_id="tip-1")

        assert balance(db_session, artist) == Decimal("30.00")
        assert balance(db_session, stoodio) == Decimal("30.00")
        assert balance(db_session, engineer) == Decimal("40.00")

    def test_retry_after_spending_balance(self, db_session: Session, session_booking, artist, engineer):
        self._fund(db_session, artist, 20)

        for _ in range(2):
            confirm_tip(
                db_session, booking_id=session_booking.id, tipper_id=artist.id, amount=20, request_id="tip-all"
            )

        assert balance(db_session, artist) == Decimal("0.00")
        assert balance(db_session, engineer) == Decimal("20.00")

    def test_insufficient_funds(self, db_session: Session, session_booking, artist, engineer):
        self._fund(db_session, artist, 5)

        with pytest.raises(InsufficientFundsError):
            confirm_tip(db_session, booking_id=session_booking.id, tipper_id=artist.id, amount=20)

        assert categories(db_session, artist) == ["ADD_FUNDS"]
        assert get_transactions(db_session, engineer.id) == []

    def test_non_participant_cannot_tip(self, db_session: Session, session_booking, make_user):
        stranger = make_user(UserRole.ARTIST, "Stranger")
        self._fund(db_session, stranger, 50)

        with pytest.raises(NotAuthorizedError):
            confirm_tip(db_session, booking_id=session_booking.id, tipper_id=stranger.id, amount=20)

    def test_cannot_tip_cancelled_booking(self, db_session: Session, session_booking, artist):
        self._fund(db_session, artist, 50)
        cancel_booking(db_session, booking_id=session_booking.id, requester_id=artist.id, now=NOW)

        with pytest.raises(InvalidStateError):
            confirm_tip(db_session, booking_id=session_booking.id, tipper_id=artist.id, amount=20)

    def test_engineer_cannot_tip_self(self, db_session: Session, session_booking, engineer):
        self._fund(db_session, engineer, 50)

        with pytest.raises(ValidationError):
            confirm_tip(db_session, booking_id=session_booking.id, tipper_id=engineer.id, amount=20)


class TestPayouts:
    """Test request_payout."""

    def test_withdrawal_pending(self, db_session: Session, session_booking, engineer):
        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))

        tx = request_payout(db_session, user_id=engineer.id, amount=100, request_id="po-1")

        assert tx.category == TransactionCategory.WITHDRAWAL.value
        assert tx.status == TransactionStatus.PENDING.value
        assert tx.amount == Decimal("-100.00")
        assert balance(db_session, engineer) == Decimal("35.00")

    def test_payout_over_balance(self, db_session: Session, session_booking, engineer):
        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))

        with pytest.raises(InsufficientFundsError):
            request_payout(db_session, user_id=engineer.id, amount="135.01")

    def test_duplicate_request(self, db_session: Session, session_booking, engineer):
        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))
        first = request_payout(db_session, user_id=engineer.id, amount=10, request_id="po-1")

        again = request_payout(db_session, user_id=engineer.id, amount=10, request_id="po-1")

        assert again.id == first.id
        assert balance(db_session, engineer) == Decimal("125.00")

    def test_retry_after_draining_balance(self, db_session: Session, session_booking, engineer):
        complete_booking(db_session, booking_id=session_booking.id, now=session_time(3))
        first = request_payout(db_session, user_id=engineer.id, amount=135, request_id="po-all")
        assert balance(db_session, engineer) == Decimal("0.00")

        again = request_payout(db_session, user_id=engineer.id, amount=135, request_id="po-all")

        assert again.id == first.id
        assert len(categories(db_session, engineer)) == 3

    def test_request_id_is_per_user(self, db_session: Session, make_user):
        first = make_user(UserRole.ENGINEER, "Engineer A")
        second = make_user(UserRole.ENGINEER, "Engineer B")
        for n, user in enumerate((first, second)):
            handle_checkout_completed(
                db_session, checkout_session_id=f"cs_{n}", kind="wallet_topup", payer_id=user.id, amount=100
            )

        a = request_payout(db_session, user_id=first.id, amount=10, request_id="1")
        b = request_payout(db_session, user_id=second.id, amount=10, request_id="1")

        assert a.id != b.id
        assert balance(db_session, first) == Decimal("90.00")
        assert balance(db_session, second) == Decimal("90.00")

    def test_artist_cannot_withdraw(self, db_session: Session, artist):
        with pytest.raises(NotAuthorizedError):
            request_payout(db_session, user_id=artist.id, amount=1)


class TestLedgerInvariant:
    def test_recompute_repairs_drift(self, db_session: Session, artist):
        handle_checkout_completed(
            db_session, checkout_session_id="cs_1", kind="wallet_topup", payer_id=artist.id, amount=60
        )
        artist.wallet_balance = Decimal("999")
        db_session.commit()

        assert not verify_ledger(db_session, artist.id)
        assert recompute_balance(db_session, artist.id) == Decimal("60.00")
        assert verify_ledger(db_session, artist.id)
