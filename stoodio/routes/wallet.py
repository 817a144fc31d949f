from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stoodio.database.db import get_db
from stoodio.models.users import User
from stoodio.routes.bookings import enqueue_dispatch
from stoodio.routes.deps import get_current_user
from stoodio.schemas.wallet import (
    CheckoutCompleted,
    CheckoutResult,
    PayoutRequest,
    TipRequest,
    TransactionOut,
    WalletOut,
)
from stoodio.services import wallet as wallet_service

router = APIRouter(tags=["wallet"])


def _wallet_view(db: Session, user: User) -> WalletOut:
    db.refresh(user)
    return WalletOut(
        user_id=user.id,
        wallet_balance=user.wallet_balance,
        ledger_consistent=wallet_service.verify_ledger(db, user.id),
        transactions=[TransactionOut.model_validate(t) for t in wallet_service.get_transactions(db, user.id)],
    )


@router.get("/wallet", response_model=WalletOut)
def my_wallet(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _wallet_view(db, user)


@router.post("/wallet/tips", response_model=WalletOut)
def send_tip(payload: TipRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    wallet_service.confirm_tip(
        db,
        booking_id=payload.booking_id,
        tipper_id=user.id,
        amount=payload.amount,
        request_id=payload.request_id,
        note=payload.note,
    )
    enqueue_dispatch()
    return _wallet_view(db, user)


@router.post("/wallet/payouts", response_model=TransactionOut, status_code=201)
def request_payout(payload: PayoutRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    tx = wallet_service.request_payout(db, user_id=user.id, amount=payload.amount, request_id=payload.request_id)
    enqueue_dispatch()
    return tx


@router.post("/checkout/completed", response_model=CheckoutResult)
def checkout_completed(payload: CheckoutCompleted, db: Session = Depends(get_db)):
    """Callback from the external checkout once a payment has succeeded."""
    applied = wallet_service.handle_checkout_completed(
        db,
        checkout_session_id=payload.checkout_session_id,
        kind=payload.kind,
        payer_id=payload.payer_id,
        amount=payload.amount,
        booking_id=payload.booking_id,
        note=payload.note,
    )
    if applied:
        enqueue_dispatch()
    return CheckoutResult(applied=applied)
