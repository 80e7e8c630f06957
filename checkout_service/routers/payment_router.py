from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_admin, get_current_user
from ..database import get_db
from ..errors import CheckoutError, to_http_exception
from ..transitions import set_payment_status

router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)


@router.get("", response_model=schemas.PaymentListResponse)
def get_payments(
    skip: int = 0,
    limit: int = 100,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db)
):

    return {
        "payments": crud.get_payments(db=db, skip=skip, limit=limit),
        "total": crud.get_payment_count(db=db),
        "skip": skip,
        "limit": limit
    }


@router.get("/me", response_model=schemas.PaymentListResponse)
def get_user_payments(
    skip: int = 0,
    limit: int = 100,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db)
):

    user_id = current_user["id"]
    return {
        "payments": crud.get_payments_by_user(db=db, user_id=user_id, skip=skip, limit=limit),
        "total": crud.get_user_payment_count(db=db, user_id=user_id),
        "skip": skip,
        "limit": limit
    }


@router.patch("/{payment_id:int}/status", response_model=schemas.PaymentOut)
def update_payment_status(
    payment_id: int,
    status_update: schemas.PaymentStatusUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Set a payment's status.

    - SUCCESS requires `completed_at`.
    - FAILED also cancels the order and puts its products back on sale.
    """
    if status_update.status is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'status' is required",
        )

    try:
        return set_payment_status(
            db,
            payment_id=payment_id,
            new_status=status_update.status,
            completed_at=status_update.completed_at,
        )
    except CheckoutError as e:
        raise to_http_exception(e)
