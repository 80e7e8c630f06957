from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import ADMIN_ROLE, get_current_admin, get_current_user
from ..database import get_db
from ..errors import CheckoutError, to_http_exception
from ..transitions import set_order_status

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


@router.get("", response_model=schemas.OrderListResponse)
def get_orders(
    skip: int = 0,
    limit: int = 100,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db)
):

    orders = crud.get_orders(db=db, skip=skip, limit=limit)
    total = crud.get_order_count(db=db)

    return {
        "orders": orders,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/me", response_model=schemas.OrderListResponse)
def get_user_orders(
    skip: int = 0,
    limit: int = 100,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db)
):

    user_id = current_user["id"]

    orders = crud.get_orders_by_user(db=db, user_id=user_id, skip=skip, limit=limit)
    total = crud.get_user_order_count(db=db, user_id=user_id)

    return {
        "orders": orders,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/{order_id:int}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Owners see their own orders; admins see any order."""
    db_order = crud.get_order(db=db, order_id=order_id)
    if not db_order or (current_user.get("role") != ADMIN_ROLE and db_order.user_id != current_user["id"]):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )
    return db_order


@router.patch("/{order_id:int}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    status_update: schemas.OrderStatusUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db)
):

    if status_update.status is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'status' is required",
        )

    try:
        return set_order_status(db, order_id=order_id, new_status=status_update.status)
    except CheckoutError as e:
        raise to_http_exception(e)


@router.delete("/{order_id:int}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Delete an order with its lines and payment. Product visibility is left as is."""
    db_order = crud.delete_order(db=db, order_id=order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )
    return None
