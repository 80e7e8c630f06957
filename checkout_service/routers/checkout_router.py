from typing import Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_user
from ..checkout import confirm_checkout
from ..database import get_db
from ..errors import CheckoutError, to_http_exception
from ..notifications import (
    NotificationDispatcher,
    build_order_message,
    build_whatsapp_url,
    dispatch_order_confirmation,
    get_dispatcher,
)
from ..staging import StagingStore, begin_checkout, get_staging_store, peek_staged

router = APIRouter(
    prefix="/checkout",
    tags=["Checkout"]
)


@router.post("/begin", response_model=schemas.StagedOrder)
def begin_my_checkout(
    body: schemas.BeginCheckoutRequest,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: StagingStore = Depends(get_staging_store),
):
    """Stage the selected cart lines with their current prices plus shipping.

    An empty selection is rejected; the client should send the user back to the cart.
    Starting again overwrites any previously staged order of this user.
    """
    try:
        return begin_checkout(db, store, user_id=current_user["id"], line_ids=body.item_ids)
    except CheckoutError as e:
        raise to_http_exception(e)


@router.get("/staged", response_model=schemas.StagedOrder)
def get_my_staged_order(
    current_user: Dict = Depends(get_current_user),
    store: StagingStore = Depends(get_staging_store),
):
    """Return the staged order so the confirmation page shows exactly what will be charged."""
    try:
        return peek_staged(store, user_id=current_user["id"])
    except CheckoutError as e:
        raise to_http_exception(e)


@router.post("/confirm", response_model=schemas.ConfirmCheckoutResponse, status_code=status.HTTP_201_CREATED)
def confirm_my_checkout(
    background_tasks: BackgroundTasks,
    body: Optional[schemas.ConfirmCheckoutRequest] = None,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: StagingStore = Depends(get_staging_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Place the order for the staged snapshot.

    - Creates the order, its lines and a PENDING payment in one transaction.
    - Ordered products disappear from the catalog and the consumed cart lines are removed.
    - The confirmation message is dispatched after the transaction has committed.
    """
    body = body or schemas.ConfirmCheckoutRequest()

    try:
        db_order = confirm_checkout(db, store, user_id=current_user["id"], method=body.method)
    except CheckoutError as e:
        raise to_http_exception(e)

    message = build_order_message(db_order, body.recipient)
    background_tasks.add_task(dispatch_order_confirmation, dispatcher, db_order.id, message)

    return {
        "order_id": db_order.id,
        "payment_id": db_order.payment.id,
        "total_amount": db_order.total_amount,
        "status": db_order.status,
        "payment_status": db_order.payment.status,
        "message": message,
        "whatsapp_url": build_whatsapp_url(message),
    }
