from typing import Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_user
from ..database import get_db
from ..errors import CheckoutError, to_http_exception

router = APIRouter(
    prefix="/cart",
    tags=["Cart"]
)


@router.get("", response_model=schemas.CartOut)
def get_my_cart(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Return the current user's cart; an empty cart when there is none."""
    return crud.load_cart(db, user_id=current_user["id"])


@router.post("/items", response_model=schemas.CartItemOut, status_code=status.HTTP_201_CREATED)
def add_cart_item(
    body: schemas.CartItemAdd,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Add one unit of a product, creating the cart and the line as needed."""
    try:
        return crud.add_or_increment(db, user_id=current_user["id"], product_id=body.product_id)
    except CheckoutError as e:
        raise to_http_exception(e)


@router.patch("/items/{item_id:int}", response_model=schemas.CartItemOut)
def update_cart_item(
    item_id: int,
    body: schemas.CartItemUpdate,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):

    try:
        return crud.set_quantity(db, user_id=current_user["id"], line_id=item_id, new_quantity=body.quantity)
    except CheckoutError as e:
        raise to_http_exception(e)


@router.delete("/items/{item_id:int}", status_code=status.HTTP_204_NO_CONTENT)
def delete_cart_item(
    item_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):

    try:
        crud.remove_line(db, user_id=current_user["id"], line_id=item_id)
    except CheckoutError as e:
        raise to_http_exception(e)
    return None


@router.delete("/items", response_model=schemas.RemovedItemsResponse)
def delete_cart_items(
    body: schemas.CartItemsDelete,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Remove several lines at once. Only lines in the caller's own cart are touched."""
    removed = crud.remove_lines(db, user_id=current_user["id"], line_ids=body.item_ids)
    return {"removed": removed}
