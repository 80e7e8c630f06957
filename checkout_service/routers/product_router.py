from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db

router = APIRouter(prefix="/products", tags=["Catalog"])


@router.get("", response_model=schemas.ProductListResponse)
def view_products(
    skip: int = Query(0, ge=0, description="**Skip** number of products"),
    limit: int = Query(100, ge=1, le=1000, description="**Limit** number of products"),
    category: Optional[str] = Query(None, description="**Category** filter"),
    db: Session = Depends(get_db)
):
    """List products currently offered. Products reserved by an order are not listed."""
    return {
        "products": crud.get_visible_products(db, skip=skip, limit=limit, category=category),
        "skip": skip,
        "limit": limit,
    }


@router.get("/{product_id:int}", response_model=schemas.ProductOut)
def view_product(
    product_id: int,
    db: Session = Depends(get_db)
):
    product = crud.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product
