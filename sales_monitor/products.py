"""Product masterfile: the tenant's ``itemlist`` table."""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from sales_monitor.auth import get_auth_user
from sales_monitor.db_router import engine_for_user, execute_with_timing

logger = logging.getLogger(__name__)

router = APIRouter()

SEARCH_FIELDS = ("menudescription", "productcode", "category")


class ProductInput(BaseModel):
    category: Optional[str] = None
    productcode: Optional[str] = None
    menudescription: Optional[str] = None
    printto: Optional[str] = None
    taxable: Optional[str] = None
    srp: Optional[float] = Field(None, ge=0)
    quantity: Optional[float] = None
    item1: Optional[str] = None
    status: Optional[str] = None
    branchcode: Optional[str] = None


class ProductCreate(ProductInput):
    productcode: str
    menudescription: str
    status: str = "Active"


def filter_products(products: List[Dict[str, Any]], term: Optional[str]) -> List[Dict[str, Any]]:
    if not term:
        return products
    needle = term.lower()
    return [
        product
        for product in products
        if any(needle in str(product.get(field) or "").lower() for field in SEARCH_FIELDS)
    ]


def _stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


@router.get("")
@router.get("/", include_in_schema=False)
def list_products(
    search: Optional[str] = Query(default=None, description="Match description, code or category"),
    user: dict = Depends(get_auth_user),
):
    engine = engine_for_user(user)
    try:
        with engine.connect() as conn:
            result = execute_with_timing(
                conn, "SELECT * FROM itemlist ORDER BY created_at DESC", query_name="itemlist"
            )
            products = [dict(row) for row in result.mappings()]
    except SQLAlchemyError as e:
        logger.error("Failed to fetch products: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch products")

    return {"products": filter_products(products, search)}


@router.post("", status_code=status.HTTP_201_CREATED)
@router.post("/", status_code=status.HTTP_201_CREATED, include_in_schema=False)
def create_product(payload: ProductCreate, user: dict = Depends(get_auth_user)):
    values = payload.model_dump()
    values["updated_by"] = user.get("username")
    values["created_at"] = values["updated_at"] = _stamp()

    columns = ", ".join(values)
    placeholders = ", ".join(f":{column}" for column in values)

    engine = engine_for_user(user)
    try:
        with engine.begin() as conn:
            execute_with_timing(
                conn, f"INSERT INTO itemlist ({columns}) VALUES ({placeholders})", values, "itemlist_insert"
            )
    except SQLAlchemyError as e:
        logger.error("Failed to save product %s: %s", payload.productcode, e)
        raise HTTPException(status_code=500, detail="Failed to save product")

    logger.info("Product %s created by %s", payload.productcode, values["updated_by"])
    return {"success": True, "product": values}


@router.put("/{product_id}")
def update_product(product_id: int, payload: ProductInput, user: dict = Depends(get_auth_user)):
    values = payload.model_dump(exclude_unset=True)
    if not values:
        raise HTTPException(status_code=400, detail="No product fields supplied")

    values["updated_by"] = user.get("username")
    values["updated_at"] = _stamp()
    assignments = ", ".join(f"{column} = :{column}" for column in values)

    engine = engine_for_user(user)
    try:
        with engine.begin() as conn:
            result = execute_with_timing(
                conn,
                f"UPDATE itemlist SET {assignments} WHERE id = :product_id",
                dict(values, product_id=product_id),
                "itemlist_update",
            )
            if result.rowcount == 0:
                raise HTTPException(status_code=404, detail="Product not found")
    except SQLAlchemyError as e:
        logger.error("Failed to update product %s: %s", product_id, e)
        raise HTTPException(status_code=500, detail="Failed to save product")

    return {"success": True, "id": product_id, "updated": values}
