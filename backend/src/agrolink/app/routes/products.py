"""Crop listing routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.routes.auth import get_current_user_dep, require_role
from agrolink.domain.enums import GrowthStage, ProductCategory
from agrolink.domain.models import User
from agrolink.domain.schemas import ProductCreate, ProductUpdate, ReviewCreate
from agrolink.infra.database import get_db
from agrolink.services.product_service import ProductService
from agrolink.services.serializers import serialize_product, serialize_rating

router = APIRouter(prefix="/api/v1/products", tags=["products"])


@router.get("")
async def list_products(
    db: AsyncSession = Depends(get_db),
    search: Optional[str] = Query(None),
    category: Optional[ProductCategory] = Query(None),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    growth_stage: Optional[GrowthStage] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    products, total = await ProductService(db).list_products(
        search, category, min_price, max_price, growth_stage, page, limit
    )
    return {
        "success": True,
        "count": len(products),
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
        "products": [serialize_product(p) for p in products],
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    data: ProductCreate,
    user: User = Depends(require_role("farmer")),
    db: AsyncSession = Depends(get_db),
):
    product = await ProductService(db).create(user, data)
    return {"success": True, "product": serialize_product(product)}


@router.get("/farmer/products")
async def my_products(
    user: User = Depends(require_role("farmer")),
    db: AsyncSession = Depends(get_db),
):
    products = await ProductService(db).list_for_farmer(user)
    return {"success": True, "count": len(products), "products": [serialize_product(p) for p in products]}


@router.get("/product/{product_id}")
async def get_product(product_id: str, db: AsyncSession = Depends(get_db)):
    product = await ProductService(db).get(product_id)
    return {"success": True, "product": serialize_product(product, include_ratings=True)}


@router.put("/product/{product_id}")
async def update_product(
    product_id: str,
    data: ProductUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    product = await ProductService(db).update(product_id, user, data)
    return {"success": True, "product": serialize_product(product)}


@router.delete("/product/{product_id}")
async def delete_product(
    product_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    await ProductService(db).delete(product_id, user)
    return {"success": True, "message": "Product deleted"}


@router.post("/review/{product_id}")
async def review_product(
    product_id: str,
    data: ReviewCreate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    product = await ProductService(db).add_review(product_id, user, data)
    return {"success": True, "product": serialize_product(product, include_ratings=True)}


@router.get("/reviews/{product_id}")
async def product_reviews(product_id: str, db: AsyncSession = Depends(get_db)):
    ratings = await ProductService(db).reviews(product_id)
    return {"success": True, "count": len(ratings), "reviews": [serialize_rating(r) for r in ratings]}
