"""Crop listings and reviews."""

import logging
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.errors import AuthorizationError, NotFoundError, ValidationError
from agrolink.domain.enums import GrowthStage, ProductCategory, ProductStatus, UserRole
from agrolink.domain.models import Product, ProductRating, User
from agrolink.domain.schemas import ProductCreate, ProductUpdate, ReviewCreate

logger = logging.getLogger(__name__)


class ProductService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, product_id: str) -> Product:
        result = await self.db.execute(
            select(Product)
            .where(Product.id == product_id)
            .execution_options(populate_existing=True)
        )
        product = result.scalar_one_or_none()
        if product is None or product.status == ProductStatus.DELETED.value:
            raise NotFoundError("Product not found")
        return product

    async def get(self, product_id: str) -> Product:
        return await self._load(product_id)

    async def list_products(
        self,
        search: Optional[str] = None,
        category: Optional[ProductCategory] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        growth_stage: Optional[GrowthStage] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Product], int]:
        """Filtered, paginated listings. Deleted listings are never returned."""
        query = select(Product).where(Product.status != ProductStatus.DELETED.value)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    Product.name.ilike(pattern),
                    Product.description.ilike(pattern),
                    Product.category.ilike(pattern),
                )
            )
        if category is not None:
            query = query.where(Product.category == category.value)
        if min_price is not None:
            query = query.where(Product.price >= min_price)
        if max_price is not None:
            query = query.where(Product.price <= max_price)
        if growth_stage is not None:
            query = query.where(Product.growth_stage == growth_stage.value)

        total = (
            await self.db.execute(select(func.count()).select_from(query.subquery()))
        ).scalar_one()
        result = await self.db.execute(
            query.order_by(Product.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_for_farmer(self, farmer: User) -> list[Product]:
        result = await self.db.execute(
            select(Product)
            .where(Product.farmer_id == farmer.id, Product.status != ProductStatus.DELETED.value)
            .order_by(Product.created_at.desc())
        )
        return list(result.scalars().all())

    async def create(self, farmer: User, data: ProductCreate) -> Product:
        if farmer.role != UserRole.FARMER.value:
            raise AuthorizationError("Only farmers can list crops")
        values = data.model_dump()
        for key in ("category", "unit", "growth_stage"):
            values[key] = values[key].value
        product = Product(farmer_id=farmer.id, **values)
        self.db.add(product)
        await self.db.commit()
        logger.info("Product %s listed by farmer %s", product.id, farmer.id)
        return await self._load(product.id)

    def _check_owner(self, product: Product, user: User) -> None:
        if product.farmer_id != user.id:
            raise AuthorizationError("Not authorized to modify this product")

    async def update(self, product_id: str, user: User, data: ProductUpdate) -> Product:
        product = await self._load(product_id)
        self._check_owner(product, user)
        for key, value in data.model_dump(exclude_unset=True).items():
            if value is None and key in ("name", "price", "category", "available_quantity", "unit", "growth_stage", "status"):
                continue
            setattr(product, key, value.value if hasattr(value, "value") else value)
        await self.db.commit()
        return await self._load(product.id)

    async def delete(self, product_id: str, user: User) -> None:
        """Soft delete: listings stay referenced by existing contracts."""
        product = await self._load(product_id)
        self._check_owner(product, user)
        product.status = ProductStatus.DELETED.value
        await self.db.commit()
        logger.info("Product %s soft-deleted by %s", product.id, user.id)

    async def add_review(self, product_id: str, user: User, data: ReviewCreate) -> Product:
        """Add or replace the caller's review and recompute the average."""
        product = await self._load(product_id)
        if product.farmer_id == user.id:
            raise ValidationError("You cannot review your own product")

        existing = next((r for r in product.ratings if r.user_id == user.id), None)
        if existing is not None:
            existing.rating = data.rating
            existing.comment = data.comment
        else:
            product.ratings.append(
                ProductRating(user_id=user.id, user=user, rating=data.rating, comment=data.comment)
            )

        product.num_of_reviews = len(product.ratings)
        product.average_rating = round(
            sum(r.rating for r in product.ratings) / product.num_of_reviews, 2
        )
        await self.db.commit()
        return await self._load(product.id)

    async def reviews(self, product_id: str) -> list[ProductRating]:
        product = await self._load(product_id)
        return list(product.ratings)
