from typing import Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from app.domain.models import Product
from .schemas import CartValidation, ProductCreate, ProductRead, UnavailableProduct


class ProductService:
    def __init__(self, db: Session):
        self.db = db

    def _generate_sku(self) -> str:
        """Next sequential SKU in the format SKU####."""
        latest = self.db.execute(
            select(Product.sku).where(Product.sku.like("SKU%")).order_by(Product.sku.desc()).limit(1)
        ).scalar_one_or_none()

        next_num = 1
        if latest:
            try:
                next_num = int(latest.replace("SKU", "")) + 1
            except ValueError:
                pass
        return f"SKU{next_num:04d}"

    def list_products(self, include_inactive: bool = False):
        stmt = select(Product).order_by(Product.created_at.desc())
        if not include_inactive:
            stmt = stmt.where(Product.product_status == "active")
        return list(self.db.execute(stmt).scalars().all())

    def get(self, product_id: str) -> Optional[Product]:
        return self.db.get(Product, product_id)

    def create(self, data: ProductCreate) -> Product:
        product_data = data.model_dump(exclude_none=True)
        if not product_data.get("sku"):
            product_data["sku"] = self._generate_sku()

        obj = Product(**product_data)
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def validate_cart(self, product_ids: list[str]) -> CartValidation:
        """Split cart product ids into still-purchasable and unavailable ones."""
        ids = list(dict.fromkeys(product_ids))
        found = {
            p.id: p for p in self.db.execute(select(Product).where(Product.id.in_(ids))).scalars()
        } if ids else {}

        available, unavailable = [], []
        for product_id in ids:
            product = found.get(product_id)
            if product is None or product.product_status != "active":
                unavailable.append(UnavailableProduct(
                    id=product_id,
                    name=product.name if product is not None else "Unknown product",
                    reason="No longer available",
                ))
            elif product.stock <= 0:
                unavailable.append(UnavailableProduct(id=product_id, name=product.name, reason="Out of stock"))
            else:
                available.append(ProductRead.model_validate(product))

        return CartValidation(
            valid=not unavailable,
            available_products=available,
            unavailable_product_ids=[p.id for p in unavailable],
            unavailable_products=unavailable,
        )
