from __future__ import annotations

from ..extensions import db
from ..money import to_major
from ..time_utils import to_utc_z, utcnow


class Product(db.Model):
    """
    Catalog product.

    The catalog owns every column; checkout reads the row for price
    verification and the payment finaliser writes only `stock`.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), nullable=False, unique=True, index=True)

    price_pence = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="GBP")
    stock = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "price": to_major(self.price_pence),
            "currency": self.currency,
            "stock": self.stock,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
