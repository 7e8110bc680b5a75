"""
Order and OrderItem models.

Owned by the storefront checkout. The shipping label workflow only reads
them for the destination address, customer email and item list.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index

from shipdesk.core.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    display_order_id = Column(String(64), nullable=True)
    customer_email = Column(String(255), nullable=True)
    shipping_name = Column(String(200), nullable=True)
    shipping_address_json = Column(Text, nullable=True)  # Stripe-shaped address blob
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Order {self.display_order_id or self.id}>"


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        Index("ix_order_items_order_id", "order_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False)
    product_name = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price_cents = Column(Integer, nullable=False, default=0)  # Unit price
