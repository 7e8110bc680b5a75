"""
OrderShipment and RateQuoteCacheEntry models.

Tracks each parcel of an order from dimensions through label purchase and
the one-time tracking email. Caches normalized Easyship rates with a TTL.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Text, ForeignKey, Index,
    CheckConstraint, UniqueConstraint,
)
import enum

from shipdesk.core.database import Base
from shipdesk.core.utils import new_id


class LabelState(str, enum.Enum):
    """Label lifecycle state"""
    PENDING = "pending"  # No label yet (or provider still processing)
    GENERATED = "generated"  # Label purchased and available
    FAILED = "failed"  # Provider reported a failure, retryable


class OrderShipment(Base):
    """
    One parcel belonging to one order.

    Dimensions come from either a box preset or all three custom values.
    Once purchased_at is set or the label is generated the parcel is frozen.
    """
    __tablename__ = "order_shipments"
    __table_args__ = (
        UniqueConstraint("order_id", "parcel_index", name="uq_order_shipments_order_parcel"),
        CheckConstraint(
            "label_state IN ('pending', 'generated', 'failed')",
            name="ck_order_shipments_label_state",
        ),
        Index("ix_order_shipments_order_id", "order_id"),
        Index("ix_order_shipments_box_preset_id", "box_preset_id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False)
    parcel_index = Column(Integer, nullable=False)  # 1-based, contiguous per order

    # Parcel
    box_preset_id = Column(String(36), ForeignKey("shipping_box_presets.id"), nullable=True)
    custom_length_in = Column(Float, nullable=True)
    custom_width_in = Column(Float, nullable=True)
    custom_height_in = Column(Float, nullable=True)
    weight_lb = Column(Float, nullable=False)

    # Easyship
    easyship_shipment_id = Column(String(100), nullable=True)
    easyship_label_id = Column(String(100), nullable=True)
    carrier = Column(String(100), nullable=True)
    service = Column(String(200), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    label_url = Column(Text, nullable=True)
    label_cost_amount_cents = Column(Integer, nullable=True)
    label_currency = Column(String(3), nullable=True)
    label_state = Column(String(16), nullable=False, default=LabelState.PENDING.value)
    quote_selected_id = Column(String(200), nullable=True)
    error_message = Column(Text, nullable=True)

    # Timestamps / claims
    purchased_at = Column(DateTime(timezone=True), nullable=True)  # Set once, never overwritten
    purchase_claimed_at = Column(DateTime(timezone=True), nullable=True)
    tracking_email_sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_purchased(self) -> bool:
        return self.purchased_at is not None or self.label_state == LabelState.GENERATED.value

    @property
    def has_custom_dimensions(self) -> bool:
        return any(
            value is not None
            for value in (self.custom_length_in, self.custom_width_in, self.custom_height_in)
        )

    def __repr__(self):
        return f"<OrderShipment {self.order_id}#{self.parcel_index} {self.label_state}>"


class RateQuoteCacheEntry(Base):
    """
    Cached normalized rates for one shipment signature.

    Keyed by (order_id, shipment_temp_key). A changed destination, parcel or
    carrier allow-list yields a new key, so stale rows are never reused.
    """
    __tablename__ = "order_rate_quotes"
    __table_args__ = (
        UniqueConstraint("order_id", "shipment_temp_key", name="uq_order_rate_quotes_signature"),
        Index("ix_order_rate_quotes_expires_at", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(64), nullable=False)
    shipment_temp_key = Column(String(64), nullable=False)  # sha256 hex of the signature
    rates_json = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<RateQuoteCacheEntry {self.order_id} {self.shipment_temp_key[:12]}>"
