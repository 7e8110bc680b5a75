"""
Ship-from settings and box presets for shipping labels.

- ShippingSettings: singleton row (id=1) holding the origin address
- BoxPreset: reusable parcel dimensions with an optional default weight
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Float, CheckConstraint

from shipdesk.core.database import Base
from shipdesk.core.utils import new_id

SHIPPING_SETTINGS_ID = 1


class ShippingSettings(Base):
    """Origin address used for every rate quote and label purchase."""
    __tablename__ = "shipping_settings"
    __table_args__ = (
        CheckConstraint("id = 1", name="ck_shipping_settings_singleton"),
    )

    id = Column(Integer, primary_key=True, default=SHIPPING_SETTINGS_ID)
    ship_from_name = Column(String(200), nullable=False, default="")
    ship_from_address1 = Column(String(200), nullable=False, default="")
    ship_from_address2 = Column(String(200), nullable=False, default="")
    ship_from_city = Column(String(100), nullable=False, default="")
    ship_from_state = Column(String(50), nullable=False, default="")
    ship_from_postal = Column(String(20), nullable=False, default="")
    ship_from_country = Column(String(2), nullable=False, default="US")
    ship_from_phone = Column(String(40), nullable=False, default="")
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<ShippingSettings {self.ship_from_name!r} {self.ship_from_postal}>"


class BoxPreset(Base):
    """Named parcel size. Dimensions are inches, weight is pounds."""
    __tablename__ = "shipping_box_presets"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(120), nullable=False)
    length_in = Column(Float, nullable=False)
    width_in = Column(Float, nullable=False)
    height_in = Column(Float, nullable=False)
    default_weight_lb = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<BoxPreset {self.name} {self.length_in}x{self.width_in}x{self.height_in}>"
