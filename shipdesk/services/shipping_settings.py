"""
Shipping settings service

Ship-from address (singleton row) and box preset management.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.exceptions import ShippingConflictError, ShippingNotFoundError, ShippingValidationError
from shipdesk.models.shipment import LabelState, OrderShipment
from shipdesk.models.shipping_settings import BoxPreset, ShippingSettings, SHIPPING_SETTINGS_ID
from shipdesk.schemas.shipping import BoxPresetCreate, BoxPresetUpdate, ShipFromSettingsUpdate
from shipdesk.services.easyship_client import EasyshipAddress

logger = logging.getLogger(__name__)

# (attribute, API field name) in the order they are reported as missing
REQUIRED_SHIP_FROM_FIELDS = [
    ("ship_from_name", "shipFromName"),
    ("ship_from_address1", "shipFromAddress1"),
    ("ship_from_city", "shipFromCity"),
    ("ship_from_state", "shipFromState"),
    ("ship_from_postal", "shipFromPostal"),
    ("ship_from_country", "shipFromCountry"),
]


def validate_ship_from(settings: ShippingSettings) -> List[str]:
    """Names of required ship-from fields that are blank."""
    return [
        api_name
        for attr, api_name in REQUIRED_SHIP_FROM_FIELDS
        if not (getattr(settings, attr, None) or "").strip()
    ]


def ship_from_to_address(settings: ShippingSettings) -> EasyshipAddress:
    return EasyshipAddress(
        name=settings.ship_from_name,
        phone=settings.ship_from_phone or None,
        address_line1=settings.ship_from_address1,
        address_line2=settings.ship_from_address2 or None,
        city=settings.ship_from_city,
        state=settings.ship_from_state,
        postal_code=settings.ship_from_postal,
        country_code=settings.ship_from_country or "US",
    )


def round3(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 3)


class ShippingSettingsService:
    """Ship-from settings and box presets."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Ship-from ====================

    async def get_ship_from(self) -> ShippingSettings:
        """Stored settings, or an unsaved blank row when none exist yet."""
        settings = await self.db.get(ShippingSettings, SHIPPING_SETTINGS_ID)
        if settings is None:
            settings = ShippingSettings(
                id=SHIPPING_SETTINGS_ID,
                ship_from_name="",
                ship_from_address1="",
                ship_from_address2="",
                ship_from_city="",
                ship_from_state="",
                ship_from_postal="",
                ship_from_country="US",
                ship_from_phone="",
            )
        return settings

    async def update_ship_from(self, data: ShipFromSettingsUpdate) -> ShippingSettings:
        missing = [
            api_name for attr, api_name in REQUIRED_SHIP_FROM_FIELDS if not getattr(data, attr)
        ]
        if missing:
            raise ShippingValidationError(
                f"Missing required ship-from fields: {', '.join(missing)}",
                code="INVALID_INPUT",
                details={"missing": missing},
            )
        state_error = data.us_state_error()
        if state_error:
            raise ShippingValidationError(state_error, code="INVALID_INPUT")

        settings = await self.db.get(ShippingSettings, SHIPPING_SETTINGS_ID)
        if settings is None:
            settings = ShippingSettings(id=SHIPPING_SETTINGS_ID)
            self.db.add(settings)

        for attr, value in data.model_dump().items():
            setattr(settings, attr, value)

        await self.db.flush()
        logger.info(f"Ship-from settings updated: {settings.ship_from_city}, {settings.ship_from_state}")
        return settings

    # ==================== Box presets ====================

    async def list_box_presets(self) -> List[BoxPreset]:
        result = await self.db.execute(select(BoxPreset).order_by(BoxPreset.name, BoxPreset.id))
        return list(result.scalars().all())

    async def get_box_preset(self, preset_id: str) -> Optional[BoxPreset]:
        return await self.db.get(BoxPreset, preset_id)

    async def create_box_preset(self, data: BoxPresetCreate) -> BoxPreset:
        preset = BoxPreset(
            name=data.name,
            length_in=round3(data.length_in),
            width_in=round3(data.width_in),
            height_in=round3(data.height_in),
            default_weight_lb=round3(data.default_weight_lb),
        )
        self.db.add(preset)
        await self.db.flush()
        logger.info(f"Box preset created: {preset.id} {preset.name}")
        return preset

    async def update_box_preset(self, preset_id: str, data: BoxPresetUpdate) -> BoxPreset:
        preset = await self.get_box_preset(preset_id)
        if preset is None:
            raise ShippingNotFoundError("Box preset not found", code="NOT_FOUND")

        preset.name = data.name
        preset.length_in = round3(data.length_in)
        preset.width_in = round3(data.width_in)
        preset.height_in = round3(data.height_in)
        preset.default_weight_lb = round3(data.default_weight_lb)
        await self.db.flush()
        return preset

    async def delete_box_preset(self, preset_id: str) -> None:
        """Rejected with PRESET_IN_USE while a purchased shipment references it."""
        preset = await self.get_box_preset(preset_id)
        if preset is None:
            raise ShippingNotFoundError("Box preset not found", code="NOT_FOUND")

        result = await self.db.execute(
            select(func.count(OrderShipment.id)).where(
                OrderShipment.box_preset_id == preset_id,
                (OrderShipment.purchased_at.is_not(None))
                | (OrderShipment.label_state == LabelState.GENERATED.value),
            )
        )
        in_use = result.scalar_one()
        if in_use:
            raise ShippingConflictError(
                "Box preset is used by purchased shipments and cannot be deleted",
                code="PRESET_IN_USE",
                details={"shipments": in_use},
            )

        # Unpurchased parcels keep their size as custom dimensions
        pending = await self.db.execute(select(OrderShipment).where(OrderShipment.box_preset_id == preset_id))
        for shipment in pending.scalars().all():
            if not shipment.has_custom_dimensions:
                shipment.custom_length_in = preset.length_in
                shipment.custom_width_in = preset.width_in
                shipment.custom_height_in = preset.height_in
            shipment.box_preset_id = None

        await self.db.delete(preset)
        await self.db.flush()
        logger.info(f"Box preset deleted: {preset_id}")
