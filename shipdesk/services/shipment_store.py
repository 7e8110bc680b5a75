"""
Shipment store

Per-order parcels and their lifecycle rules:
- parcel_index is 1-based and kept contiguous after deletes
- a parcel uses a box preset or all three custom dimensions
- purchased parcels (purchased_at set or label generated) are frozen
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.exceptions import ShippingConflictError, ShippingNotFoundError, ShippingValidationError
from shipdesk.models.shipment import LabelState, OrderShipment
from shipdesk.models.shipping_settings import BoxPreset
from shipdesk.schemas.shipping import ShipmentCreate, ShipmentSummary, ShipmentUpdate
from shipdesk.services.easyship_client import ParcelDimensions
from shipdesk.services.order_data import OrderDataProvider
from shipdesk.services.shipping_settings import round3

logger = logging.getLogger(__name__)


@dataclass
class EffectiveDimensions:
    length_in: Optional[float]
    width_in: Optional[float]
    height_in: Optional[float]


def effective_dimensions(shipment: OrderShipment, preset: Optional[BoxPreset]) -> EffectiveDimensions:
    """Custom dimensions when any is set, otherwise the preset's."""
    if shipment.has_custom_dimensions:
        return EffectiveDimensions(shipment.custom_length_in, shipment.custom_width_in, shipment.custom_height_in)
    if preset is not None:
        return EffectiveDimensions(preset.length_in, preset.width_in, preset.height_in)
    return EffectiveDimensions(None, None, None)


def resolve_shipment_dimensions(shipment: OrderShipment, preset: Optional[BoxPreset]) -> Optional[ParcelDimensions]:
    """Parcel size for rating and purchase, or None unless every value is present and positive."""
    dims = effective_dimensions(shipment, preset)
    values = (dims.length_in, dims.width_in, dims.height_in, shipment.weight_lb)
    if any(value is None or value <= 0 for value in values):
        return None
    return ParcelDimensions(
        length_in=float(dims.length_in),
        width_in=float(dims.width_in),
        height_in=float(dims.height_in),
        weight_lb=float(shipment.weight_lb),
    )


def summarize_shipments(shipments: Iterable[OrderShipment]) -> ShipmentSummary:
    shipments = list(shipments)
    purchased = [shipment for shipment in shipments if shipment.is_purchased]
    return ShipmentSummary(
        shipment_count=len(shipments),
        purchased_count=len(purchased),
        actual_label_total_cents=sum(shipment.label_cost_amount_cents or 0 for shipment in purchased),
    )


class ShipmentStore:
    """Order shipment persistence."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.orders = OrderDataProvider(db)

    async def list_shipments(self, order_id: str) -> List[OrderShipment]:
        result = await self.db.execute(
            select(OrderShipment)
            .where(OrderShipment.order_id == order_id)
            .order_by(OrderShipment.parcel_index)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_shipment(self, order_id: str, shipment_id: str) -> Optional[OrderShipment]:
        result = await self.db.execute(
            select(OrderShipment).where(
                OrderShipment.order_id == order_id,
                OrderShipment.id == shipment_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_shipment(self, order_id: str, shipment_id: str) -> OrderShipment:
        shipment = await self.get_shipment(order_id, shipment_id)
        if shipment is None:
            raise ShippingNotFoundError("Shipment not found", code="NOT_FOUND")
        return shipment

    async def require_order(self, order_id: str) -> None:
        if not await self.orders.order_exists(order_id):
            raise ShippingNotFoundError("Order not found", code="NOT_FOUND")

    async def reload(self, shipment: OrderShipment) -> OrderShipment:
        """Pick up column values written by Core UPDATE statements."""
        await self.db.refresh(shipment)
        return shipment

    async def get_presets(self, preset_ids: Iterable[Optional[str]]) -> Dict[str, BoxPreset]:
        ids = {preset_id for preset_id in preset_ids if preset_id}
        if not ids:
            return {}
        result = await self.db.execute(select(BoxPreset).where(BoxPreset.id.in_(ids)))
        return {preset.id: preset for preset in result.scalars().all()}

    async def get_preset_for(self, shipment: OrderShipment) -> Optional[BoxPreset]:
        if not shipment.box_preset_id:
            return None
        return await self.db.get(BoxPreset, shipment.box_preset_id)

    async def resolve_dimensions(self, shipment: OrderShipment) -> Optional[ParcelDimensions]:
        return resolve_shipment_dimensions(shipment, await self.get_preset_for(shipment))

    async def next_parcel_index(self, order_id: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(OrderShipment.parcel_index), 0)).where(OrderShipment.order_id == order_id)
        )
        return max(0, int(result.scalar_one())) + 1

    async def _validate_parcel(self, data: ShipmentCreate) -> Optional[BoxPreset]:
        custom = (data.custom_length_in, data.custom_width_in, data.custom_height_in)
        has_custom = any(value is not None for value in custom)

        if has_custom:
            if any(value is None or value <= 0 for value in custom):
                raise ShippingValidationError(
                    "Custom dimensions need positive length, width and height",
                    code="PARCEL_INCOMPLETE",
                )
        elif not data.box_preset_id:
            raise ShippingValidationError(
                "boxPresetId or custom dimensions are required",
                code="PARCEL_INCOMPLETE",
            )

        preset = None
        if data.box_preset_id:
            preset = await self.db.get(BoxPreset, data.box_preset_id)
            if preset is None:
                raise ShippingNotFoundError("Box preset not found", code="NOT_FOUND")
        return preset

    @staticmethod
    def _resolve_weight(data: ShipmentCreate, preset: Optional[BoxPreset]) -> float:
        weight = data.weight_lb
        if weight is None and preset is not None:
            weight = preset.default_weight_lb
        if weight is None or weight <= 0:
            raise ShippingValidationError("weightLb must be a positive number", code="PARCEL_INCOMPLETE")
        return round3(weight)

    @staticmethod
    def _ensure_mutable(shipment: OrderShipment) -> None:
        if shipment.is_purchased:
            raise ShippingConflictError(
                "Shipment label already purchased; it can no longer be changed",
                code="SHIPMENT_ALREADY_PURCHASED",
            )

    async def create_shipment(self, order_id: str, data: ShipmentCreate) -> OrderShipment:
        await self.require_order(order_id)
        preset = await self._validate_parcel(data)
        weight = self._resolve_weight(data, preset)

        shipment = OrderShipment(
            order_id=order_id,
            parcel_index=await self.next_parcel_index(order_id),
            box_preset_id=preset.id if preset else None,
            custom_length_in=round3(data.custom_length_in),
            custom_width_in=round3(data.custom_width_in),
            custom_height_in=round3(data.custom_height_in),
            weight_lb=weight,
            label_state=LabelState.PENDING.value,
        )
        self.db.add(shipment)
        await self.db.flush()
        logger.info(f"Shipment created: order={order_id} parcel={shipment.parcel_index} id={shipment.id}")
        return shipment

    async def update_shipment(self, order_id: str, shipment_id: str, data: ShipmentUpdate) -> OrderShipment:
        shipment = await self.require_shipment(order_id, shipment_id)
        self._ensure_mutable(shipment)
        preset = await self._validate_parcel(data)
        weight = self._resolve_weight(data, preset)

        shipment.box_preset_id = preset.id if preset else None
        shipment.custom_length_in = round3(data.custom_length_in)
        shipment.custom_width_in = round3(data.custom_width_in)
        shipment.custom_height_in = round3(data.custom_height_in)
        shipment.weight_lb = weight
        # Parcel changed, so any chosen quote is stale
        shipment.quote_selected_id = None
        shipment.error_message = None
        await self.db.flush()
        return shipment

    async def delete_shipment(self, order_id: str, shipment_id: str) -> None:
        shipment = await self.require_shipment(order_id, shipment_id)
        self._ensure_mutable(shipment)

        await self.db.delete(shipment)
        await self.db.flush()
        await self.resequence(order_id)
        logger.info(f"Shipment deleted: order={order_id} id={shipment_id}")

    async def resequence(self, order_id: str) -> None:
        """Renumber parcels 1..N in current order; ascending so the unique index never collides."""
        for index, shipment in enumerate(await self.list_shipments(order_id), start=1):
            if shipment.parcel_index != index:
                shipment.parcel_index = index
                await self.db.flush()

    async def set_quote_selection(self, shipment: OrderShipment, quote_id: Optional[str]) -> None:
        shipment.quote_selected_id = quote_id
        await self.db.flush()
