"""
Shipping settings API routes

- Ship-from address (GET / PUT)
- Box presets (list, create, update, delete)
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.api.deps import get_shipping_config, get_shipping_settings_service
from shipdesk.core.config import ShippingConfig
from shipdesk.core.database import get_db
from shipdesk.models.shipping_settings import BoxPreset, ShippingSettings
from shipdesk.schemas.shipping import (
    BoxPresetCreate,
    BoxPresetListResponse,
    BoxPresetMutationResponse,
    BoxPresetResponse,
    BoxPresetUpdate,
    ShipFromSettingsSchema,
    ShipFromSettingsUpdate,
    ShippingSettingsResponse,
)
from shipdesk.services.shipping_settings import ShippingSettingsService, validate_ship_from

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settings/shipping", tags=["shipping-settings"])


# ==================== Helper Functions ====================


def preset_to_response(preset: BoxPreset) -> BoxPresetResponse:
    return BoxPresetResponse.model_validate(preset)


async def build_settings_response(
    service: ShippingSettingsService,
    config: ShippingConfig,
    ship_from: ShippingSettings,
) -> ShippingSettingsResponse:
    return ShippingSettingsResponse(
        ship_from=ShipFromSettingsSchema.model_validate(ship_from),
        missing=validate_ship_from(ship_from),
        box_presets=[preset_to_response(p) for p in await service.list_box_presets()],
        allowed_carriers=list(config.allowed_carriers),
        mock_mode=config.easyship.mock,
    )


# ==================== Ship-from ====================


@router.get("", response_model=ShippingSettingsResponse)
async def get_shipping_settings(
    service: ShippingSettingsService = Depends(get_shipping_settings_service),
    config: ShippingConfig = Depends(get_shipping_config),
):
    """Ship-from address, missing fields, presets and carrier configuration."""
    return await build_settings_response(service, config, await service.get_ship_from())


@router.get("/ship-from", response_model=ShippingSettingsResponse)
async def get_ship_from(
    service: ShippingSettingsService = Depends(get_shipping_settings_service),
    config: ShippingConfig = Depends(get_shipping_config),
):
    return await build_settings_response(service, config, await service.get_ship_from())


@router.put("/ship-from", response_model=ShippingSettingsResponse)
async def update_ship_from(
    data: ShipFromSettingsUpdate,
    service: ShippingSettingsService = Depends(get_shipping_settings_service),
    config: ShippingConfig = Depends(get_shipping_config),
    db: AsyncSession = Depends(get_db),
):
    ship_from = await service.update_ship_from(data)
    await db.commit()
    return await build_settings_response(service, config, ship_from)


# ==================== Box presets ====================


@router.get("/box-presets", response_model=BoxPresetListResponse)
async def list_box_presets(service: ShippingSettingsService = Depends(get_shipping_settings_service)):
    return BoxPresetListResponse(box_presets=[preset_to_response(p) for p in await service.list_box_presets()])


@router.post("/box-presets", response_model=BoxPresetMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_box_preset(
    data: BoxPresetCreate,
    service: ShippingSettingsService = Depends(get_shipping_settings_service),
    db: AsyncSession = Depends(get_db),
):
    preset = await service.create_box_preset(data)
    await db.commit()
    return BoxPresetMutationResponse(
        box_preset=preset_to_response(preset),
        box_presets=[preset_to_response(p) for p in await service.list_box_presets()],
    )


@router.put("/box-presets/{preset_id}", response_model=BoxPresetMutationResponse)
async def update_box_preset(
    preset_id: str,
    data: BoxPresetUpdate,
    service: ShippingSettingsService = Depends(get_shipping_settings_service),
    db: AsyncSession = Depends(get_db),
):
    preset = await service.update_box_preset(preset_id, data)
    await db.commit()
    return BoxPresetMutationResponse(
        box_preset=preset_to_response(preset),
        box_presets=[preset_to_response(p) for p in await service.list_box_presets()],
    )


@router.delete("/box-presets/{preset_id}", response_model=BoxPresetMutationResponse)
async def delete_box_preset(
    preset_id: str,
    service: ShippingSettingsService = Depends(get_shipping_settings_service),
    db: AsyncSession = Depends(get_db),
):
    """Rejected with PRESET_IN_USE (409) while a purchased shipment uses the preset."""
    await service.delete_box_preset(preset_id)
    await db.commit()
    return BoxPresetMutationResponse(
        box_presets=[preset_to_response(p) for p in await service.list_box_presets()],
    )
