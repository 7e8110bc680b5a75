"""
Easyship diagnostics

GET /debug/easyship/rates-shape shows the redacted structure of the rates body
for one parcel, plus which Easyship settings are present. Easyship is never
called. Disabled (404) unless EASYSHIP_DEBUG is on.
"""
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query

from shipdesk.api.deps import get_label_service, get_shipping_config
from shipdesk.core.config import ShippingConfig, settings
from shipdesk.core.exceptions import ShippingNotFoundError
from shipdesk.core.utils import trim_or_none
from shipdesk.schemas.shipping import EasyshipEndpoint, RatesShapeResponse, SelectedShipment
from shipdesk.services.label_purchase import LabelPurchaseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/debug/easyship", tags=["debug"])


def require_easyship_debug(config: ShippingConfig = Depends(get_shipping_config)) -> ShippingConfig:
    if not config.easyship.debug:
        raise ShippingNotFoundError("Easyship debug endpoint is disabled.", code="DEBUG_DISABLED")
    return config


def env_present() -> dict:
    """Whether each Easyship variable was set, never its value."""
    return {
        "EASYSHIP_API_BASE_URL": "EASYSHIP_API_BASE_URL" in settings.model_fields_set,
        "EASYSHIP_TOKEN": bool(trim_or_none(settings.EASYSHIP_TOKEN)),
        "EASYSHIP_ALLOWED_CARRIERS": bool(trim_or_none(settings.EASYSHIP_ALLOWED_CARRIERS)),
    }


@router.get("/rates-shape", response_model=RatesShapeResponse)
async def get_rates_shape(
    order_id: str = Query(..., alias="orderId", min_length=1),
    shipment_id: Optional[str] = Query(None, alias="shipmentId"),
    parcel_index: Optional[int] = Query(None, alias="parcelIndex", ge=1),
    config: ShippingConfig = Depends(require_easyship_debug),
    service: LabelPurchaseService = Depends(get_label_service),
):
    """Picks shipmentId, else parcelIndex, else parcel 1 of the order."""
    shipment, shape = await service.describe_rates_payload(
        order_id.strip(),
        shipment_id=trim_or_none(shipment_id),
        parcel_index=parcel_index,
    )
    rates_url = httpx.URL(f"{config.easyship.base_url}/rates")
    logger.info(f"[easyship][debug] rates shape order={order_id} shipment={shipment.id}")

    return RatesShapeResponse(
        endpoint=EasyshipEndpoint(host=rates_url.host, path=rates_url.path),
        env_present=env_present(),
        token_length=len(config.easyship.token),
        allowed_carriers=list(config.allowed_carriers),
        selected_shipment=SelectedShipment(id=shipment.id, parcel_index=shipment.parcel_index),
        body_top_level_keys=shape["topLevelKeys"],
        has_shipment_wrapper=shape["hasShipmentWrapper"],
        shipment_wrapper_keys=shape["shipmentWrapperKeys"],
        parcels_count=shape["parcelsCount"],
        first_parcel_keys=shape["firstParcelKeys"],
        first_parcel_items_is_array=shape["firstParcelItemsIsArray"],
        first_parcel_items_length=shape["firstParcelItemsLength"],
        first_parcel_first_item_keys=shape["firstParcelFirstItemKeys"],
        first_parcel_first_item_has_category=shape["firstParcelFirstItemHasCategory"],
        body_skeleton=shape["skeleton"],
    )
