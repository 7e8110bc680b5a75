"""
Order shipment API routes

Provides endpoints for:
- Parcel management (list, create, update, delete)
- Rate quoting (cached per shipment signature)
- Label purchase and refresh
- Label status polling
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.api.deps import get_label_service, get_shipment_store
from shipdesk.core.database import get_db
from shipdesk.models.shipment import OrderShipment
from shipdesk.models.shipping_settings import BoxPreset
from shipdesk.schemas.shipping import (
    BoxPresetResponse,
    BuyLabelRequest,
    BuyLabelResponse,
    LabelStatusResponse,
    QuotesResponse,
    RateSchema,
    ShipmentCreate,
    ShipmentListResponse,
    ShipmentMutationResponse,
    ShipmentResponse,
    ShipmentUpdate,
    TrackingEmailResult,
)
from shipdesk.services.label_purchase import LabelOutcome, LabelPurchaseService
from shipdesk.services.shipment_store import ShipmentStore, effective_dimensions, summarize_shipments
from shipdesk.services.shipping_settings import ShippingSettingsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders/{order_id}/shipments", tags=["shipments"])


# ==================== Helper Functions ====================


def shipment_to_response(shipment: OrderShipment, presets: Dict[str, BoxPreset]) -> ShipmentResponse:
    """Shipment plus its preset name and the dimensions actually used for rating."""
    preset = presets.get(shipment.box_preset_id) if shipment.box_preset_id else None
    dims = effective_dimensions(shipment, preset)
    response = ShipmentResponse.model_validate(shipment)
    response.box_preset_name = preset.name if preset else None
    response.effective_length_in = dims.length_in
    response.effective_width_in = dims.width_in
    response.effective_height_in = dims.height_in
    return response


async def list_shipment_responses(store: ShipmentStore, order_id: str) -> List[ShipmentResponse]:
    shipments = await store.list_shipments(order_id)
    presets = await store.get_presets(s.box_preset_id for s in shipments)
    return [shipment_to_response(s, presets) for s in shipments]


def find_response(shipments: List[ShipmentResponse], shipment_id: str) -> Optional[ShipmentResponse]:
    return next((s for s in shipments if s.id == shipment_id), None)


def tracking_email_result(outcome: LabelOutcome) -> Optional[TrackingEmailResult]:
    if outcome.tracking_email is None:
        return None
    return TrackingEmailResult.model_validate(outcome.tracking_email)


# ==================== Shipments ====================


@router.get("", response_model=ShipmentListResponse)
async def list_shipments(
    order_id: str,
    store: ShipmentStore = Depends(get_shipment_store),
):
    """Parcels for an order, ordered by parcel index, with label totals."""
    await store.require_order(order_id)
    shipments = await store.list_shipments(order_id)
    all_presets = await ShippingSettingsService(store.db).list_box_presets()
    presets = {p.id: p for p in all_presets}
    return ShipmentListResponse(
        shipments=[shipment_to_response(s, presets) for s in shipments],
        summary=summarize_shipments(shipments),
        box_presets=[BoxPresetResponse.model_validate(p) for p in all_presets],
    )


@router.post("", response_model=ShipmentMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    order_id: str,
    data: ShipmentCreate,
    store: ShipmentStore = Depends(get_shipment_store),
    db: AsyncSession = Depends(get_db),
):
    shipment = await store.create_shipment(order_id, data)
    await db.commit()
    shipments = await list_shipment_responses(store, order_id)
    return ShipmentMutationResponse(shipment=find_response(shipments, shipment.id), shipments=shipments)


@router.put("/{shipment_id}", response_model=ShipmentMutationResponse)
async def update_shipment(
    order_id: str,
    shipment_id: str,
    data: ShipmentUpdate,
    store: ShipmentStore = Depends(get_shipment_store),
    db: AsyncSession = Depends(get_db),
):
    """Rejected with SHIPMENT_ALREADY_PURCHASED once a label exists."""
    await store.update_shipment(order_id, shipment_id, data)
    await db.commit()
    shipments = await list_shipment_responses(store, order_id)
    return ShipmentMutationResponse(shipment=find_response(shipments, shipment_id), shipments=shipments)


@router.delete("/{shipment_id}", response_model=ShipmentMutationResponse)
async def delete_shipment(
    order_id: str,
    shipment_id: str,
    store: ShipmentStore = Depends(get_shipment_store),
    db: AsyncSession = Depends(get_db),
):
    await store.delete_shipment(order_id, shipment_id)
    await db.commit()
    return ShipmentMutationResponse(shipments=await list_shipment_responses(store, order_id))


# ==================== Quotes / labels ====================


@router.post("/{shipment_id}/quotes", response_model=QuotesResponse)
async def get_quotes(
    order_id: str,
    shipment_id: str,
    service: LabelPurchaseService = Depends(get_label_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Rate quotes for one parcel.

    Served from the quote cache while the signature matches; the cheapest
    rate becomes the shipment's selected quote.
    """
    outcome = await service.get_quotes(order_id, shipment_id)
    await db.commit()
    return QuotesResponse(
        cached=outcome.cached,
        expires_at=outcome.expires_at,
        shipment_temp_key=outcome.shipment_temp_key,
        rates=[RateSchema.model_validate(rate) for rate in outcome.rates],
        selected_quote_id=outcome.selected_quote_id,
        warning=outcome.warning,
        shipments=await list_shipment_responses(service.store, order_id),
    )


@router.post("/{shipment_id}/buy", response_model=BuyLabelResponse)
async def buy_label(
    order_id: str,
    shipment_id: str,
    data: Optional[BuyLabelRequest] = Body(None),
    service: LabelPurchaseService = Depends(get_label_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Buy the label for a parcel, or re-read it with {"refresh": true}.

    Without quoteSelectedId the stored selection or the cheapest rate is used.
    """
    data = data or BuyLabelRequest()
    outcome = await service.buy_label(
        order_id,
        shipment_id,
        quote_selected_id=data.quote_selected_id,
        refresh=data.refresh,
    )
    await db.commit()
    shipments = await list_shipment_responses(service.store, order_id)
    return BuyLabelResponse(
        refreshed=outcome.refreshed,
        shipment=find_response(shipments, shipment_id),
        shipments=shipments,
        selected_quote_id=outcome.selected_quote_id,
        pending_refresh=outcome.pending_refresh,
        tracking_email=tracking_email_result(outcome),
    )


@router.get("/{shipment_id}/label-status", response_model=LabelStatusResponse)
async def get_label_status(
    order_id: str,
    shipment_id: str,
    service: LabelPurchaseService = Depends(get_label_service),
    db: AsyncSession = Depends(get_db),
):
    """Re-fetch a pending label from Easyship when it has no URL or tracking yet."""
    outcome = await service.refresh_label_status(order_id, shipment_id)
    await db.commit()
    shipments = await list_shipment_responses(service.store, order_id)
    return LabelStatusResponse(
        refreshed=outcome.refreshed,
        shipment=find_response(shipments, shipment_id),
        shipments=shipments,
        pending_refresh=outcome.pending_refresh,
        tracking_email=tracking_email_result(outcome),
    )
