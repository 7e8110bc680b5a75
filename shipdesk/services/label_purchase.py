"""
Label purchase orchestrator

Quote, buy and refresh for one order shipment:

1. Preflight: a purchased shipment is never bought twice; refresh re-reads it
2. Validation: ship-from, destination (phone for buy) and parcel
3. Quote resolution: cached rates, else live fetch plus carrier allow-list
4. Claim: purchase_claimed_at compare-and-swap so concurrent buys cannot
   both reach Easyship
5. Create + purchase, then persist (purchased_at is set once)
6. Tracking email hook, best-effort

A failed purchase is not marked failed. The Easyship shipment id is kept so
the refresh path can pick the label up later.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.config import ShippingConfig
from shipdesk.core.exceptions import (
    ShippingConflictError,
    ShippingNotFoundError,
    ShippingQuoteError,
    ShippingValidationError,
)
from shipdesk.core.utils import trim_or_none, utcnow
from shipdesk.models.shipment import LabelState, OrderShipment
from shipdesk.services.carrier_filter import find_rate, pick_cheapest_rate
from shipdesk.services.easyship_client import (
    NO_SHIPPING_SOLUTIONS_DETAIL,
    EasyshipClient,
    RateRequest,
    build_rates_payload,
)
from shipdesk.services.email_provider import EmailSender
from shipdesk.services.order_data import ShippingDestination, has_required_destination
from shipdesk.services.quote_cache import QuoteCache, QuoteResult
from shipdesk.services.rate_normalizer import NormalizedRate, ShipmentSnapshot, summarize_payload_shape
from shipdesk.services.shipment_store import ShipmentStore
from shipdesk.services.shipping_settings import ShippingSettingsService, ship_from_to_address, validate_ship_from
from shipdesk.services.tracking_email import TrackingEmailNotifier, TrackingEmailOutcome

logger = logging.getLogger(__name__)

NO_RATES_MESSAGE = (
    "No shipping solutions available based on the information provided. "
    "Adjust package details or test in production."
)


@dataclass
class QuotesOutcome:
    shipment_temp_key: str
    rates: List[NormalizedRate] = field(default_factory=list)
    cached: bool = False
    expires_at: Optional[datetime] = None
    selected_quote_id: Optional[str] = None
    warning: Optional[str] = None


@dataclass
class LabelOutcome:
    """Result of buy or refresh for the route layer."""
    shipment: OrderShipment
    refreshed: bool = False
    selected_quote_id: Optional[str] = None
    tracking_email: Optional[TrackingEmailOutcome] = None

    @property
    def pending_refresh(self) -> bool:
        return self.shipment.label_state == LabelState.PENDING.value and bool(self.shipment.easyship_shipment_id)


class LabelPurchaseService:
    """Quotes, label purchase and label refresh for order shipments."""

    def __init__(
        self,
        db: AsyncSession,
        client: EasyshipClient,
        config: ShippingConfig,
        sender: EmailSender,
        site_url: Optional[str] = None,
    ):
        self.db = db
        self.client = client
        self.config = config
        self.store = ShipmentStore(db)
        self.orders = self.store.orders
        self.settings = ShippingSettingsService(db)
        self.quotes = QuoteCache(db, client, config)
        self.notifier = TrackingEmailNotifier(db, sender, site_url)

    # ==================== Shared steps ====================

    async def _load(self, order_id: str, shipment_id: str) -> OrderShipment:
        await self.store.require_order(order_id)
        return await self.store.require_shipment(order_id, shipment_id)

    async def _build_rate_request(
        self,
        order_id: str,
        shipment: OrderShipment,
        require_phone: bool = False,
    ) -> Tuple[RateRequest, ShippingDestination]:
        """Validate every input Easyship needs; raises the matching precondition error."""
        ship_from = await self.settings.get_ship_from()
        missing = validate_ship_from(ship_from)
        if missing:
            raise ShippingValidationError(
                "Ship-from settings are incomplete.",
                code="SHIP_FROM_INCOMPLETE",
                details={"missing": missing},
            )

        destination = await self.orders.get_destination(order_id)
        if not has_required_destination(destination):
            raise ShippingValidationError(
                "Order shipping destination is incomplete.",
                code="DESTINATION_INCOMPLETE",
            )

        dimensions = await self.store.resolve_dimensions(shipment)
        if dimensions is None:
            raise ShippingValidationError(
                "Shipment is missing box dimensions or weight.",
                code="PARCEL_INCOMPLETE",
            )

        if require_phone and not trim_or_none(destination.phone):
            raise ShippingValidationError(
                "Missing destination phone number (required for Easyship).",
                code="DESTINATION_PHONE_REQUIRED",
            )

        request = RateRequest(
            origin=ship_from_to_address(ship_from),
            destination=destination.to_easyship_address(),
            dimensions=dimensions,
            items=await self.orders.get_easyship_items(order_id),
        )
        return request, destination

    async def _notify(
        self,
        order_id: str,
        shipment_id: str,
        previous_tracking: Optional[str],
        new_tracking: Optional[str],
    ) -> Optional[TrackingEmailOutcome]:
        """Tracking email hook. Never raises; a label stays bought whatever happens here."""
        try:
            outcome = await self.notifier.maybe_send(order_id, shipment_id, previous_tracking, new_tracking)
        except Exception as e:
            logger.error(f"[tracking-email] hook failed order={order_id} shipment={shipment_id}: {e}")
            return TrackingEmailOutcome(False, "email_hook_error")
        if not outcome.sent:
            logger.info(
                f"[tracking-email] skipped order={order_id} shipment={shipment_id} reason={outcome.skipped_reason}"
            )
        return outcome

    # ==================== Quotes ====================

    async def get_quotes(self, order_id: str, shipment_id: str) -> QuotesOutcome:
        """
        Rates for one shipment, cheapest first, with the cheapest recorded as
        the shipment's selected quote.

        Zero upstream rates is a warning, not an error. Rates that exist but
        are all outside the carrier allow-list raise NO_QUOTES.
        """
        shipment = await self._load(order_id, shipment_id)
        request, destination = await self._build_rate_request(order_id, shipment)

        result = await self.quotes.get_or_create(order_id, destination, request)

        if not result.rates:
            if result.upstream_rate_count == 0:
                await self.store.set_quote_selection(shipment, None)
                return QuotesOutcome(
                    shipment_temp_key=result.shipment_temp_key,
                    warning=NO_SHIPPING_SOLUTIONS_DETAIL,
                )
            raise ShippingQuoteError(
                "No supported carrier quotes found for this parcel.",
                code="NO_QUOTES",
                details={"detail": {"allowedCarriers": list(self.config.allowed_carriers)}},
            )

        cheapest = pick_cheapest_rate(result.rates)
        await self.store.set_quote_selection(shipment, cheapest.id)
        return QuotesOutcome(
            shipment_temp_key=result.shipment_temp_key,
            rates=result.rates,
            cached=result.from_cache,
            expires_at=result.expires_at,
            selected_quote_id=cheapest.id,
        )

    # ==================== Diagnostics ====================

    async def _pick_shipment(
        self,
        order_id: str,
        shipment_id: Optional[str],
        parcel_index: Optional[int],
    ) -> OrderShipment:
        if shipment_id:
            shipment = await self.store.get_shipment(order_id, shipment_id)
            if shipment is None:
                raise ShippingNotFoundError("Shipment not found for supplied shipmentId.", code="NOT_FOUND")
            return shipment

        shipments = await self.store.list_shipments(order_id)
        if not shipments:
            raise ShippingNotFoundError("No shipments found for order.", code="NOT_FOUND")
        if parcel_index is None:
            return shipments[0]
        for shipment in shipments:
            if shipment.parcel_index == parcel_index:
                return shipment
        raise ShippingNotFoundError("Shipment not found for supplied parcelIndex.", code="NOT_FOUND")

    async def describe_rates_payload(
        self,
        order_id: str,
        shipment_id: Optional[str] = None,
        parcel_index: Optional[int] = None,
    ) -> Tuple[OrderShipment, Dict[str, Any]]:
        """
        Build the rates body a quote would send and return its redacted shape.

        Runs the same ship-from, destination and parcel checks as quoting but
        never calls Easyship. Defaults to the first parcel of the order.
        """
        await self.store.require_order(order_id)
        shipment = await self._pick_shipment(order_id, shipment_id, parcel_index)
        request, _ = await self._build_rate_request(order_id, shipment)
        return shipment, summarize_payload_shape(build_rates_payload(request))

    # ==================== Buy ====================

    @staticmethod
    def _select_rate(
        result: QuoteResult,
        requested_id: Optional[str],
        stored_id: Optional[str],
    ) -> NormalizedRate:
        """An explicit quote id must exist; a stale stored selection falls back to the cheapest."""
        if requested_id:
            rate = find_rate(result.rates, requested_id)
            if rate is None:
                raise ShippingNotFoundError(
                    "Selected quote not found for this shipment.",
                    code="QUOTE_NOT_FOUND",
                )
            return rate
        if stored_id:
            rate = find_rate(result.rates, stored_id)
            if rate is not None:
                return rate
        return pick_cheapest_rate(result.rates)

    async def _resolve_quote(
        self,
        order_id: str,
        destination: ShippingDestination,
        request: RateRequest,
        requested_id: Optional[str],
        stored_id: Optional[str],
    ) -> NormalizedRate:
        result = await self.quotes.get_or_create(order_id, destination, request)
        if not result.rates:
            if result.upstream_rate_count == 0:
                raise ShippingValidationError(NO_RATES_MESSAGE, code="NO_RATES")
            raise ShippingQuoteError("No supported carrier quotes found for this parcel.", code="NO_QUOTES")
        return self._select_rate(result, requested_id, stored_id)

    async def claim_purchase(self, order_id: str, shipment_id: str, claimed_at: datetime) -> bool:
        """
        Compare-and-swap on purchase_claimed_at.

        Succeeds only while the shipment is unpurchased and nobody else holds
        a claim younger than the claim TTL. Committed right away so other
        sessions see it.
        """
        stale_before = claimed_at - timedelta(minutes=self.config.purchase_claim_ttl_minutes)
        result = await self.db.execute(
            update(OrderShipment)
            .where(
                OrderShipment.id == shipment_id,
                OrderShipment.order_id == order_id,
                OrderShipment.purchased_at.is_(None),
                OrderShipment.label_state != LabelState.GENERATED.value,
                or_(
                    OrderShipment.purchase_claimed_at.is_(None),
                    OrderShipment.purchase_claimed_at < stale_before,
                ),
            )
            .values(purchase_claimed_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        await self.db.commit()
        return claimed

    async def release_purchase(self, order_id: str, shipment_id: str, claimed_at: datetime) -> None:
        await self.db.execute(
            update(OrderShipment)
            .where(
                OrderShipment.id == shipment_id,
                OrderShipment.order_id == order_id,
                OrderShipment.purchase_claimed_at == claimed_at,
            )
            .values(purchase_claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    async def _raise_claim_lost(self, order_id: str, shipment_id: str) -> None:
        result = await self.db.execute(
            select(OrderShipment.purchased_at, OrderShipment.label_state).where(
                OrderShipment.id == shipment_id,
                OrderShipment.order_id == order_id,
            )
        )
        row = result.first()
        if row is not None and (row.purchased_at is not None or row.label_state == LabelState.GENERATED.value):
            raise ShippingConflictError(
                "Label already purchased for this shipment.",
                code="SHIPMENT_ALREADY_PURCHASED",
            )
        raise ShippingConflictError(
            "Another label purchase for this shipment is in progress.",
            code="PURCHASE_IN_PROGRESS",
        )

    async def buy_label(
        self,
        order_id: str,
        shipment_id: str,
        quote_selected_id: Optional[str] = None,
        refresh: bool = False,
    ) -> LabelOutcome:
        shipment = await self._load(order_id, shipment_id)
        previous_tracking = shipment.tracking_number

        if shipment.is_purchased:
            if not refresh:
                if shipment.label_state == LabelState.GENERATED.value:
                    raise ShippingConflictError(
                        "Label already purchased for this shipment.",
                        code="SHIPMENT_ALREADY_PURCHASED",
                    )
                raise ShippingConflictError(
                    "Label purchase is pending. Use refresh instead of buying again.",
                    code="LABEL_PENDING_USE_REFRESH",
                )
            if not shipment.easyship_shipment_id:
                raise ShippingConflictError(
                    "Shipment has no Easyship shipment id to refresh.",
                    code="MISSING_EASYSHIP_SHIPMENT",
                )
            return await self._refresh(order_id, shipment)

        if refresh and shipment.easyship_shipment_id:
            # Remote shipment left behind by a failed purchase
            return await self._refresh(order_id, shipment)

        request, destination = await self._build_rate_request(order_id, shipment, require_phone=True)
        rate = await self._resolve_quote(
            order_id, destination, request, quote_selected_id, shipment.quote_selected_id
        )

        claimed_at = utcnow()
        if not await self.claim_purchase(order_id, shipment_id, claimed_at):
            await self._raise_claim_lost(order_id, shipment_id)

        logger.info(
            f"Buying label order={order_id} shipment={shipment_id} rate={rate.id} "
            f"{rate.carrier}/{rate.service} {rate.amount_cents}c"
        )
        try:
            snapshot = await self.client.create_shipment_and_buy_label(
                request,
                courier_service_id=rate.id,
                external_reference=f"{order_id}:{shipment_id}",
            )
        except Exception as e:
            details = getattr(e, "details", None) or {}
            await self.db.execute(
                update(OrderShipment)
                .where(OrderShipment.id == shipment_id, OrderShipment.order_id == order_id)
                .values(
                    easyship_shipment_id=func.coalesce(
                        details.get("easyship_shipment_id"), OrderShipment.easyship_shipment_id
                    ),
                    quote_selected_id=rate.id,
                    error_message=str(getattr(e, "message", None) or e)[:1000],
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.release_purchase(order_id, shipment_id, claimed_at)
            await self.db.commit()
            logger.error(f"Label purchase failed order={order_id} shipment={shipment_id}: {e}")
            raise

        await self._persist_purchase(order_id, shipment_id, rate, snapshot)
        await self.store.reload(shipment)
        await self.db.commit()

        tracking_email = await self._notify(order_id, shipment_id, previous_tracking, snapshot.tracking_number)
        return LabelOutcome(
            shipment=shipment,
            selected_quote_id=rate.id,
            tracking_email=tracking_email,
        )

    async def _persist_purchase(
        self,
        order_id: str,
        shipment_id: str,
        rate: NormalizedRate,
        snapshot: ShipmentSnapshot,
    ) -> None:
        now = utcnow()
        await self.db.execute(
            update(OrderShipment)
            .where(OrderShipment.id == shipment_id, OrderShipment.order_id == order_id)
            .values(
                easyship_shipment_id=snapshot.shipment_id or None,
                easyship_label_id=snapshot.label_id,
                carrier=trim_or_none(snapshot.carrier) or trim_or_none(rate.carrier),
                service=trim_or_none(snapshot.service) or trim_or_none(rate.service),
                tracking_number=trim_or_none(snapshot.tracking_number),
                label_url=trim_or_none(snapshot.label_url),
                label_cost_amount_cents=snapshot.label_cost_amount_cents,
                label_currency=snapshot.label_currency or "USD",
                label_state=snapshot.label_state,
                quote_selected_id=rate.id,
                error_message=None,
                purchased_at=func.coalesce(OrderShipment.purchased_at, now),
                purchase_claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            f"Label persisted order={order_id} shipment={shipment_id} state={snapshot.label_state} "
            f"tracking={snapshot.tracking_number or '-'}"
        )

    # ==================== Refresh ====================

    async def _refresh(self, order_id: str, shipment: OrderShipment) -> LabelOutcome:
        """Re-read the Easyship shipment and merge it in without buying anything."""
        previous_tracking = shipment.tracking_number
        snapshot = await self.client.get_shipment(shipment.easyship_shipment_id)

        label_state = snapshot.label_state
        if shipment.label_state == LabelState.GENERATED.value and label_state == LabelState.PENDING.value:
            label_state = LabelState.GENERATED.value

        now = utcnow()
        values = dict(
            easyship_label_id=func.coalesce(snapshot.label_id, OrderShipment.easyship_label_id),
            carrier=func.coalesce(trim_or_none(snapshot.carrier), OrderShipment.carrier),
            service=func.coalesce(trim_or_none(snapshot.service), OrderShipment.service),
            tracking_number=func.coalesce(trim_or_none(snapshot.tracking_number), OrderShipment.tracking_number),
            label_url=func.coalesce(trim_or_none(snapshot.label_url), OrderShipment.label_url),
            label_cost_amount_cents=func.coalesce(
                snapshot.label_cost_amount_cents, OrderShipment.label_cost_amount_cents
            ),
            label_currency=func.coalesce(snapshot.label_currency, OrderShipment.label_currency),
            label_state=label_state,
            error_message=None,
            updated_at=now,
        )
        if label_state == LabelState.GENERATED.value:
            values["purchased_at"] = func.coalesce(OrderShipment.purchased_at, now)

        await self.db.execute(
            update(OrderShipment)
            .where(and_(OrderShipment.id == shipment.id, OrderShipment.order_id == order_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.store.reload(shipment)
        await self.db.commit()
        logger.info(
            f"Label refreshed order={order_id} shipment={shipment.id} state={shipment.label_state} "
            f"tracking={shipment.tracking_number or '-'}"
        )

        tracking_email = await self._notify(order_id, shipment.id, previous_tracking, shipment.tracking_number)
        return LabelOutcome(
            shipment=shipment,
            refreshed=True,
            selected_quote_id=shipment.quote_selected_id,
            tracking_email=tracking_email,
        )

    async def refresh_label_status(self, order_id: str, shipment_id: str) -> LabelOutcome:
        """
        Label status poll. Only shipments with an Easyship id that still lack
        a label URL or tracking number are re-fetched.
        """
        shipment = await self._load(order_id, shipment_id)
        if not shipment.easyship_shipment_id or (shipment.label_url and shipment.tracking_number):
            return LabelOutcome(shipment=shipment, selected_quote_id=shipment.quote_selected_id)
        return await self._refresh(order_id, shipment)
