"""
Easyship API Client for shipping labels

Implements the Easyship public API calls the label workflow needs:
- Rating (POST /rates)
- Shipping (POST /shipments, then purchase the label)
- Status refresh (GET /shipments/{id})

All calls go through one httpx.AsyncClient with a bounded timeout. Rate
requests are read-only and retried on network errors, 429 and 5xx; shipment
creation and label purchase are never retried. Mock mode never touches the
network and returns deterministic rates and labels.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from shipdesk.core.config import EasyshipConfig
from shipdesk.core.exceptions import EasyshipAPIError
from shipdesk.core.utils import trim_or_none
from shipdesk.services.rate_normalizer import (
    NormalizedRate,
    ShipmentSnapshot,
    normalize_shipment_snapshot,
    parse_rates_from_response,
    summarize_payload_shape,
)

logger = logging.getLogger(__name__)

# Easyship's business error for "no courier can take this parcel"
NO_SHIPPING_SOLUTIONS_DETAIL = "No shipping solutions available based on the information provided"

# Easyship v2024-09 docs use "fashion" in the official Rates request example
DEFAULT_ITEM_CATEGORY = "fashion"

RATES_PATH = "/rates"
SHIPMENTS_PATH = "/shipments"
# The purchase endpoint name has changed between API versions
PURCHASE_PATH_SUFFIXES = ("purchase", "buy", "label")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

LB_TO_KG = 0.45359237
IN_TO_CM = 2.54


@dataclass
class EasyshipAddress:
    """Address plus contact details, shared by rates and shipments."""
    name: str
    address_line1: str
    city: str
    state: str
    postal_code: str
    country_code: str = "US"
    address_line2: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def to_rates_format(self) -> Dict[str, Any]:
        address = {
            "contact_name": self.name,
            "company_name": self.company_name,
            "contact_email": self.email,
            "contact_phone": self.phone,
            "line_1": self.address_line1,
            "line_2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country_alpha2": self.country_code,
        }
        return {key: value for key, value in address.items() if value is not None}

    def to_shipment_format(self) -> Dict[str, Any]:
        address = {
            "name": self.name,
            "company_name": self.company_name,
            "email": self.email,
            "phone_number": self.phone,
            "address_line_1": self.address_line1,
            "address_line_2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country_alpha2": self.country_code,
        }
        return {key: value for key, value in address.items() if value is not None}


@dataclass
class ParcelDimensions:
    """Resolved parcel size. Inches and pounds."""
    length_in: float
    width_in: float
    height_in: float
    weight_lb: float

    @property
    def volume_in3(self) -> float:
        return self.length_in * self.width_in * self.height_in

    def to_dict(self) -> Dict[str, float]:
        return {
            "lengthIn": self.length_in,
            "widthIn": self.width_in,
            "heightIn": self.height_in,
            "weightLb": self.weight_lb,
        }


@dataclass
class EasyshipItem:
    description: str = "Order items"
    quantity: int = 1
    declared_value_cents: int = 1


@dataclass
class RateRequest:
    origin: EasyshipAddress
    destination: EasyshipAddress
    dimensions: ParcelDimensions
    items: List[EasyshipItem] = field(default_factory=list)


def normalize_items(items: List[EasyshipItem]) -> List[EasyshipItem]:
    """Sanitize item lines; Easyship rejects an empty items array."""
    normalized = []
    for item in items or []:
        description = trim_or_none(item.description) or "Order item"
        quantity = int(item.quantity) if item.quantity and item.quantity > 0 else 1
        declared = item.declared_value_cents
        declared = int(round(declared)) if declared is not None and declared >= 0 else 1
        normalized.append(EasyshipItem(description, quantity, declared))
    return normalized or [EasyshipItem()]


def build_rates_payload(request: RateRequest) -> Dict[str, Any]:
    """POST /rates body. Metric units: cm and kg."""
    items = normalize_items(request.items)
    total_quantity = sum(item.quantity for item in items) or 1
    total_weight_kg = round(request.dimensions.weight_lb * LB_TO_KG, 4)
    per_item_weight = round(total_weight_kg / total_quantity, 4)
    if per_item_weight <= 0:
        per_item_weight = 0.001

    return {
        "origin_address": request.origin.to_rates_format(),
        "destination_address": request.destination.to_rates_format(),
        "shipping_settings": {"units": {"weight": "kg", "dimensions": "cm"}},
        "parcels": [
            {
                "box": {
                    "length": round(request.dimensions.length_in * IN_TO_CM, 2),
                    "width": round(request.dimensions.width_in * IN_TO_CM, 2),
                    "height": round(request.dimensions.height_in * IN_TO_CM, 2),
                },
                "total_actual_weight": round(total_weight_kg, 3),
                "items": [
                    {
                        "description": item.description,
                        "category": DEFAULT_ITEM_CATEGORY,
                        "quantity": item.quantity,
                        "actual_weight": per_item_weight,
                        "declared_currency": "USD",
                        "declared_customs_value": round(max(item.declared_value_cents, 1) / 100, 2),
                    }
                    for item in items
                ],
            }
        ],
    }


def build_shipment_payload(
    request: RateRequest,
    courier_service_id: str,
    external_reference: Optional[str] = None,
) -> Dict[str, Any]:
    """POST /shipments body. Imperial units (in / lb), unlike the rates call."""
    shipment = {
        "origin_address": request.origin.to_shipment_format(),
        "destination_address": request.destination.to_shipment_format(),
        "parcels": [
            {
                "box": {
                    "length": round(request.dimensions.length_in, 2),
                    "width": round(request.dimensions.width_in, 2),
                    "height": round(request.dimensions.height_in, 2),
                    "unit": "in",
                },
                "item": {
                    "actual_weight": round(request.dimensions.weight_lb, 3),
                    "weight_unit": "lb",
                },
            }
        ],
        "selected_courier_id": courier_service_id,
    }
    if external_reference:
        shipment["external_reference"] = external_reference
    return {"shipment": shipment}


# ==================== Mock mode ====================

MOCK_RATE_TABLE = [
    ("mock-usps-priority", "USPS", "Priority Mail", 0.0, 2, 4),
    ("mock-ups-ground", "UPS", "Ground", 1.10, 2, 5),
    ("mock-fedex-ground", "FedEx", "Ground Home", 1.45, 2, 5),
]


def build_mock_rates(request: RateRequest) -> List[NormalizedRate]:
    base = max(6.5, request.dimensions.weight_lb * 4 + request.dimensions.volume_in3 * 0.0035)
    rates = []
    for rate_id, carrier, service, add, eta_min, eta_max in MOCK_RATE_TABLE:
        rates.append(NormalizedRate(
            id=rate_id,
            carrier=carrier,
            service=service,
            amount_cents=int(round((base + add) * 100)),
            currency="USD",
            eta_days_min=eta_min,
            eta_days_max=eta_max,
            raw={"mock": True, "id": rate_id},
        ))
    return rates


def build_mock_label(request: RateRequest, courier_service_id: str) -> ShipmentSnapshot:
    rate_id = courier_service_id or "mock-rate"
    upper = rate_id.upper()
    carrier = "USPS" if "USPS" in upper else "FedEx" if "FEDEX" in upper else "UPS"
    seed = f"{int(time.time() * 1000)}{uuid.uuid4().int % 10000:04d}"
    return ShipmentSnapshot(
        shipment_id=str(uuid.uuid4()),
        label_id=str(uuid.uuid4()),
        carrier=carrier,
        service=rate_id,
        tracking_number=f"MOCK{seed[-12:]}",
        label_url=f"https://example.com/mock-labels/{uuid.uuid4()}.pdf",
        label_cost_amount_cents=int(round(max(5.99, request.dimensions.weight_lb * 4.25) * 100)),
        label_currency="USD",
        label_state="generated",
        raw={"mock": True, "courier_service_id": rate_id},
    )


def build_mock_refresh(shipment_id: str) -> ShipmentSnapshot:
    return ShipmentSnapshot(
        shipment_id=shipment_id,
        label_id=str(uuid.uuid4()),
        carrier="USPS",
        service="Priority Mail",
        tracking_number=f"MOCK{int(time.time() * 1000)}",
        label_url=f"https://example.com/mock-labels/{shipment_id}.pdf",
        label_cost_amount_cents=799,
        label_currency="USD",
        label_state="generated",
        raw={"mock": True},
    )


def extract_error_detail(data: Any, text: str) -> str:
    if isinstance(data, dict):
        for key in ("message", "error", "detail"):
            detail = trim_or_none(data.get(key))
            if detail:
                return detail
        nested = data.get("error")
        if isinstance(nested, dict):
            detail = trim_or_none(nested.get("message"))
            if detail:
                return detail
    return trim_or_none(text) or "Easyship request failed"


def is_no_shipping_solutions(error: Exception) -> bool:
    return NO_SHIPPING_SOLUTIONS_DETAIL.lower() in str(error).lower()


class EasyshipClient:
    """
    Easyship API client.

    One instance per request or per worker; call close() when done.
    """

    def __init__(self, config: EasyshipConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def is_mock(self) -> bool:
        return self.config.mock

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                headers={
                    "Authorization": f"Bearer {self.config.token}",
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    async def _make_request(self, method: str, path: str, data: Optional[Dict] = None) -> Dict:
        """Make one authenticated API request. Raises EasyshipAPIError on any failure."""
        if not self.config.token:
            raise EasyshipAPIError("EASYSHIP_TOKEN is not configured", code="EASYSHIP_NOT_CONFIGURED")

        client = await self._get_http_client()
        path = path if path.startswith("/") else f"/{path}"

        if self.config.debug:
            shape = summarize_payload_shape(data)
            logger.info(
                f"[easyship][debug] {method} {path} tokenLength={len(self.config.token)} "
                f"bodyKeys={shape['topLevelKeys']} parcels={shape['parcelsCount']} "
                f"skeleton={shape['skeleton']}"
            )

        try:
            response = await client.request(method.upper(), path, json=data)
        except httpx.TimeoutException as e:
            logger.error(f"Easyship {method} {path} timed out after {self.config.timeout_seconds}s")
            raise EasyshipAPIError(
                message=f"Easyship {method} {path} timed out",
                code="TIMEOUT",
                details={"path": path},
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Easyship request failed: {e}")
            raise EasyshipAPIError(
                message=f"Network error: {e}",
                code="NETWORK_ERROR",
                details={"path": path},
            ) from e

        logger.debug(f"Easyship API {method} {path} -> {response.status_code}")

        body = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = None

        if response.status_code >= 400:
            detail = extract_error_detail(body, response.text)
            logger.error(f"Easyship API error: {method} {path} {response.status_code} - {detail[:500]}")
            raise EasyshipAPIError(
                message=f"Easyship {method} {path} failed ({response.status_code}): {detail}",
                code="EASYSHIP_ERROR",
                details={"status": response.status_code, "path": path, "detail": detail, "body": body},
            )

        if self.config.debug:
            logger.info(f"[easyship][debug] {method} {path} response skeleton={summarize_payload_shape(body)['skeleton']}")

        return body if isinstance(body, dict) else {"data": body} if body is not None else {}

    async def _make_retryable_request(self, method: str, path: str, data: Optional[Dict] = None) -> Dict:
        """_make_request with exponential backoff. Only for read-only calls."""
        attempt = 0
        while True:
            try:
                return await self._make_request(method, path, data)
            except EasyshipAPIError as e:
                retryable = e.code in ("NETWORK_ERROR", "TIMEOUT") or e.upstream_status in RETRYABLE_STATUS_CODES
                if not retryable or attempt >= self.config.rate_retries or is_no_shipping_solutions(e):
                    raise
                delay = self.config.retry_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Easyship {method} {path} failed ({e.code}), retry {attempt}/{self.config.rate_retries} in {delay:.2f}s"
                )
                if delay > 0:
                    await asyncio.sleep(delay)

    # ==================== Rating ====================

    async def get_rates(self, request: RateRequest) -> List[NormalizedRate]:
        """
        Fetch and normalize rates for one parcel.

        Returns [] when Easyship answers with its "no shipping solutions"
        business error. Carrier filtering is left to the caller.
        """
        if self.is_mock:
            return build_mock_rates(request)

        payload = build_rates_payload(request)
        if self.config.debug:
            parcel = payload["parcels"][0]
            logger.info(
                f"[easyship][debug] rates request metrics weight_lb={request.dimensions.weight_lb:.3f} "
                f"weight_kg={parcel['total_actual_weight']} box_cm={parcel['box']} items={len(parcel['items'])}"
            )

        try:
            response = await self._make_retryable_request("POST", RATES_PATH, data=payload)
        except EasyshipAPIError as e:
            if is_no_shipping_solutions(e):
                logger.info("Easyship returned no shipping solutions for rate request")
                return []
            raise

        rates = parse_rates_from_response(response)
        logger.info(f"Easyship returned {len(rates)} rates")
        return rates

    # ==================== Shipping ====================

    async def create_shipment_and_buy_label(
        self,
        request: RateRequest,
        courier_service_id: str,
        external_reference: Optional[str] = None,
    ) -> ShipmentSnapshot:
        """
        Create a shipment, then buy its label.

        Purchase endpoints are tried in order and the first success wins. When
        every candidate fails the last error is raised and the remote shipment
        is left in place for a later refresh.
        """
        if self.is_mock:
            return build_mock_label(request, courier_service_id)

        payload = build_shipment_payload(request, courier_service_id, external_reference)
        created = normalize_shipment_snapshot(await self._make_request("POST", SHIPMENTS_PATH, data=payload))
        if not created.shipment_id:
            raise EasyshipAPIError(
                "Easyship create shipment response missing shipment id",
                code="EASYSHIP_ERROR",
                details={"detail": "missing shipment id"},
            )

        last_error: Optional[EasyshipAPIError] = None
        purchased = None
        for suffix in PURCHASE_PATH_SUFFIXES:
            path = f"{SHIPMENTS_PATH}/{created.shipment_id}/{suffix}"
            try:
                purchased = await self._make_request("POST", path, data={"courier_service_id": courier_service_id})
                break
            except EasyshipAPIError as e:
                logger.warning(f"Easyship purchase via {path} failed: {e.message}")
                last_error = e

        if purchased is None:
            last_error.details.setdefault("easyship_shipment_id", created.shipment_id)
            raise last_error

        snapshot = normalize_shipment_snapshot(purchased)
        if not snapshot.shipment_id:
            snapshot.shipment_id = created.shipment_id
        logger.info(
            f"Easyship label purchased: shipment={snapshot.shipment_id} state={snapshot.label_state} "
            f"tracking={snapshot.tracking_number or '-'}"
        )
        return snapshot

    async def get_shipment(self, shipment_id: str) -> ShipmentSnapshot:
        """Re-read a shipment to pick up a label generated asynchronously."""
        if self.is_mock:
            return build_mock_refresh(shipment_id)

        snapshot = normalize_shipment_snapshot(
            await self._make_request("GET", f"{SHIPMENTS_PATH}/{shipment_id}")
        )
        if not snapshot.shipment_id:
            snapshot.shipment_id = shipment_id
        return snapshot
