"""
Easyship response normalization

Easyship has renamed fields across API versions, so each canonical field is
resolved through an ordered table of (path, transform) extractors. The first
extractor that yields a value wins.

- parse_rates_from_response: rate list → List[NormalizedRate], never raises
- normalize_shipment_snapshot: shipment / label payload → ShipmentSnapshot
- summarize_payload_shape: redacted key skeleton for debug logging
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from shipdesk.core.utils import sha256_hex, to_finite_or_none, trim_or_none

logger = logging.getLogger(__name__)

Path = Tuple[str, ...]
Extractor = Tuple[Path, Callable[[Any], Any]]

UNKNOWN_CARRIER = "Unknown carrier"
UNKNOWN_SERVICE = "Unknown service"
DEFAULT_CURRENCY = "USD"


def get_path(source: Any, path: Path) -> Any:
    """Walk nested dicts; None as soon as a step is missing or not a dict."""
    current = source
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_value(source: Any, extractors: Sequence[Extractor], default: Any = None) -> Any:
    for path, transform in extractors:
        value = transform(get_path(source, path))
        if value is not None:
            return value
    return default


def first_dict(source: Any, paths: Sequence[Path]) -> Dict[str, Any]:
    for path in paths:
        value = source if not path else get_path(source, path)
        if isinstance(value, dict) and value:
            return value
    return {}


# ==================== Transforms ====================

def as_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return trim_or_none(value)


def as_cents(value: Any) -> Optional[int]:
    """Currency units → integer cents, half rounds up."""
    number = to_finite_or_none(value)
    if number is None:
        return None
    scaled = number * 100 + 0.5
    return int(math.floor(scaled)) if math.isfinite(scaled) else None


def as_days(value: Any) -> Optional[int]:
    number = to_finite_or_none(value)
    if number is None:
        return None
    rounded = number + 0.5
    return int(math.floor(rounded)) if math.isfinite(rounded) else None


def as_currency(value: Any) -> Optional[str]:
    text = trim_or_none(value)
    return text.upper() if text else None


# ==================== Rate extraction table ====================

RATE_LIST_PATHS: List[Path] = [
    ("rates",),
    ("couriers",),
    ("data", "rates"),
    ("data", "couriers"),
]

RATE_FIELD_EXTRACTORS: Dict[str, List[Extractor]] = {
    "id": [
        (("courier_service_id",), as_text),
        (("rate_id",), as_text),
        (("id",), as_text),
        (("courier_service", "id"), as_text),
    ],
    "carrier": [
        (("courier_name",), as_text),
        (("carrier",), as_text),
        (("provider",), as_text),
        (("courier_service", "courier", "name"), as_text),
        (("courier", "name"), as_text),
        (("courier", "display_name"), as_text),
        (("courier",), as_text),
    ],
    "service": [
        (("service_name",), as_text),
        (("service_level_name",), as_text),
        (("service",), as_text),
        (("courier_service", "name"), as_text),
        (("full_description",), as_text),
    ],
    "amount_cents": [
        (("total_charge",), as_cents),
        (("shipping_rate",), as_cents),
        (("rate",), as_cents),
        (("amount",), as_cents),
        (("rates_in_origin_currency", "total_charge"), as_cents),
    ],
    "currency": [
        (("currency",), as_currency),
        (("currency_code",), as_currency),
        (("total_charge_currency",), as_currency),
        (("rates_in_origin_currency", "currency"), as_currency),
    ],
    "eta_days_min": [
        (("delivery_days_min",), as_days),
        (("estimated_delivery_days_min",), as_days),
        (("min_delivery_time",), as_days),
    ],
    "eta_days_max": [
        (("delivery_days_max",), as_days),
        (("estimated_delivery_days_max",), as_days),
        (("max_delivery_time",), as_days),
    ],
}


@dataclass
class NormalizedRate:
    """One carrier + service + price option."""
    id: str
    carrier: str
    service: str
    amount_cents: int
    currency: str = DEFAULT_CURRENCY
    eta_days_min: Optional[int] = None
    eta_days_max: Optional[int] = None
    raw: Any = field(default=None, repr=False, compare=False)

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "carrier": self.carrier,
            "service": self.service,
            "amountCents": self.amount_cents,
            "currency": self.currency,
            "etaDaysMin": self.eta_days_min,
            "etaDaysMax": self.eta_days_max,
        }
        if include_raw:
            data["raw"] = self.raw
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["NormalizedRate"]:
        """Rebuild from a cached dict; None when the entry is unusable."""
        if not isinstance(data, dict):
            return None
        rate_id = as_text(data.get("id"))
        if not rate_id:
            return None
        return cls(
            id=rate_id,
            carrier=as_text(data.get("carrier")) or UNKNOWN_CARRIER,
            service=as_text(data.get("service")) or UNKNOWN_SERVICE,
            amount_cents=int(to_finite_or_none(data.get("amountCents")) or 0),
            currency=as_currency(data.get("currency")) or DEFAULT_CURRENCY,
            eta_days_min=as_days(data.get("etaDaysMin")),
            eta_days_max=as_days(data.get("etaDaysMax")),
            raw=data.get("raw"),
        )


def synthesize_rate_id(carrier: str, service: str, amount_cents: int) -> str:
    """Deterministic id for rates the provider returned without one."""
    return f"rate_{sha256_hex(f'{carrier}|{service}|{amount_cents}')[:16]}"


def find_rate_list(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    for path in RATE_LIST_PATHS:
        value = get_path(payload, path)
        if isinstance(value, list):
            return value
    return []


def normalize_rate(entry: Any) -> NormalizedRate:
    carrier = first_value(entry, RATE_FIELD_EXTRACTORS["carrier"], UNKNOWN_CARRIER)
    service = first_value(entry, RATE_FIELD_EXTRACTORS["service"], UNKNOWN_SERVICE)
    amount_cents = first_value(entry, RATE_FIELD_EXTRACTORS["amount_cents"], 0)
    rate_id = first_value(entry, RATE_FIELD_EXTRACTORS["id"])
    if not rate_id:
        rate_id = synthesize_rate_id(carrier, service, amount_cents)
    return NormalizedRate(
        id=rate_id,
        carrier=carrier,
        service=service,
        amount_cents=amount_cents,
        currency=first_value(entry, RATE_FIELD_EXTRACTORS["currency"], DEFAULT_CURRENCY),
        eta_days_min=first_value(entry, RATE_FIELD_EXTRACTORS["eta_days_min"]),
        eta_days_max=first_value(entry, RATE_FIELD_EXTRACTORS["eta_days_max"]),
        raw=entry,
    )


def parse_rates_from_response(payload: Any) -> List[NormalizedRate]:
    """
    Normalize every rate entry in an Easyship response.

    Entries are never dropped: a missing id is synthesized from
    (carrier, service, amount) and unparseable amounts become 0 with the raw
    entry kept for inspection. Non-dict entries are skipped.
    """
    rates = []
    for entry in find_rate_list(payload):
        if not isinstance(entry, dict):
            logger.debug(f"Skipping non-object rate entry of type {type(entry).__name__}")
            continue
        rates.append(normalize_rate(entry))
    return rates


# ==================== Shipment snapshot ====================

SHIPMENT_PATHS: List[Path] = [("shipment",), ("data", "shipment"), ("data",), ()]
LABEL_PATHS: List[Path] = [("label",), ("shipping_label",)]
PAYLOAD_LABEL_PATHS: List[Path] = [("label",), ("data", "label")]
SELECTED_RATE_PATHS: List[Path] = [("selected_rate",), ("courier",), ("selected_courier",)]


@dataclass
class ShipmentSnapshot:
    """Provider view of a shipment and its label after create/buy/refresh."""
    shipment_id: str
    label_id: Optional[str] = None
    carrier: Optional[str] = None
    service: Optional[str] = None
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    label_cost_amount_cents: Optional[int] = None
    label_currency: str = DEFAULT_CURRENCY
    label_state: str = "pending"
    raw: Any = field(default=None, repr=False)


def derive_label_state(label_url: Optional[str], status: str) -> str:
    if label_url:
        return "generated"
    if any(marker in status for marker in ("fail", "error", "cancel")):
        return "failed"
    if any(marker in status for marker in ("label_generated", "generated", "success")):
        return "generated"
    return "pending"


def normalize_shipment_snapshot(payload: Any) -> ShipmentSnapshot:
    payload = payload if isinstance(payload, dict) else {}
    shipment = first_dict(payload, SHIPMENT_PATHS)
    label = first_dict(shipment, LABEL_PATHS) or first_dict(payload, PAYLOAD_LABEL_PATHS)
    selected_rate = first_dict(shipment, SELECTED_RATE_PATHS) or first_dict(payload, [("selected_rate",)])
    scopes = {"payload": payload, "shipment": shipment, "label": label, "rate": selected_rate}

    def pick(candidates: Sequence[Tuple[str, Path, Callable[[Any], Any]]], default: Any = None) -> Any:
        for scope, path, transform in candidates:
            value = transform(get_path(scopes[scope], path))
            if value is not None:
                return value
        return default

    status = pick([
        ("label", ("status",), as_text),
        ("shipment", ("label_state",), as_text),
        ("shipment", ("status",), as_text),
        ("payload", ("status",), as_text),
    ], "").lower()
    label_url = pick([
        ("label", ("label_url",), as_text),
        ("label", ("download_url",), as_text),
        ("shipment", ("label_url",), as_text),
        ("payload", ("label_url",), as_text),
    ])

    return ShipmentSnapshot(
        shipment_id=pick([
            ("shipment", ("id",), as_text),
            ("shipment", ("easyship_shipment_id",), as_text),
            ("shipment", ("shipment_id",), as_text),
            ("payload", ("shipment_id",), as_text),
        ], ""),
        label_id=pick([
            ("label", ("id",), as_text),
            ("shipment", ("label_id",), as_text),
            ("payload", ("label_id",), as_text),
        ]),
        carrier=pick([
            ("rate", ("carrier",), as_text),
            ("rate", ("courier_name",), as_text),
            ("rate", ("name",), as_text),
            ("shipment", ("carrier",), as_text),
        ]),
        service=pick([
            ("rate", ("service",), as_text),
            ("rate", ("service_name",), as_text),
            ("shipment", ("service",), as_text),
        ]),
        tracking_number=pick([
            ("label", ("tracking_number",), as_text),
            ("shipment", ("tracking_number",), as_text),
            ("payload", ("tracking_number",), as_text),
        ]),
        label_url=label_url,
        label_cost_amount_cents=pick([
            ("label", ("cost",), as_cents),
            ("label", ("price",), as_cents),
            ("rate", ("total_charge",), as_cents),
            ("shipment", ("shipping_cost",), as_cents),
        ]),
        label_currency=pick([
            ("label", ("currency",), as_currency),
            ("rate", ("currency",), as_currency),
            ("payload", ("currency",), as_currency),
        ], DEFAULT_CURRENCY),
        label_state=derive_label_state(label_url, status),
        raw=payload,
    )


# ==================== Debug shape ====================

def build_redacted_skeleton(value: Any, depth: int = 0) -> Any:
    """Keys and nesting only; scalar values become '[present]'."""
    if value is None:
        return None
    if isinstance(value, list):
        if depth >= 6:
            return "[array]"
        return [build_redacted_skeleton(value[0], depth + 1)] if value else []
    if isinstance(value, dict):
        if depth >= 6:
            return "[object]"
        return {key: build_redacted_skeleton(nested, depth + 1) for key, nested in value.items()}
    return "[present]"


def summarize_payload_shape(payload: Any) -> Dict[str, Any]:
    top_level_keys = list(payload.keys()) if isinstance(payload, dict) else []
    parcels = payload.get("parcels") if isinstance(payload, dict) else None
    parcels = parcels if isinstance(parcels, list) else []
    first_parcel = parcels[0] if parcels and isinstance(parcels[0], dict) else {}
    items = first_parcel.get("items")
    first_item = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else {}
    shipment = payload.get("shipment") if isinstance(payload, dict) else None
    return {
        "topLevelKeys": top_level_keys,
        "hasShipmentWrapper": "shipment" in top_level_keys,
        "shipmentWrapperKeys": list(shipment.keys()) if isinstance(shipment, dict) else [],
        "parcelsCount": len(parcels),
        "firstParcelKeys": list(first_parcel.keys()),
        "firstParcelItemsIsArray": isinstance(items, list),
        "firstParcelItemsLength": len(items) if isinstance(items, list) else 0,
        "firstParcelFirstItemKeys": list(first_item.keys()),
        "firstParcelFirstItemHasCategory": "category" in first_item,
        "skeleton": build_redacted_skeleton(payload),
    }
