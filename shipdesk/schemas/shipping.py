"""
Pydantic schemas for the shipping label API.

JSON uses camelCase (shipFromName, boxPresetId, quoteSelectedId, ...);
Python attributes stay snake_case.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

US_STATE_CODES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "DC", "FL", "GA", "HI", "ID", "IL", "IN",
    "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH",
    "NJ", "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT",
    "VT", "VA", "WA", "WV", "WI", "WY", "PR", "VI", "GU", "AS", "MP", "AA", "AE", "AP",
}


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ==================== Ship-from settings ====================

class ShipFromSettingsSchema(CamelModel):
    ship_from_name: str = ""
    ship_from_address1: str = ""
    ship_from_address2: str = ""
    ship_from_city: str = ""
    ship_from_state: str = ""
    ship_from_postal: str = ""
    ship_from_country: str = "US"
    ship_from_phone: str = ""


class ShipFromSettingsUpdate(ShipFromSettingsSchema):
    """Country is folded to two upper-case letters; US states must be real codes."""

    @field_validator("*", mode="before")
    @classmethod
    def strip_strings(cls, v):
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @field_validator("ship_from_country")
    @classmethod
    def normalize_country(cls, v: str) -> str:
        country = (v or "US").upper()
        if len(country) != 2 or not country.isalpha():
            raise ValueError("shipFromCountry must be a 2-letter country code")
        return country

    @field_validator("ship_from_state")
    @classmethod
    def upper_state(cls, v: str) -> str:
        return v.upper() if len(v) <= 3 else v

    def us_state_error(self) -> Optional[str]:
        if self.ship_from_country == "US" and self.ship_from_state and self.ship_from_state not in US_STATE_CODES:
            return "shipFromState must be a valid 2-letter US state code"
        return None


class ShippingSettingsResponse(CamelModel):
    ok: bool = True
    ship_from: ShipFromSettingsSchema
    missing: List[str] = Field(default_factory=list)
    box_presets: List["BoxPresetResponse"] = Field(default_factory=list)
    allowed_carriers: List[str] = Field(default_factory=list)
    mock_mode: bool = False


# ==================== Box presets ====================

class BoxPresetCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=120)
    length_in: float = Field(..., gt=0)
    width_in: float = Field(..., gt=0)
    height_in: float = Field(..., gt=0)
    default_weight_lb: Optional[float] = Field(None, gt=0)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class BoxPresetUpdate(BoxPresetCreate):
    pass


class BoxPresetResponse(CamelModel):
    id: str
    name: str
    length_in: float
    width_in: float
    height_in: float
    default_weight_lb: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BoxPresetListResponse(CamelModel):
    ok: bool = True
    box_presets: List[BoxPresetResponse] = Field(default_factory=list)


class BoxPresetMutationResponse(BoxPresetListResponse):
    box_preset: Optional[BoxPresetResponse] = None


ShippingSettingsResponse.model_rebuild()


# ==================== Shipments ====================

class ShipmentCreate(CamelModel):
    """Either a preset id or all three custom dimensions; weight falls back to the preset default."""
    box_preset_id: Optional[str] = None
    custom_length_in: Optional[float] = None
    custom_width_in: Optional[float] = None
    custom_height_in: Optional[float] = None
    weight_lb: Optional[float] = None

    @field_validator("box_preset_id", mode="before")
    @classmethod
    def blank_preset_is_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v


class ShipmentUpdate(ShipmentCreate):
    pass


class ShipmentResponse(CamelModel):
    id: str
    order_id: str
    parcel_index: int
    box_preset_id: Optional[str] = None
    box_preset_name: Optional[str] = None
    custom_length_in: Optional[float] = None
    custom_width_in: Optional[float] = None
    custom_height_in: Optional[float] = None
    effective_length_in: Optional[float] = None
    effective_width_in: Optional[float] = None
    effective_height_in: Optional[float] = None
    weight_lb: float
    easyship_shipment_id: Optional[str] = None
    easyship_label_id: Optional[str] = None
    carrier: Optional[str] = None
    service: Optional[str] = None
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    label_cost_amount_cents: Optional[int] = None
    label_currency: Optional[str] = None
    label_state: str
    quote_selected_id: Optional[str] = None
    error_message: Optional[str] = None
    purchased_at: Optional[datetime] = None
    tracking_email_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ShipmentSummary(CamelModel):
    shipment_count: int = 0
    purchased_count: int = 0
    actual_label_total_cents: int = 0


class ShipmentListResponse(CamelModel):
    ok: bool = True
    shipments: List[ShipmentResponse]
    summary: ShipmentSummary
    box_presets: List[BoxPresetResponse] = Field(default_factory=list)


class ShipmentMutationResponse(CamelModel):
    ok: bool = True
    shipment: Optional[ShipmentResponse] = None
    shipments: List[ShipmentResponse] = Field(default_factory=list)


# ==================== Quotes / labels ====================

class RateSchema(CamelModel):
    id: str
    carrier: str
    service: str
    amount_cents: int
    currency: str = "USD"
    eta_days_min: Optional[int] = None
    eta_days_max: Optional[int] = None


class QuotesResponse(CamelModel):
    ok: bool = True
    cached: bool = False
    expires_at: Optional[datetime] = None
    shipment_temp_key: Optional[str] = None
    rates: List[RateSchema] = Field(default_factory=list)
    selected_quote_id: Optional[str] = None
    warning: Optional[str] = None
    shipments: List[ShipmentResponse] = Field(default_factory=list)


class BuyLabelRequest(CamelModel):
    quote_selected_id: Optional[str] = None
    refresh: bool = False

    @field_validator("quote_selected_id", mode="before")
    @classmethod
    def blank_quote_is_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v


class TrackingEmailResult(CamelModel):
    sent: bool
    skipped_reason: Optional[str] = None


class BuyLabelResponse(CamelModel):
    ok: bool = True
    refreshed: bool = False
    shipment: Optional[ShipmentResponse] = None
    shipments: List[ShipmentResponse] = Field(default_factory=list)
    selected_quote_id: Optional[str] = None
    pending_refresh: bool = False
    tracking_email: Optional[TrackingEmailResult] = None


class LabelStatusResponse(CamelModel):
    ok: bool = True
    refreshed: bool = False
    shipment: Optional[ShipmentResponse] = None
    shipments: List[ShipmentResponse] = Field(default_factory=list)
    pending_refresh: bool = False
    tracking_email: Optional[TrackingEmailResult] = None


# ==================== Diagnostics ====================

class SelectedShipment(CamelModel):
    id: str
    parcel_index: int


class EasyshipEndpoint(CamelModel):
    host: str
    path: str


class RatesShapeResponse(CamelModel):
    """Redacted shape of the rates body a quote would send. Values are never echoed."""
    ok: bool = True
    debug_enabled: bool = True
    endpoint: EasyshipEndpoint
    env_present: Dict[str, bool] = Field(default_factory=dict)
    token_length: int = 0
    allowed_carriers: List[str] = Field(default_factory=list)
    selected_shipment: SelectedShipment
    body_top_level_keys: List[str] = Field(default_factory=list)
    has_shipment_wrapper: bool = False
    shipment_wrapper_keys: List[str] = Field(default_factory=list)
    parcels_count: int = 0
    first_parcel_keys: List[str] = Field(default_factory=list)
    first_parcel_items_is_array: bool = False
    first_parcel_items_length: int = 0
    first_parcel_first_item_keys: List[str] = Field(default_factory=list)
    first_parcel_first_item_has_category: bool = False
    body_skeleton: Any = None
