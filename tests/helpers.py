"""Seed data and builders shared by the test modules."""
import json
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.config import EasyshipConfig, ShippingConfig
from shipdesk.models.order import Order, OrderItem
from shipdesk.models.shipment import OrderShipment
from shipdesk.models.shipping_settings import BoxPreset, ShippingSettings, SHIPPING_SETTINGS_ID
from shipdesk.services.easyship_client import EasyshipAddress, ParcelDimensions, RateRequest
from shipdesk.services.rate_normalizer import NormalizedRate, ShipmentSnapshot

DESTINATION = {
    "name": "Jane Buyer",
    "line1": "500 Market St",
    "line2": "Apt 4",
    "city": "San Francisco",
    "state": "CA",
    "postal_code": "94105",
    "country": "US",
    "phone": "+1 415 555 0100",
}

SHIP_FROM = {
    "ship_from_name": "Shipdesk Warehouse",
    "ship_from_address1": "1 Dock Rd",
    "ship_from_address2": "",
    "ship_from_city": "Portland",
    "ship_from_state": "OR",
    "ship_from_postal": "97201",
    "ship_from_country": "US",
    "ship_from_phone": "5035550100",
}


def make_config(**easyship_overrides) -> ShippingConfig:
    options = {
        "token": "test-token",
        "base_url": "https://easyship.test/2024-09",
        "allowed_carriers": ("USPS", "UPS", "FEDEX"),
        "retry_base_delay": 0.0,
    }
    options.update(easyship_overrides)
    return ShippingConfig(easyship=EasyshipConfig(**options))


def make_rate(rate_id: str, carrier: str, amount_cents: int, service: str = "Ground") -> NormalizedRate:
    return NormalizedRate(
        id=rate_id,
        carrier=carrier,
        service=service,
        amount_cents=amount_cents,
        raw={"courier_service_id": rate_id},
    )


def sample_rates():
    """Upstream order on purpose: DHL is cheapest but not allow-listed."""
    return [
        make_rate("es-ups-ground", "UPS", 1020),
        make_rate("es-usps-priority", "USPS", 845, service="Priority Mail"),
        make_rate("es-dhl-express", "DHL Express", 500, service="Worldwide"),
        make_rate("es-fedex-home", "FedEx", 990, service="Ground Home"),
    ]


def make_snapshot(**fields) -> ShipmentSnapshot:
    values = {
        "shipment_id": "ES-1",
        "label_id": "LBL-1",
        "carrier": "USPS",
        "service": "Priority Mail",
        "tracking_number": None,
        "label_url": "https://labels.example.com/ES-1.pdf",
        "label_cost_amount_cents": 845,
        "label_currency": "USD",
        "label_state": "generated",
    }
    values.update(fields)
    return ShipmentSnapshot(**values)


def make_rate_request(postal_code: str = "94105") -> RateRequest:
    return RateRequest(
        origin=EasyshipAddress(
            name="Shipdesk Warehouse",
            address_line1="1 Dock Rd",
            city="Portland",
            state="OR",
            postal_code="97201",
        ),
        destination=EasyshipAddress(
            name="Jane Buyer",
            address_line1="500 Market St",
            city="San Francisco",
            state="CA",
            postal_code=postal_code,
            phone="+1 415 555 0100",
        ),
        dimensions=ParcelDimensions(length_in=12, width_in=9, height_in=6, weight_lb=2),
    )


async def seed_order(
    db: AsyncSession,
    order_id: str = "O1",
    address: Optional[dict] = None,
    email: Optional[str] = "jane@example.com",
) -> Order:
    order = Order(
        id=order_id,
        display_order_id=f"#{order_id}-1001",
        customer_email=email,
        shipping_name="Jane Buyer",
        shipping_address_json=json.dumps(DESTINATION if address is None else address),
    )
    db.add(order)
    db.add(OrderItem(order_id=order_id, product_name="Art print", quantity=2, price_cents=1500))
    await db.commit()
    return order


async def seed_ship_from(db: AsyncSession, **overrides) -> ShippingSettings:
    values = dict(SHIP_FROM)
    values.update(overrides)
    settings = ShippingSettings(id=SHIPPING_SETTINGS_ID, **values)
    db.add(settings)
    await db.commit()
    return settings


async def seed_preset(
    db: AsyncSession,
    name: str = "Medium box",
    length_in: float = 12,
    width_in: float = 9,
    height_in: float = 6,
    default_weight_lb: Optional[float] = 2.0,
) -> BoxPreset:
    preset = BoxPreset(
        name=name,
        length_in=length_in,
        width_in=width_in,
        height_in=height_in,
        default_weight_lb=default_weight_lb,
    )
    db.add(preset)
    await db.commit()
    return preset


async def seed_shipment(
    db: AsyncSession,
    order_id: str = "O1",
    shipment_id: str = "S1",
    parcel_index: int = 1,
    **fields,
) -> OrderShipment:
    values = {"weight_lb": 2.0, "label_state": "pending"}
    values.update(fields)
    shipment = OrderShipment(id=shipment_id, order_id=order_id, parcel_index=parcel_index, **values)
    db.add(shipment)
    await db.commit()
    return shipment


async def seed_scenario(db: AsyncSession, order_id: str = "O1", shipment_id: str = "S1", **order_options):
    """Order with a full destination, ship-from settings and one 12x9x6in/2lb preset parcel."""
    await seed_order(db, order_id, **order_options)
    await seed_ship_from(db)
    preset = await seed_preset(db)
    shipment = await seed_shipment(db, order_id, shipment_id, box_preset_id=preset.id)
    return preset, shipment


async def fetch_shipment(session_factory, shipment_id: str) -> Optional[OrderShipment]:
    """Read a shipment through a fresh session, bypassing any identity map."""
    async with session_factory() as session:
        result = await session.execute(select(OrderShipment).where(OrderShipment.id == shipment_id))
        return result.scalar_one_or_none()
