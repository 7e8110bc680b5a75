"""
Order data provider

Read-only access to checkout-owned order data: the shipping destination,
customer email and item lines used for rates and the tracking email.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.utils import trim_or_none
from shipdesk.models.order import Order, OrderItem
from shipdesk.services.easyship_client import EasyshipAddress, EasyshipItem

logger = logging.getLogger(__name__)

MAX_EMAIL_ITEMS = 8


@dataclass
class ShippingDestination:
    name: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "US"

    @property
    def is_complete(self) -> bool:
        return all((self.name, self.line1, self.city, self.state, self.postal_code, self.country))

    def to_easyship_address(self) -> EasyshipAddress:
        return EasyshipAddress(
            name=self.name or "Customer",
            company_name=self.company_name,
            email=self.email,
            phone=self.phone,
            address_line1=self.line1 or "",
            address_line2=self.line2,
            city=self.city or "",
            state=self.state or "",
            postal_code=self.postal_code or "",
            country_code=self.country or "US",
        )


@dataclass
class TrackingEmailItem:
    name: str
    quantity: int


@dataclass
class TrackingEmailContext:
    """Everything the tracking email needs, loaded after the send is claimed."""
    to_email: str
    customer_name: Optional[str]
    order_label: str
    tracking_number: str
    carrier: Optional[str] = None
    service: Optional[str] = None
    label_url: Optional[str] = None
    items: List[TrackingEmailItem] = field(default_factory=list)


def has_required_destination(destination: Optional[ShippingDestination]) -> bool:
    return bool(destination and destination.is_complete)


def parse_order_address(value: Any) -> ShippingDestination:
    """Map a Stripe-style address blob; postal code and country aliases included."""
    source: Dict[str, Any] = value if isinstance(value, dict) else {}
    postal = (
        trim_or_none(source.get("postal_code"))
        or trim_or_none(source.get("postalCode"))
        or trim_or_none(source.get("zip"))
        or trim_or_none(source.get("zip_code"))
    )
    return ShippingDestination(
        name=trim_or_none(source.get("name")),
        company_name=trim_or_none(source.get("company_name")) or trim_or_none(source.get("companyName")),
        email=trim_or_none(source.get("email")),
        phone=trim_or_none(source.get("phone")),
        line1=trim_or_none(source.get("line1")),
        line2=trim_or_none(source.get("line2")),
        city=trim_or_none(source.get("city")),
        state=trim_or_none(source.get("state")),
        postal_code=postal,
        country=trim_or_none(source.get("country")) or "US",
    )


class OrderDataProvider:
    """Reads orders and order_items; never writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_order(self, order_id: str) -> Optional[Order]:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def order_exists(self, order_id: str) -> bool:
        return await self.get_order(order_id) is not None

    async def get_destination(self, order_id: str) -> Optional[ShippingDestination]:
        order = await self.get_order(order_id)
        if order is None:
            return None

        destination = ShippingDestination(name=trim_or_none(order.shipping_name), email=trim_or_none(order.customer_email))
        if not order.shipping_address_json:
            return destination

        try:
            decoded = json.loads(order.shipping_address_json)
        except (TypeError, ValueError):
            logger.warning(f"Order {order_id} has unparseable shipping_address_json")
            return destination

        parsed = parse_order_address(decoded)
        parsed.name = parsed.name or destination.name
        parsed.email = parsed.email or destination.email
        return parsed

    async def get_items(self, order_id: str) -> List[OrderItem]:
        result = await self.db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(result.scalars().all())

    async def get_easyship_items(self, order_id: str) -> List[EasyshipItem]:
        """Item lines for the rates payload; declared value is the line total."""
        return [
            EasyshipItem(
                description=trim_or_none(item.product_name) or "Order item",
                quantity=item.quantity if item.quantity and item.quantity > 0 else 1,
                declared_value_cents=max(1, (item.price_cents or 0) * (item.quantity or 1)),
            )
            for item in await self.get_items(order_id)
        ]

    async def get_tracking_email_context(
        self,
        order_id: str,
        tracking_number: str,
        carrier: Optional[str] = None,
        service: Optional[str] = None,
        label_url: Optional[str] = None,
    ) -> Optional[TrackingEmailContext]:
        """None when the order or a customer email cannot be found."""
        order = await self.get_order(order_id)
        if order is None:
            return None

        destination = await self.get_destination(order_id)
        to_email = trim_or_none(order.customer_email) or (destination.email if destination else None)
        if not to_email:
            return None

        items = [
            TrackingEmailItem(
                name=trim_or_none(item.product_name) or "Item",
                quantity=item.quantity if item.quantity and item.quantity > 0 else 1,
            )
            for item in await self.get_items(order_id)
        ][:MAX_EMAIL_ITEMS]

        return TrackingEmailContext(
            to_email=to_email,
            customer_name=trim_or_none(order.shipping_name) or (destination.name if destination else None),
            order_label=trim_or_none(order.display_order_id) or order.id,
            tracking_number=tracking_number,
            carrier=carrier,
            service=service,
            label_url=label_url,
            items=items,
        )
