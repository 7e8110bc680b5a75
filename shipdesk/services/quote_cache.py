"""
Rate quote cache

Normalized, allow-listed rates are cached per (order, shipment signature)
for a fixed TTL. The signature is a sha256 over the destination, parcel
dimensions and carrier allow-list, so any change to those inputs simply
produces a new key. Empty results are never cached.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.config import ShippingConfig
from shipdesk.core.utils import new_id, sha256_hex, utcnow
from shipdesk.models.shipment import RateQuoteCacheEntry
from shipdesk.services.carrier_filter import carrier_slug, filter_allowed_rates
from shipdesk.services.easyship_client import EasyshipClient, ParcelDimensions, RateRequest
from shipdesk.services.order_data import ShippingDestination
from shipdesk.services.rate_normalizer import NormalizedRate

logger = logging.getLogger(__name__)


def build_signature_payload(
    order_id: str,
    destination: ShippingDestination,
    dimensions: ParcelDimensions,
    allowed_carriers: Sequence[str],
) -> str:
    return json.dumps(
        {
            "orderId": order_id,
            "destination": {
                "postalCode": destination.postal_code,
                "countryCode": destination.country,
                "state": destination.state,
                "city": destination.city,
            },
            "dimensions": dimensions.to_dict(),
            "allowedCarriers": sorted(carrier_slug(carrier) for carrier in allowed_carriers),
        },
        separators=(",", ":"),
    )


def compute_shipment_temp_key(
    order_id: str,
    destination: ShippingDestination,
    dimensions: ParcelDimensions,
    allowed_carriers: Sequence[str],
) -> str:
    return sha256_hex(build_signature_payload(order_id, destination, dimensions, allowed_carriers))


def serialize_rates(rates: Sequence[NormalizedRate]) -> str:
    return json.dumps([rate.to_dict(include_raw=True) for rate in rates], default=str)


def deserialize_rates(rates_json: str) -> List[NormalizedRate]:
    try:
        decoded = json.loads(rates_json or "[]")
    except ValueError:
        logger.warning("Discarding unreadable cached rates_json")
        return []
    if not isinstance(decoded, list):
        return []
    rates = [NormalizedRate.from_dict(entry) for entry in decoded]
    return [rate for rate in rates if rate is not None]


@dataclass
class QuoteResult:
    """Rates for one shipment signature and where they came from."""
    shipment_temp_key: str
    rates: List[NormalizedRate] = field(default_factory=list)
    from_cache: bool = False
    expires_at: Optional[datetime] = None
    upstream_rate_count: int = 0  # Before the carrier allow-list


class QuoteCache:
    """Signature-keyed rate cache in order_rate_quotes."""

    def __init__(self, db: AsyncSession, client: EasyshipClient, config: ShippingConfig):
        self.db = db
        self.client = client
        self.config = config

    def signature_for(self, order_id: str, destination: ShippingDestination, dimensions: ParcelDimensions) -> str:
        return compute_shipment_temp_key(order_id, destination, dimensions, self.config.allowed_carriers)

    def _insert(self):
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite_insert
        return pg_insert

    async def lookup(self, order_id: str, shipment_temp_key: str) -> Optional[Tuple[List[NormalizedRate], datetime]]:
        """Unexpired, non-empty cached rates or None."""
        result = await self.db.execute(
            select(RateQuoteCacheEntry.rates_json, RateQuoteCacheEntry.expires_at).where(
                RateQuoteCacheEntry.order_id == order_id,
                RateQuoteCacheEntry.shipment_temp_key == shipment_temp_key,
                RateQuoteCacheEntry.expires_at > utcnow(),
            )
        )
        row = result.first()
        if row is None:
            return None
        rates = deserialize_rates(row.rates_json)
        if not rates:
            return None
        return sorted(rates, key=lambda rate: rate.amount_cents), row.expires_at

    async def store(self, order_id: str, shipment_temp_key: str, rates: Sequence[NormalizedRate]) -> Optional[datetime]:
        """Upsert the rate list; concurrent fills for the same key just overwrite."""
        if not rates:
            return None

        now = utcnow()
        expires_at = now + timedelta(minutes=self.config.quote_ttl_minutes)
        rates_json = serialize_rates(rates)
        insert = self._insert()
        stmt = insert(RateQuoteCacheEntry).values(
            id=new_id(),
            order_id=order_id,
            shipment_temp_key=shipment_temp_key,
            rates_json=rates_json,
            created_at=now,
            expires_at=expires_at,
        ).on_conflict_do_update(
            index_elements=["order_id", "shipment_temp_key"],
            set_={
                "rates_json": rates_json,
                "created_at": now,
                "expires_at": expires_at,
            },
        )
        await self.db.execute(stmt)
        logger.info(f"Cached {len(rates)} rates for order {order_id} key {shipment_temp_key[:12]}")
        return expires_at

    async def get_or_create(
        self,
        order_id: str,
        destination: ShippingDestination,
        request: RateRequest,
    ) -> QuoteResult:
        """
        Cached rates when a live entry exists, else fetch, filter and cache.

        A result with no rates is never written, so the next call asks
        Easyship again.
        """
        key = self.signature_for(order_id, destination, request.dimensions)

        cached = await self.lookup(order_id, key)
        if cached is not None:
            rates, expires_at = cached
            logger.debug(f"Rate cache hit for order {order_id} key {key[:12]}")
            return QuoteResult(key, rates, True, expires_at, len(rates))

        live = await self.client.get_rates(request)
        allowed = filter_allowed_rates(live, self.config.allowed_carriers)
        if len(allowed) < len(live):
            logger.info(f"Carrier allow-list kept {len(allowed)} of {len(live)} rates for order {order_id}")

        expires_at = await self.store(order_id, key, allowed)
        return QuoteResult(key, allowed, False, expires_at, len(live))
