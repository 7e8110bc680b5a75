"""
API dependencies

Builds the explicit configuration objects and per-request collaborators the
shipping services are constructed with. Admin authentication happens in
front of this service, so none of these check credentials.
"""
from typing import AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.config import ShippingConfig, settings
from shipdesk.core.database import get_db
from shipdesk.services.easyship_client import EasyshipClient
from shipdesk.services.email_provider import EmailSender, get_email_sender
from shipdesk.services.label_purchase import LabelPurchaseService
from shipdesk.services.shipment_store import ShipmentStore
from shipdesk.services.shipping_settings import ShippingSettingsService


def get_shipping_config() -> ShippingConfig:
    return ShippingConfig.from_settings(settings)


async def get_easyship_client(
    config: ShippingConfig = Depends(get_shipping_config),
) -> AsyncIterator[EasyshipClient]:
    """One Easyship client per request, closed afterwards."""
    client = EasyshipClient(config.easyship)
    try:
        yield client
    finally:
        await client.close()


async def get_tracking_email_sender() -> AsyncIterator[EmailSender]:
    sender = get_email_sender(settings)
    try:
        yield sender
    finally:
        close = getattr(sender, "close", None)
        if close is not None:
            await close()


def get_shipping_settings_service(db: AsyncSession = Depends(get_db)) -> ShippingSettingsService:
    return ShippingSettingsService(db)


def get_shipment_store(db: AsyncSession = Depends(get_db)) -> ShipmentStore:
    return ShipmentStore(db)


def get_label_service(
    db: AsyncSession = Depends(get_db),
    client: EasyshipClient = Depends(get_easyship_client),
    config: ShippingConfig = Depends(get_shipping_config),
    sender: EmailSender = Depends(get_tracking_email_sender),
) -> LabelPurchaseService:
    return LabelPurchaseService(db, client, config, sender, site_url=settings.PUBLIC_SITE_URL or None)
