"""
Tracking email notifier

Sends the "your order shipped" email once per shipment, the first time it
gets a tracking number, even with concurrent buy / refresh calls.

Exclusivity comes from a compare-and-swap on tracking_email_sent_at
(UPDATE ... WHERE tracking_email_sent_at IS NULL). The winner commits the
claim before sending; if the context lookup or the send fails, the claim is
released again, but only while it still holds this caller's timestamp.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shipdesk.core.utils import trim_or_none, utcnow
from shipdesk.models.shipment import OrderShipment
from shipdesk.services.email_provider import EmailSender, build_tracking_email
from shipdesk.services.order_data import OrderDataProvider

logger = logging.getLogger(__name__)


@dataclass
class TrackingEmailOutcome:
    sent: bool
    skipped_reason: Optional[str] = None


class TrackingEmailNotifier:
    """Claim-and-compensate sender for the first-tracking-number email."""

    def __init__(self, db: AsyncSession, sender: EmailSender, site_url: Optional[str] = None):
        self.db = db
        self.sender = sender
        self.site_url = site_url
        self.orders = OrderDataProvider(db)

    async def _read_shipment(self, order_id: str, shipment_id: str):
        result = await self.db.execute(
            select(
                OrderShipment.tracking_number,
                OrderShipment.tracking_email_sent_at,
                OrderShipment.carrier,
                OrderShipment.service,
                OrderShipment.label_url,
            )
            .where(OrderShipment.order_id == order_id, OrderShipment.id == shipment_id)
        )
        return result.first()

    async def claim(self, order_id: str, shipment_id: str, claimed_at: datetime) -> bool:
        """True only for the caller whose UPDATE moved the column from NULL."""
        result = await self.db.execute(
            update(OrderShipment)
            .where(
                OrderShipment.id == shipment_id,
                OrderShipment.order_id == order_id,
                OrderShipment.tracking_email_sent_at.is_(None),
            )
            .values(tracking_email_sent_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        await self.db.commit()
        return claimed

    async def release(self, order_id: str, shipment_id: str, claimed_at: datetime) -> None:
        """Undo our claim; a newer claim by someone else is left alone."""
        await self.db.execute(
            update(OrderShipment)
            .where(
                OrderShipment.id == shipment_id,
                OrderShipment.order_id == order_id,
                OrderShipment.tracking_email_sent_at == claimed_at,
            )
            .values(tracking_email_sent_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def maybe_send(
        self,
        order_id: str,
        shipment_id: str,
        previous_tracking_number: Optional[str],
        new_tracking_number: Optional[str],
    ) -> TrackingEmailOutcome:
        if trim_or_none(previous_tracking_number):
            return TrackingEmailOutcome(False, "previous_tracking_exists")
        if not trim_or_none(new_tracking_number):
            return TrackingEmailOutcome(False, "tracking_missing")

        row = await self._read_shipment(order_id, shipment_id)
        if row is None:
            return TrackingEmailOutcome(False, "shipment_not_found")
        if row.tracking_email_sent_at is not None:
            return TrackingEmailOutcome(False, "already_sent")
        order = await self.orders.get_order(order_id)
        if order is None or not trim_or_none(order.customer_email):
            return TrackingEmailOutcome(False, "missing_customer_email")
        if not trim_or_none(row.tracking_number):
            return TrackingEmailOutcome(False, "tracking_missing_after_persist")

        claimed_at = utcnow()
        if not await self.claim(order_id, shipment_id, claimed_at):
            current = await self._read_shipment(order_id, shipment_id)
            if current is None:
                return TrackingEmailOutcome(False, "shipment_not_found")
            logger.info(f"Tracking email for shipment {shipment_id} already claimed by another request")
            return TrackingEmailOutcome(False, "already_claimed")

        try:
            context = await self.orders.get_tracking_email_context(
                order_id,
                tracking_number=row.tracking_number,
                carrier=row.carrier,
                service=row.service,
                label_url=row.label_url,
            )
        except Exception as e:
            logger.error(f"Loading tracking email context failed for shipment {shipment_id}: {e}")
            context = None
        if context is None:
            await self.release(order_id, shipment_id, claimed_at)
            return TrackingEmailOutcome(False, "missing_email_context")

        email = build_tracking_email(context, self.site_url)
        try:
            result = await self.sender.send(context.to_email, email.subject, email.text, email.html_body)
            error = None if result.success else (result.error or "send failed")
        except Exception as e:
            error = str(e)
        if error is not None:
            await self.release(order_id, shipment_id, claimed_at)
            logger.error(f"[tracking-email] send failed order={order_id} shipment={shipment_id}: {error}")
            return TrackingEmailOutcome(False, "email_send_failed")

        logger.info(f"[tracking-email] sent order={order_id} shipment={shipment_id}")
        return TrackingEmailOutcome(True)
