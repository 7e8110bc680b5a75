"""
Tests for quoting, buying and refreshing shipment labels.

Easyship is an AsyncMock; the database is real SQLite so the purchase and
tracking-email claims run as actual conditional UPDATEs.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from shipdesk.core.exceptions import (
    EasyshipAPIError,
    ShippingConflictError,
    ShippingNotFoundError,
    ShippingQuoteError,
    ShippingValidationError,
)
from shipdesk.core.utils import utcnow
from shipdesk.services.easyship_client import NO_SHIPPING_SOLUTIONS_DETAIL
from shipdesk.services.label_purchase import NO_RATES_MESSAGE, LabelPurchaseService
from tests.helpers import (
    DESTINATION,
    fetch_shipment,
    make_rate,
    make_snapshot,
    sample_rates,
    seed_order,
    seed_preset,
    seed_scenario,
    seed_ship_from,
    seed_shipment,
)

TRACKING = "9400111899"


@pytest.fixture
def service(db, easyship_client, shipping_config, email_sender):
    easyship_client.get_rates.return_value = sample_rates()
    easyship_client.create_shipment_and_buy_label.return_value = make_snapshot()
    return LabelPurchaseService(db, easyship_client, shipping_config, email_sender)


def naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


class TestGetQuotes:
    @pytest.mark.asyncio
    async def test_cheapest_allowed_rate_selected(self, db, service, easyship_client, session_factory):
        await seed_scenario(db)

        outcome = await service.get_quotes("O1", "S1")
        await db.commit()

        assert [rate.id for rate in outcome.rates] == ["es-usps-priority", "es-fedex-home", "es-ups-ground"]
        assert outcome.selected_quote_id == "es-usps-priority"
        assert outcome.cached is False
        assert outcome.warning is None
        assert (await fetch_shipment(session_factory, "S1")).quote_selected_id == "es-usps-priority"

        request = easyship_client.get_rates.await_args.args[0]
        assert request.dimensions.length_in == 12
        assert request.destination.postal_code == "94105"
        assert request.origin.postal_code == "97201"
        assert request.items[0].quantity == 2

    @pytest.mark.asyncio
    async def test_second_call_is_cached(self, db, service, easyship_client):
        await seed_scenario(db)

        first = await service.get_quotes("O1", "S1")
        await db.commit()
        second = await service.get_quotes("O1", "S1")

        assert second.cached is True
        assert second.shipment_temp_key == first.shipment_temp_key
        assert easyship_client.get_rates.await_count == 1

    @pytest.mark.asyncio
    async def test_no_upstream_rates_is_a_warning(self, db, service, easyship_client, session_factory):
        await seed_scenario(db)
        await seed_shipment(db, shipment_id="S2", parcel_index=2, custom_length_in=5, custom_width_in=5,
                            custom_height_in=5, quote_selected_id="old")
        easyship_client.get_rates.return_value = []

        outcome = await service.get_quotes("O1", "S2")
        await db.commit()

        assert outcome.rates == []
        assert outcome.warning == NO_SHIPPING_SOLUTIONS_DETAIL
        assert outcome.selected_quote_id is None
        assert (await fetch_shipment(session_factory, "S2")).quote_selected_id is None

    @pytest.mark.asyncio
    async def test_all_rates_filtered_out(self, db, service, easyship_client):
        await seed_scenario(db)
        easyship_client.get_rates.return_value = [make_rate("es-dhl", "DHL Express", 500)]

        with pytest.raises(ShippingQuoteError) as exc_info:
            await service.get_quotes("O1", "S1")

        assert exc_info.value.code == "NO_QUOTES"
        assert exc_info.value.status_code == 422
        assert exc_info.value.details["detail"] == {"allowedCarriers": ["USPS", "UPS", "FEDEX"]}

    @pytest.mark.asyncio
    async def test_ship_from_incomplete(self, db, service, easyship_client):
        await seed_order(db)
        await seed_ship_from(db, ship_from_city="", ship_from_postal="")
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4)

        with pytest.raises(ShippingValidationError) as exc_info:
            await service.get_quotes("O1", "S1")

        assert exc_info.value.code == "SHIP_FROM_INCOMPLETE"
        assert exc_info.value.details["missing"] == ["shipFromCity", "shipFromPostal"]
        easyship_client.get_rates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_destination_incomplete(self, db, service, easyship_client):
        await seed_scenario(db, address={"name": "Jane Buyer", "line1": "500 Market St", "country": "US"})

        with pytest.raises(ShippingValidationError) as exc_info:
            await service.get_quotes("O1", "S1")

        assert exc_info.value.code == "DESTINATION_INCOMPLETE"
        easyship_client.get_rates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_partial_custom_dimensions(self, db, service, easyship_client):
        """Two of three custom values: PARCEL_INCOMPLETE for quotes and buy alike."""
        await seed_order(db)
        await seed_ship_from(db)
        preset = await seed_preset(db)
        await seed_shipment(db, box_preset_id=preset.id, custom_length_in=10, custom_width_in=8)

        with pytest.raises(ShippingValidationError) as quotes_error:
            await service.get_quotes("O1", "S1")
        with pytest.raises(ShippingValidationError) as buy_error:
            await service.buy_label("O1", "S1")

        assert quotes_error.value.code == "PARCEL_INCOMPLETE"
        assert buy_error.value.code == "PARCEL_INCOMPLETE"
        easyship_client.get_rates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_order_and_shipment(self, db, service):
        await seed_order(db)

        with pytest.raises(ShippingNotFoundError):
            await service.get_quotes("missing", "S1")
        with pytest.raises(ShippingNotFoundError):
            await service.get_quotes("O1", "missing")


class TestBuyLabel:
    @pytest.mark.asyncio
    async def test_buys_cheapest_and_persists(self, db, service, easyship_client, session_factory):
        await seed_scenario(db)

        outcome = await service.buy_label("O1", "S1")

        call = easyship_client.create_shipment_and_buy_label.await_args
        assert call.kwargs["courier_service_id"] == "es-usps-priority"
        assert call.kwargs["external_reference"] == "O1:S1"
        assert outcome.selected_quote_id == "es-usps-priority"
        assert outcome.refreshed is False
        assert outcome.pending_refresh is False
        assert outcome.tracking_email.skipped_reason == "tracking_missing"

        stored = await fetch_shipment(session_factory, "S1")
        assert stored.easyship_shipment_id == "ES-1"
        assert stored.easyship_label_id == "LBL-1"
        assert stored.label_state == "generated"
        assert stored.label_url == "https://labels.example.com/ES-1.pdf"
        assert stored.label_cost_amount_cents == 845
        assert stored.purchased_at is not None
        assert stored.purchase_claimed_at is None
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_explicit_quote(self, db, service, easyship_client):
        await seed_scenario(db)

        outcome = await service.buy_label("O1", "S1", quote_selected_id="es-ups-ground")

        assert easyship_client.create_shipment_and_buy_label.await_args.kwargs["courier_service_id"] == "es-ups-ground"
        assert outcome.shipment.quote_selected_id == "es-ups-ground"

    @pytest.mark.asyncio
    async def test_stored_selection_used(self, db, service, easyship_client):
        await seed_order(db)
        await seed_ship_from(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4,
                            quote_selected_id="es-fedex-home")

        await service.buy_label("O1", "S1")

        assert easyship_client.create_shipment_and_buy_label.await_args.kwargs["courier_service_id"] == "es-fedex-home"

    @pytest.mark.asyncio
    async def test_stale_stored_selection_falls_back_to_cheapest(self, db, service, easyship_client):
        await seed_order(db)
        await seed_ship_from(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4,
                            quote_selected_id="gone")

        await service.buy_label("O1", "S1")

        assert easyship_client.create_shipment_and_buy_label.await_args.kwargs["courier_service_id"] == "es-usps-priority"

    @pytest.mark.asyncio
    async def test_unknown_quote(self, db, service, easyship_client):
        await seed_scenario(db)

        with pytest.raises(ShippingNotFoundError) as exc_info:
            await service.buy_label("O1", "S1", quote_selected_id="nope")

        assert exc_info.value.code == "QUOTE_NOT_FOUND"
        easyship_client.create_shipment_and_buy_label.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_rates(self, db, service, easyship_client):
        await seed_scenario(db)
        easyship_client.get_rates.return_value = []

        with pytest.raises(ShippingValidationError) as exc_info:
            await service.buy_label("O1", "S1")

        assert exc_info.value.code == "NO_RATES"
        assert exc_info.value.message == NO_RATES_MESSAGE

    @pytest.mark.asyncio
    async def test_phone_required(self, db, service, easyship_client):
        address = {key: value for key, value in DESTINATION.items() if key != "phone"}
        await seed_scenario(db, address=address)

        quotes = await service.get_quotes("O1", "S1")
        with pytest.raises(ShippingValidationError) as exc_info:
            await service.buy_label("O1", "S1")

        assert quotes.rates
        assert exc_info.value.code == "DESTINATION_PHONE_REQUIRED"
        easyship_client.create_shipment_and_buy_label.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_carrier_and_service_fall_back_to_rate(self, db, service, easyship_client):
        await seed_scenario(db)
        easyship_client.create_shipment_and_buy_label.return_value = make_snapshot(carrier=None, service=" ")

        outcome = await service.buy_label("O1", "S1")

        assert outcome.shipment.carrier == "USPS"
        assert outcome.shipment.service == "Priority Mail"

    @pytest.mark.asyncio
    async def test_tracking_email_sent_on_first_tracking(self, db, service, easyship_client, email_sender, session_factory):
        await seed_scenario(db)
        easyship_client.create_shipment_and_buy_label.return_value = make_snapshot(tracking_number=TRACKING)

        outcome = await service.buy_label("O1", "S1")

        assert outcome.tracking_email.sent is True
        assert len(email_sender.sent) == 1
        assert (await fetch_shipment(session_factory, "S1")).tracking_email_sent_at is not None

    @pytest.mark.asyncio
    async def test_email_hook_error_does_not_fail_purchase(self, db, service, easyship_client, session_factory):
        await seed_scenario(db)
        easyship_client.create_shipment_and_buy_label.return_value = make_snapshot(tracking_number=TRACKING)
        service.notifier.maybe_send = AsyncMock(side_effect=RuntimeError("template exploded"))

        outcome = await service.buy_label("O1", "S1")

        assert outcome.tracking_email.sent is False
        assert outcome.tracking_email.skipped_reason == "email_hook_error"
        assert (await fetch_shipment(session_factory, "S1")).label_state == "generated"


class TestPurchaseGuards:
    @pytest.mark.asyncio
    async def test_generated_label_not_bought_again(self, db, service, easyship_client):
        await seed_order(db)
        await seed_ship_from(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4,
                            label_state="generated", purchased_at=utcnow(), easyship_shipment_id="ES-1")

        with pytest.raises(ShippingConflictError) as exc_info:
            await service.buy_label("O1", "S1")

        assert exc_info.value.code == "SHIPMENT_ALREADY_PURCHASED"
        assert exc_info.value.status_code == 409
        easyship_client.get_rates.assert_not_awaited()
        easyship_client.create_shipment_and_buy_label.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pending_purchase_needs_refresh(self, db, service, easyship_client, email_sender):
        purchased_at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        await seed_order(db)
        await seed_ship_from(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4,
                            purchased_at=purchased_at, easyship_shipment_id="ES-1")
        easyship_client.get_shipment.return_value = make_snapshot(tracking_number=TRACKING)

        with pytest.raises(ShippingConflictError) as exc_info:
            await service.buy_label("O1", "S1")
        assert exc_info.value.code == "LABEL_PENDING_USE_REFRESH"

        outcome = await service.buy_label("O1", "S1", refresh=True)

        easyship_client.get_shipment.assert_awaited_once_with("ES-1")
        easyship_client.create_shipment_and_buy_label.assert_not_awaited()
        assert outcome.refreshed is True
        assert outcome.shipment.label_state == "generated"
        assert outcome.shipment.tracking_number == TRACKING
        assert naive(outcome.shipment.purchased_at) == naive(purchased_at)
        assert outcome.tracking_email.sent is True
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_refresh_without_provider_id(self, db, service):
        await seed_order(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4, purchased_at=utcnow())

        with pytest.raises(ShippingConflictError) as exc_info:
            await service.buy_label("O1", "S1", refresh=True)

        assert exc_info.value.code == "MISSING_EASYSHIP_SHIPMENT"

    @pytest.mark.asyncio
    async def test_live_claim_blocks_purchase(self, db, service, easyship_client, session_factory):
        await seed_scenario(db)
        await seed_shipment(db, shipment_id="S2", parcel_index=2, custom_length_in=5, custom_width_in=5,
                            custom_height_in=5, purchase_claimed_at=utcnow())

        with pytest.raises(ShippingConflictError) as exc_info:
            await service.buy_label("O1", "S2")

        assert exc_info.value.code == "PURCHASE_IN_PROGRESS"
        easyship_client.create_shipment_and_buy_label.assert_not_awaited()
        assert (await fetch_shipment(session_factory, "S2")).purchase_claimed_at is not None

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, db, service, easyship_client):
        await seed_scenario(db)
        await seed_shipment(db, shipment_id="S2", parcel_index=2, custom_length_in=5, custom_width_in=5,
                            custom_height_in=5, purchase_claimed_at=utcnow() - timedelta(minutes=10))

        outcome = await service.buy_label("O1", "S2")

        assert outcome.shipment.label_state == "generated"
        assert outcome.shipment.purchase_claimed_at is None
        easyship_client.create_shipment_and_buy_label.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_claim_purchase_is_exclusive(self, db, service):
        await seed_scenario(db)
        now = utcnow()

        assert await service.claim_purchase("O1", "S1", now) is True
        assert await service.claim_purchase("O1", "S1", now + timedelta(seconds=1)) is False

        await service.release_purchase("O1", "S1", now)
        await db.commit()
        assert await service.claim_purchase("O1", "S1", now + timedelta(seconds=2)) is True


class TestPurchaseFailure:
    @pytest.mark.asyncio
    async def test_failure_keeps_provider_id_and_releases_claim(self, db, service, easyship_client, session_factory):
        await seed_scenario(db)
        easyship_client.create_shipment_and_buy_label.side_effect = EasyshipAPIError(
            "Easyship POST /shipments/ES-9/label failed (503): label service down",
            details={"status": 503, "easyship_shipment_id": "ES-9"},
        )

        with pytest.raises(EasyshipAPIError):
            await service.buy_label("O1", "S1")

        stored = await fetch_shipment(session_factory, "S1")
        assert stored.easyship_shipment_id == "ES-9"
        assert "label service down" in stored.error_message
        assert stored.quote_selected_id == "es-usps-priority"
        assert stored.label_state == "pending"
        assert stored.purchased_at is None
        assert stored.purchase_claimed_at is None

        easyship_client.get_shipment.return_value = make_snapshot(shipment_id="ES-9", tracking_number=TRACKING)
        outcome = await service.buy_label("O1", "S1", refresh=True)

        easyship_client.get_shipment.assert_awaited_once_with("ES-9")
        assert outcome.refreshed is True
        assert outcome.shipment.label_state == "generated"
        assert outcome.shipment.purchased_at is not None
        assert outcome.shipment.error_message is None

    @pytest.mark.asyncio
    async def test_failure_without_provider_id_can_be_retried(self, db, service, easyship_client):
        await seed_scenario(db)
        easyship_client.create_shipment_and_buy_label.side_effect = [
            EasyshipAPIError("Network error: connection reset", code="NETWORK_ERROR"),
            make_snapshot(),
        ]

        with pytest.raises(EasyshipAPIError):
            await service.buy_label("O1", "S1")
        outcome = await service.buy_label("O1", "S1")

        assert outcome.shipment.label_state == "generated"
        assert easyship_client.create_shipment_and_buy_label.await_count == 2
        assert easyship_client.get_rates.await_count == 1


class TestRefreshLabelStatus:
    @pytest.mark.asyncio
    async def test_nothing_to_refresh(self, db, service, easyship_client):
        await seed_order(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4)
        await seed_shipment(db, shipment_id="S2", parcel_index=2, custom_length_in=10, custom_width_in=8,
                            custom_height_in=4, easyship_shipment_id="ES-2", label_state="generated",
                            purchased_at=utcnow(), label_url="https://labels.example.com/ES-2.pdf",
                            tracking_number=TRACKING)

        first = await service.refresh_label_status("O1", "S1")
        second = await service.refresh_label_status("O1", "S2")

        assert first.refreshed is False
        assert second.refreshed is False
        assert first.tracking_email is None
        easyship_client.get_shipment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_never_downgrades(self, db, service, easyship_client):
        purchased_at = datetime(2026, 1, 2, tzinfo=timezone.utc)
        await seed_order(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4,
                            easyship_shipment_id="ES-1", label_state="generated", purchased_at=purchased_at,
                            label_url="https://labels.example.com/ES-1.pdf", carrier="USPS")
        easyship_client.get_shipment.return_value = make_snapshot(
            label_state="pending", label_url=None, carrier=None, label_id=None, label_cost_amount_cents=None,
        )

        outcome = await service.refresh_label_status("O1", "S1")

        assert outcome.refreshed is True
        assert outcome.shipment.label_state == "generated"
        assert outcome.shipment.label_url == "https://labels.example.com/ES-1.pdf"
        assert outcome.shipment.carrier == "USPS"
        assert naive(outcome.shipment.purchased_at) == naive(purchased_at)
        assert outcome.tracking_email.skipped_reason == "tracking_missing"

    @pytest.mark.asyncio
    async def test_pending_snapshot_keeps_pending_refresh(self, db, service, easyship_client):
        await seed_order(db)
        await seed_shipment(db, custom_length_in=10, custom_width_in=8, custom_height_in=4,
                            easyship_shipment_id="ES-1", purchased_at=utcnow())
        easyship_client.get_shipment.return_value = make_snapshot(label_state="pending", label_url=None)

        outcome = await service.refresh_label_status("O1", "S1")

        assert outcome.shipment.label_state == "pending"
        assert outcome.pending_refresh is True


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_quote_buy_then_tracking_arrives(self, db, service, easyship_client, email_sender):
        """Label first, tracking number later: exactly one email."""
        await seed_scenario(db)

        quotes = await service.get_quotes("O1", "S1")
        await db.commit()
        bought = await service.buy_label("O1", "S1")

        assert quotes.selected_quote_id == "es-usps-priority"
        assert bought.shipment.label_state == "generated"
        assert bought.shipment.tracking_number is None
        assert bought.tracking_email.skipped_reason == "tracking_missing"
        assert email_sender.sent == []

        easyship_client.get_shipment.return_value = make_snapshot(tracking_number=TRACKING)
        status = await service.refresh_label_status("O1", "S1")

        assert status.refreshed is True
        assert status.shipment.tracking_number == TRACKING
        assert status.tracking_email.sent is True
        assert len(email_sender.sent) == 1

        again = await service.buy_label("O1", "S1", refresh=True)

        assert again.tracking_email.skipped_reason == "previous_tracking_exists"
        assert len(email_sender.sent) == 1
        assert easyship_client.get_rates.await_count == 1
        assert easyship_client.create_shipment_and_buy_label.await_count == 1
