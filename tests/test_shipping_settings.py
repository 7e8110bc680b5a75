"""
Tests for ship-from settings and box presets.
"""
import pytest
from pydantic import ValidationError

from shipdesk.core.exceptions import ShippingConflictError, ShippingNotFoundError, ShippingValidationError
from shipdesk.core.utils import utcnow
from shipdesk.models.shipment import OrderShipment
from shipdesk.schemas.shipping import BoxPresetCreate, BoxPresetUpdate, ShipFromSettingsUpdate
from shipdesk.services.shipping_settings import ShippingSettingsService, ship_from_to_address, validate_ship_from
from tests.helpers import SHIP_FROM, fetch_shipment, seed_order, seed_preset, seed_shipment


def ship_from_update(**overrides) -> ShipFromSettingsUpdate:
    values = dict(SHIP_FROM)
    values.update(overrides)
    return ShipFromSettingsUpdate(**values)


class TestShipFrom:
    @pytest.mark.asyncio
    async def test_defaults_report_missing(self, db):
        settings = await ShippingSettingsService(db).get_ship_from()

        assert settings.ship_from_country == "US"
        assert validate_ship_from(settings) == [
            "shipFromName", "shipFromAddress1", "shipFromCity", "shipFromState", "shipFromPostal",
        ]

    @pytest.mark.asyncio
    async def test_update_persists(self, db):
        service = ShippingSettingsService(db)

        await service.update_ship_from(ship_from_update(ship_from_state="or"))
        await db.commit()
        settings = await service.get_ship_from()

        assert settings.ship_from_city == "Portland"
        assert settings.ship_from_state == "OR"
        assert validate_ship_from(settings) == []

    @pytest.mark.asyncio
    async def test_update_overwrites(self, db):
        service = ShippingSettingsService(db)
        await service.update_ship_from(ship_from_update())
        await db.commit()

        await service.update_ship_from(ship_from_update(ship_from_city="Salem"))
        await db.commit()

        assert (await service.get_ship_from()).ship_from_city == "Salem"

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, db):
        with pytest.raises(ShippingValidationError) as exc_info:
            await ShippingSettingsService(db).update_ship_from(ship_from_update(ship_from_name="  ", ship_from_postal=None))

        assert exc_info.value.code == "INVALID_INPUT"
        assert exc_info.value.details["missing"] == ["shipFromName", "shipFromPostal"]

    @pytest.mark.asyncio
    async def test_invalid_us_state(self, db):
        with pytest.raises(ShippingValidationError):
            await ShippingSettingsService(db).update_ship_from(ship_from_update(ship_from_state="ZZ"))

    @pytest.mark.asyncio
    async def test_non_us_state_free_text(self, db):
        settings = await ShippingSettingsService(db).update_ship_from(
            ship_from_update(ship_from_country="ca", ship_from_state="Ontario")
        )

        assert settings.ship_from_country == "CA"
        assert settings.ship_from_state == "Ontario"

    def test_country_must_be_two_letters(self):
        with pytest.raises(ValidationError):
            ship_from_update(ship_from_country="USA")

    def test_accepts_camel_case(self):
        data = ShipFromSettingsUpdate.model_validate({"shipFromName": " Dock ", "shipFromCountry": "us"})
        assert data.ship_from_name == "Dock"
        assert data.ship_from_country == "US"

    def test_address_conversion(self):
        address = ship_from_to_address(ship_from_update())
        assert address.address_line2 is None
        assert address.phone == "5035550100"
        assert address.to_rates_format()["contact_name"] == "Shipdesk Warehouse"


class TestBoxPresets:
    @pytest.mark.asyncio
    async def test_create_and_list_by_name(self, db):
        service = ShippingSettingsService(db)

        await service.create_box_preset(BoxPresetCreate(name="Small", length_in=6, width_in=4, height_in=2))
        await service.create_box_preset(BoxPresetCreate(name=" Large ", length_in=20.12345, width_in=16, height_in=12, default_weight_lb=5))
        presets = await service.list_box_presets()

        assert [p.name for p in presets] == ["Large", "Small"]
        assert presets[0].length_in == 20.123
        assert presets[1].default_weight_lb is None

    def test_dimensions_must_be_positive(self):
        with pytest.raises(ValidationError):
            BoxPresetCreate(name="Flat", length_in=10, width_in=8, height_in=0)
        with pytest.raises(ValidationError):
            BoxPresetCreate(name="", length_in=10, width_in=8, height_in=1)

    @pytest.mark.asyncio
    async def test_update(self, db):
        preset = await seed_preset(db)
        service = ShippingSettingsService(db)

        updated = await service.update_box_preset(
            preset.id, BoxPresetUpdate(name="Medium+", length_in=13, width_in=9, height_in=6)
        )

        assert updated.name == "Medium+"
        assert updated.length_in == 13
        assert updated.default_weight_lb is None

    @pytest.mark.asyncio
    async def test_update_unknown(self, db):
        with pytest.raises(ShippingNotFoundError):
            await ShippingSettingsService(db).update_box_preset(
                "missing", BoxPresetUpdate(name="X", length_in=1, width_in=1, height_in=1)
            )

    @pytest.mark.asyncio
    async def test_delete_in_use_by_purchased(self, db):
        await seed_order(db)
        preset = await seed_preset(db)
        await seed_shipment(db, box_preset_id=preset.id, purchased_at=utcnow(), label_state="generated")

        with pytest.raises(ShippingConflictError) as exc_info:
            await ShippingSettingsService(db).delete_box_preset(preset.id)

        assert exc_info.value.code == "PRESET_IN_USE"
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_delete_converts_pending_parcels(self, db, session_factory):
        await seed_order(db)
        preset = await seed_preset(db)
        await seed_shipment(db, box_preset_id=preset.id)
        service = ShippingSettingsService(db)

        await service.delete_box_preset(preset.id)
        await db.commit()

        shipment = await fetch_shipment(session_factory, "S1")
        assert shipment.box_preset_id is None
        assert (shipment.custom_length_in, shipment.custom_width_in, shipment.custom_height_in) == (12, 9, 6)
        assert await service.list_box_presets() == []

    @pytest.mark.asyncio
    async def test_delete_unknown(self, db):
        with pytest.raises(ShippingNotFoundError):
            await ShippingSettingsService(db).delete_box_preset("missing")
