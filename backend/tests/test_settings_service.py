from decimal import Decimal

import pytest

from canteen.errors import ValidationError
from canteen.extensions import db
from canteen.models import SystemSetting
from canteen.services import settings_service


class TestSettingsService:

    def test_defaults_without_rows(self, db_session):
        orders = settings_service.get_order_settings()
        assert orders.service_charge_percent == Decimal("0")
        assert orders.default_gst_type == "EXCLUDE"
        assert "cash" in orders.pos_paid_methods

    def test_update_persists_and_refreshes_cache(self, db_session, operator):
        settings_service.update_section("orders", {"service_charge_percent": "7.5", "pos_paid_methods": ["CASH"]},
                                        user_id=operator.id)
        orders = settings_service.get_order_settings()
        assert orders.service_charge_percent == Decimal("7.5")
        assert orders.pos_paid_methods == ("cash",)

        row = SystemSetting.query.filter_by(section="orders").one()
        assert row.value["service_charge_percent"] == "7.5"
        assert row.updated_by_user_id == operator.id

    def test_reload_picks_up_external_changes(self, db_session):
        db.session.add(SystemSetting(section="sms", value={"provider": "msg91", "api_key": "k", "enabled": True}))
        db.session.commit()
        assert settings_service.get_settings("sms").provider is None

        reloaded = settings_service.reload_settings()
        assert settings_service.get_settings("sms").provider == "msg91"
        assert reloaded["sms"]["api_key"] == settings_service.REDACTED

    def test_invalid_stored_section_falls_back_to_defaults(self, db_session):
        db.session.add(SystemSetting(section="orders", value={"service_charge_percent": "lots"}))
        db.session.commit()
        settings_service.reload_settings()
        assert settings_service.get_order_settings().service_charge_percent == Decimal("0")

    @pytest.mark.parametrize("section,values", [
        ("orders", {"service_charge_percent": "150"}),
        ("orders", {"default_gst_type": "MAYBE"}),
        ("orders", {"pos_paid_methods": "cash"}),
        ("mail", {"smtp": "x"}),
        ("payroll", {}),
    ])
    def test_rejects_bad_values(self, db_session, section, values):
        with pytest.raises(ValidationError):
            settings_service.update_section(section, values)

    def test_redaction_leaves_empty_secrets(self, db_session):
        redacted = settings_service.all_settings_redacted()
        assert redacted["mail"]["password"] is None
        assert redacted["object_store"]["secret_access_key"] is None
        assert redacted["orders"]["service_charge_percent"] == "0"
