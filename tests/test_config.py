"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from practice_os.config import Settings


class TestTenantTimezone:
    def test_defaults_to_utc(self):
        assert Settings(_env_file=None).tenant_timezone == "UTC"

    def test_iana_zone_accepted(self):
        settings = Settings(_env_file=None, tenant_timezone="America/New_York")
        assert settings.tenant_timezone == "America/New_York"

    @pytest.mark.parametrize("zone", ["Mars/Olympus_Mons", "EST+5"])
    def test_unknown_zone_rejected(self, zone):
        with pytest.raises(ValidationError, match="Unknown IANA timezone"):
            Settings(_env_file=None, tenant_timezone=zone)

    def test_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("TENANT_TIMEZONE", "Europe/Berlin")
        assert Settings(_env_file=None).tenant_timezone == "Europe/Berlin"
