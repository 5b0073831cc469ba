"""
Tests for environment-driven settings.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from sheetsbase.core.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("PORT", "SPREADSHEET_ID", "GOOGLE_SERVICE_ACCOUNT_FILE",
                     "CACHE_TTL", "CACHE_CHECK_PERIOD", "CACHE_BACKEND"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)

        assert settings.port == 3000
        assert settings.cache_ttl == 300
        assert settings.cache_check_period == 60
        assert settings.cache_backend == "memory"
        assert settings.sheets_configured is False

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SPREADSHEET_ID", "sheet-123")
        monkeypatch.setenv("GOOGLE_SERVICE_ACCOUNT_FILE", "/keys/sa.json")
        monkeypatch.setenv("CACHE_CHECK_PERIOD", "15")

        settings = Settings(_env_file=None)

        assert settings.sheets_configured is True
        assert settings.cache_check_period == 15

    def test_credentials_path_expands_home(self, monkeypatch):
        monkeypatch.setenv("HOME", "/home/sheets")
        settings = Settings(_env_file=None, google_service_account_file="~/sa.json")
        assert settings.google_service_account_file == "/home/sheets/sa.json"

    @pytest.mark.parametrize("field,value", [("cache_ttl", 0), ("cache_check_period", 0), ("port", 70000)])
    def test_bounds(self, field, value):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, **{field: value})
