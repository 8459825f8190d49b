"""Tests for the persisted monitor settings."""
import pytest
from pydantic import ValidationError

from ipwhat.db import SETTINGS_NAMESPACE, KeyValueRepository
from ipwhat.models import MonitorSettingsUpdate
from ipwhat.services.settings import SettingsService


class TestSettingsService:
    async def test_defaults_come_from_config(self, db):
        service = SettingsService(KeyValueRepository(db))
        settings = await service.get()
        assert settings.ipv4_target == "1.1.1.1"
        assert settings.timeout_ms == 5000
        assert settings.dns_fqdn == "www.cloudflare.com"

    async def test_update_merges_and_persists(self, db):
        service = SettingsService(KeyValueRepository(db))
        await service.update(MonitorSettingsUpdate(timeout_ms=2000))
        await service.update({"ipv4_target": "9.9.9.9"})

        reread = await SettingsService(KeyValueRepository(db)).get()
        assert reread.timeout_ms == 2000
        assert reread.ipv4_target == "9.9.9.9"
        assert reread.ipv6_target == "2606:4700:4700::1111"

    async def test_invalid_update_is_rejected_and_not_saved(self, db):
        service = SettingsService(KeyValueRepository(db))
        with pytest.raises(ValidationError):
            await service.update({"ipv6_target": "not-an-address"})
        assert (await service.get()).ipv6_target == "2606:4700:4700::1111"

    async def test_unknown_field_rejected(self, db):
        service = SettingsService(KeyValueRepository(db))
        with pytest.raises(ValueError, match="unknown settings"):
            await service.update({"interval": 5})

    async def test_corrupt_stored_field_falls_back_to_default(self, db):
        repo = KeyValueRepository(db)
        await repo.set(SETTINGS_NAMESPACE, {"timeout_ms": -5, "dns_fqdn": "example.org"})

        settings = await SettingsService(repo).get()
        assert settings.timeout_ms == 5000
        assert settings.dns_fqdn == "example.org"

    async def test_env_defaults(self, db, monkeypatch):
        from ipwhat.config import get_settings

        monkeypatch.setenv("PROBE_IPV6_TARGET", "")
        get_settings.cache_clear()
        settings = await SettingsService(KeyValueRepository(db)).get()
        assert settings.ipv6_target == ""
