"""User-editable monitor settings stored in the ``settings`` namespace."""

from typing import Any

import structlog
from pydantic import ValidationError

from ..config import get_settings
from ..db.repository import SETTINGS_NAMESPACE, KeyValueRepository
from ..models import MonitorSettings, MonitorSettingsUpdate

log = structlog.get_logger()

FIELDS = tuple(MonitorSettings.model_fields)


class SettingsService:
    """Get-with-defaults and merge-set over the persisted settings.

    Nothing is cached: every call reads the store, so a change saved between
    cycles is picked up by the next one.
    """

    def __init__(self, repo: KeyValueRepository | None = None) -> None:
        self._repo = repo or KeyValueRepository()

    def defaults(self) -> dict[str, Any]:
        probe = get_settings().probe
        return {field: getattr(probe, field) for field in FIELDS}

    async def get(self) -> MonitorSettings:
        defaults = self.defaults()
        stored = await self._repo.get(SETTINGS_NAMESPACE, defaults)
        values = {field: stored[field] for field in FIELDS}

        try:
            return MonitorSettings(**values)
        except ValidationError as e:
            log.warning("settings_invalid", errors=e.errors(include_url=False))

        # Keep every stored value that validates on its own
        merged = dict(defaults)
        for field in FIELDS:
            try:
                MonitorSettings(**{**merged, field: values[field]})
            except ValidationError:
                log.warning("settings_field_reset", field=field, value=values[field])
                continue
            merged[field] = values[field]
        return MonitorSettings(**merged)

    async def update(self, changes: MonitorSettingsUpdate | dict[str, Any]) -> MonitorSettings:
        """Validate and merge ``changes``; raises ValidationError when invalid."""
        if isinstance(changes, MonitorSettingsUpdate):
            changes = changes.model_dump(exclude_none=True)

        current = await self.get()
        unknown = set(changes) - set(FIELDS)
        if unknown:
            raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")

        updated = MonitorSettings(**{**current.model_dump(), **changes})
        await self._repo.set(SETTINGS_NAMESPACE, updated.model_dump())
        log.info("settings_updated", changed=sorted(changes))
        return updated
