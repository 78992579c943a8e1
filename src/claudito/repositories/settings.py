"""Application settings persisted as JSON."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic.alias_generators import to_camel

from ..models import Settings
from .storage import read_json, write_json


class SettingsRepository:
    def __init__(self, data_dir: Path):
        self.file = data_dir / "settings.json"

    def get(self) -> Settings:
        data = read_json(self.file)
        if data is None:
            return Settings()
        return Settings.model_validate(data)

    def update(self, **changes: Any) -> Settings:
        """Merge non-None values into the stored settings.

        ``claude_permissions`` may be partial; its keys are merged into the
        current permissions instead of replacing them.
        """
        current = self.get().to_api()
        patch = Settings.model_validate({**current, **_partial(changes, current)})
        write_json(self.file, patch.to_api())
        return patch


def _partial(changes: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for key, value in changes.items():
        if value is None:
            continue
        alias = Settings.model_fields[key].alias or key
        if key == "claude_permissions":
            partial = {(to_camel(k) if "_" in k else k): v for k, v in _dump(value).items()}
            merged[alias] = {**current.get(alias, {}), **partial}
        else:
            merged[alias] = _dump(value)
    return merged


def _dump(value: Any) -> Any:
    if hasattr(value, "to_api"):
        return value.to_api()
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return value
