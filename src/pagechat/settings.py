import logging
from typing import Any

from pydantic import ValidationError, field_validator
from pydantic.alias_generators import to_camel

from pagechat.errors import PreconditionError
from pagechat.models import TriggerMode, _Record
from pagechat.storage import KeyValueStore

logger = logging.getLogger(__name__)

SETTINGS_KEY = "user_preferences"


class UserPreferences(_Record):
    temperature: float = 0.5
    is_page_scraping_enabled: bool = True
    is_web_search_enabled: bool = False
    model_name: str = "gpt-4.1-nano"
    trigger_mode: TriggerMode = TriggerMode.MANUAL
    api_key: str | None = None

    @field_validator("temperature", mode="before")
    @classmethod
    def clamp_temperature(cls, value: Any) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, value))

    @field_validator("trigger_mode", mode="before")
    @classmethod
    def parse_trigger_mode(cls, value: Any) -> TriggerMode:
        return TriggerMode.parse(value)

    def public(self) -> dict[str, Any]:
        data = self.to_store()
        data.pop("apiKey", None)
        data["hasApiKey"] = bool(self.api_key)
        return data


class SettingsStore:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def get(self) -> UserPreferences:
        raw = self.kv.get(SETTINGS_KEY) or {}
        try:
            return UserPreferences.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Stored preferences are invalid ({e.error_count()} errors); using defaults")
            return UserPreferences()

    def update(self, changes: dict[str, Any]) -> UserPreferences:
        current = self.get().model_dump()
        names = {to_camel(n): n for n in UserPreferences.model_fields}
        for key, value in changes.items():
            current[names.get(key, key)] = value
        try:
            prefs = UserPreferences.model_validate(current)
        except ValidationError as e:
            raise PreconditionError(f"Invalid preferences: {e}") from e
        self.kv.set(SETTINGS_KEY, prefs.to_store())
        logger.debug(f"Updated preferences: {', '.join(sorted(changes))}")
        return prefs

    def reset(self) -> UserPreferences:
        self.kv.remove(SETTINGS_KEY)
        return UserPreferences()
