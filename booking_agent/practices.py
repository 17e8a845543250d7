"""Read-only practice directory.

Practice setup (NexHealth subdomain and location, providers, operatories,
and which appointment types may be booked by voice) is managed outside this
service.  It is loaded once at start-up from a JSON file shaped like
``practices.example.json``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from booking_agent.errors import ConfigurationError

logger = logging.getLogger(__name__)


class AppointmentTypeSettings(BaseModel):
    """Voice-booking settings the practice attaches to one NexHealth type."""

    model_config = ConfigDict(frozen=True)

    appointment_type_id: str
    spoken_name: str | None = None
    keywords: tuple[str, ...] = ()
    urgent: bool = False
    bookable_online: bool = True


class PracticeConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    practice_id: str
    name: str
    assistant_ids: tuple[str, ...] = ()
    nexhealth_subdomain: str | None = None
    nexhealth_location_id: str | None = None
    timezone: str = "America/Chicago"
    provider_ids: tuple[str, ...] = ()
    operatory_ids: tuple[str, ...] = ()
    default_provider_id: str | None = None
    appointment_types: tuple[AppointmentTypeSettings, ...] = Field(default_factory=tuple)

    @property
    def is_scheduling_configured(self) -> bool:
        return bool(self.nexhealth_subdomain and self.nexhealth_location_id and self.provider_ids)

    @property
    def booking_provider_id(self) -> str | None:
        """Provider new patients are registered against."""
        if self.default_provider_id:
            return self.default_provider_id
        return self.provider_ids[0] if self.provider_ids else None

    def type_settings(self, appointment_type_id: str) -> AppointmentTypeSettings | None:
        for settings in self.appointment_types:
            if settings.appointment_type_id == appointment_type_id:
                return settings
        return None


class PracticeDirectory:
    """Lookup of configured practices by id or by voice-assistant id."""

    def __init__(self, practices: list[PracticeConfig] | tuple[PracticeConfig, ...] = ()):
        self._by_id = {p.practice_id: p for p in practices}
        self._by_assistant = {
            assistant_id: p for p in practices for assistant_id in p.assistant_ids
        }

    @classmethod
    def from_file(cls, path: str | Path) -> PracticeDirectory:
        """Load practices from a JSON file (a list, or ``{"practices": [...]}``)."""
        path = Path(path)
        if not path.exists():
            logger.warning("Practice file %s not found; directory is empty", path)
            return cls()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Practice file {path} is not valid JSON: {exc}") from exc
        entries = raw.get("practices", []) if isinstance(raw, dict) else raw
        practices = [PracticeConfig.model_validate(entry) for entry in entries]
        logger.info("Loaded %d practice(s) from %s", len(practices), path)
        return cls(practices)

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, practice_id: str) -> PracticeConfig | None:
        return self._by_id.get(practice_id)

    def for_assistant(self, assistant_id: str | None) -> PracticeConfig | None:
        """Resolve the practice behind a voice assistant.

        A directory holding a single practice answers for every assistant.
        """
        if assistant_id and assistant_id in self._by_assistant:
            return self._by_assistant[assistant_id]
        if len(self._by_id) == 1:
            return next(iter(self._by_id.values()))
        return None

    def resolve(self, practice_id: str | None, assistant_id: str | None) -> PracticeConfig | None:
        if practice_id:
            practice = self.get(practice_id)
            if practice is not None:
                return practice
        return self.for_assistant(assistant_id)
