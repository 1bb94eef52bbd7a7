import json
from copy import deepcopy
from threading import Lock
from typing import Any, Optional

from src.core.errors import ConfigurationError
from src.core.matching.config import DEFAULT_MATCHING_SETTINGS


class EnvJsonMatchingSettingsStore:
    """Admin settings document seeded from ``MATCHING_SETTINGS_JSON``.

    An unset variable means the documented default document. A value that is
    not a JSON object is kept as a load failure so every run that snapshots
    the settings fails with ``ConfigurationError`` instead of falling back.
    """

    def __init__(self, *, settings_json: Optional[str]) -> None:
        self._lock = Lock()
        self._error: Optional[str] = None
        self._settings: Optional[dict[str, Any]] = None
        normalized_json = (settings_json or "").strip()
        if not normalized_json:
            self._settings = deepcopy(DEFAULT_MATCHING_SETTINGS)
            return
        try:
            raw = json.loads(normalized_json)
        except json.JSONDecodeError as exc:
            self._error = f"MATCHING_SETTINGS_JSON_INVALID: {exc.msg}"
            return
        if not isinstance(raw, dict):
            self._error = "MATCHING_SETTINGS_JSON_INVALID: expected an object"
            return
        self._settings = raw

    def get_raw(self) -> Optional[dict[str, Any]]:
        with self._lock:
            if self._error is not None:
                raise ConfigurationError(self._error)
            return deepcopy(self._settings)

    def replace(self, settings: dict[str, Any]) -> None:
        with self._lock:
            self._settings = deepcopy(settings)
            self._error = None
