import json
import logging
from pathlib import Path
from typing import Any, Dict

import src.settings as default_settings

log = logging.getLogger(__name__)


class MergedSettings:
    """
    A singleton class that merges default settings with JSON/env overrides.

    This class provides a unified, attribute-based access point for all
    supervisor configuration. It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from `.env` file (handled by `python-dotenv` in settings.py).
    3. Overrides from `overrides.json` for settings in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self, overrides_path: Path = None) -> None:
        """
        Initializes the settings object by loading defaults and overrides.

        :param overrides_path: Optional path to an overrides file, mainly for tests.
        """
        self._load_defaults()
        if overrides_path is not None:
            self.OVERRIDES_JSON_PATH = Path(overrides_path)
        self._load_overrides()

    def _load_defaults(self) -> None:
        """
        Loads all uppercase attributes from the settings.py module as defaults.
        """
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    def _load_overrides(self) -> None:
        """
        Loads and applies settings from the `overrides.json` file.

        It will only apply overrides for keys that are explicitly listed in
        the `MODIFIABLE_SETTINGS` set in `settings.py`.
        """
        if not self.OVERRIDES_JSON_PATH.exists():
            return

        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(
                f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}"
            )
            return

        log.info(f"Loading runtime configuration overrides from {self.OVERRIDES_JSON_PATH}")
        for key, value in overrides.items():
            if not hasattr(self, key):
                log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                continue
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                continue

            # Coerce path strings back to Path objects if necessary
            if isinstance(getattr(self, key), Path):
                setattr(self, key, Path(value))
            elif isinstance(getattr(self, key), bool):
                setattr(self, key, str(value).lower() in ("true", "1", "t"))
            else:
                setattr(self, key, value)
            log.debug(f"Overridden setting: {key} = {value}")

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return getattr(self, item, default)

    def as_dict(self) -> Dict[str, Any]:
        """Returns every uppercase setting as a plain dictionary."""
        return {key: getattr(self, key) for key in dir(self) if key.isupper()}


# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
