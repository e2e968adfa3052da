import json
import logging
import os
import time
from typing import Optional

from core.config import ProviderSettings

logger = logging.getLogger(__name__)

STORAGE_KEY = "aiProviderSettings"


class SettingsStore:
    """JSON-file storage for provider settings.

    Read/write failures are logged and never raised: a broken settings file
    must not abort an in-flight AI operation. Last writer wins.
    """

    def __init__(self, storage_path: str = "data/ai_provider_settings.json"):
        self.storage_path = storage_path

    def load(self) -> Optional[ProviderSettings]:
        if not os.path.exists(self.storage_path):
            return None
        try:
            with open(self.storage_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return ProviderSettings.model_validate(data.get(STORAGE_KEY, {}))
        except (json.JSONDecodeError, OSError, ValueError) as e:
            logger.error(f"Error loading settings from {self.storage_path}: {e}")
            return None

    def save(self, settings: ProviderSettings) -> bool:
        try:
            settings.last_updated = time.time()
            directory = os.path.dirname(self.storage_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.storage_path, "w", encoding="utf-8") as f:
                json.dump({STORAGE_KEY: settings.to_storage()}, f, indent=4, ensure_ascii=False)
            return True
        except (OSError, TypeError) as e:
            logger.error(f"Error saving settings to {self.storage_path}: {e}")
            return False


class MemorySettingsStore(SettingsStore):
    """Non-durable store; used when no settings path is configured."""

    def __init__(self, initial: Optional[ProviderSettings] = None):
        super().__init__(storage_path="")
        self._data = initial.to_storage() if initial else None

    def load(self) -> Optional[ProviderSettings]:
        if self._data is None:
            return None
        return ProviderSettings.model_validate(self._data)

    def save(self, settings: ProviderSettings) -> bool:
        settings.last_updated = time.time()
        self._data = settings.to_storage()
        return True
