from __future__ import annotations

from functools import lru_cache

from sandboxproxy.core.config import get_settings
from sandboxproxy.providers.storage.base import ObjectStore
from sandboxproxy.providers.storage.fake import FakeObjectStore
from sandboxproxy.providers.storage.gcs import GcsObjectStore


@lru_cache
def get_object_store() -> ObjectStore:
    settings = get_settings()
    provider = (settings.storage_provider or "gcs").lower()

    if provider == "fake":
        return FakeObjectStore()
    return GcsObjectStore(settings)
