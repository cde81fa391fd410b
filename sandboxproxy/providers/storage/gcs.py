from __future__ import annotations

import logging
from typing import Any, Callable

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage

from sandboxproxy.core.config import Settings, get_settings
from sandboxproxy.core.errors import StorageError
from sandboxproxy.services.resilience import call_blocking


logger = logging.getLogger(__name__)

_INTEGRATION = "storage.gcs"
# Zero-byte object that makes a prefix show up as a folder in the console and gcsfuse.
_FOLDER_CONTENT_TYPE = "application/x-directory"


class GcsObjectStore:
    def __init__(self, settings: Settings | None = None, *, client: Any | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _bucket(self) -> Any:
        if self._client is None:
            # Uses application default credentials (workload identity in cluster).
            try:
                self._client = storage.Client(project=self._settings.google_cloud_project)
            except auth_exceptions.DefaultCredentialsError as exc:
                raise StorageError(f"Object store credentials unavailable: {exc}") from exc
        return self._client.bucket(self._settings.gcs_bucket_name)

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        timeout_ms = self._settings.storage_timeout_ms
        try:
            return await call_blocking(
                func,
                *args,
                integration=_INTEGRATION,
                timeout_ms=timeout_ms,
                timeout=timeout_ms / 1000.0,
                **kwargs,
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise StorageError(str(exc), status=getattr(exc, "code", None)) from exc
        except (google_exceptions.RetryError, auth_exceptions.TransportError) as exc:
            raise StorageError(f"Object store unreachable: {exc}") from exc
        except TimeoutError as exc:
            raise StorageError(f"Object store call timed out after {timeout_ms}ms") from exc
        except OSError as exc:
            raise StorageError(f"Object store unreachable: {exc}") from exc

    async def ensure_folder(self, path: str) -> bool:
        blob = self._bucket().blob(f"{path.rstrip('/')}/")
        if await self._call(blob.exists):
            return False
        await self._call(blob.upload_from_string, "", content_type=_FOLDER_CONTENT_TYPE)
        logger.info("storage_folder_created bucket=%s path=%s", self._settings.gcs_bucket_name, path)
        return True
