from __future__ import annotations

from typing import Protocol


class ObjectStore(Protocol):
    async def ensure_folder(self, path: str) -> bool:
        """Create the folder placeholder ``<path>/`` unless present; return True when created."""
        ...
