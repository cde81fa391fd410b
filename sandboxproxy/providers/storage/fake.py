from __future__ import annotations

from sandboxproxy.core.errors import StorageError


class FakeObjectStore:
    def __init__(self) -> None:
        self.objects: set[str] = set()
        self.fail_with: StorageError | None = None

    async def ensure_folder(self, path: str) -> bool:
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        placeholder = f"{path.rstrip('/')}/"
        if placeholder in self.objects:
            return False
        self.objects.add(placeholder)
        return True
