from __future__ import annotations

from functools import lru_cache

from sandboxproxy.core.config import get_settings
from sandboxproxy.providers.orchestrator.base import Orchestrator
from sandboxproxy.providers.orchestrator.fake import FakeOrchestrator
from sandboxproxy.providers.orchestrator.kubernetes import KubernetesOrchestrator


@lru_cache
def get_orchestrator() -> Orchestrator:
    settings = get_settings()
    provider = (settings.orchestrator_provider or "kubernetes").lower()

    if provider == "fake":
        return FakeOrchestrator()
    return KubernetesOrchestrator(settings)
