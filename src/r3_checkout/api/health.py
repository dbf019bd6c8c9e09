"""Health endpoint."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import APIRouter, Depends

from ..environment import Environment
from ..resilience import KV, ResilienceWrapper
from ..storage import KeyValueStore

router = APIRouter(tags=["health"])


@dataclass
class HealthDependencies:
    store: KeyValueStore
    resilience: ResilienceWrapper
    environment: Environment
    version: str


def get_deps() -> HealthDependencies:
    raise NotImplementedError("Dependency override required")


@router.get("/health")
async def health_check(deps: HealthDependencies = Depends(get_deps)):
    """Liveness plus key-value store reachability and breaker states."""
    store_ok = await deps.resilience.call(KV, deps.store.ping, fallback=lambda exc: False)
    return {
        "status": "healthy" if store_ok else "degraded",
        "environment": deps.environment.value,
        "version": deps.version,
        "components": {
            "api": "up",
            "kv": "up" if store_ok else "down",
        },
        "circuitBreakers": deps.resilience.states(),
    }
