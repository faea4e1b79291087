from momentful.cache.artifact_cache import ArtifactCache
from momentful.cache.mutations import OptimisticMutation, run_mutation
from momentful.cache.query_client import (
    MISSING,
    CacheSnapshot,
    PreviousState,
    QueryClient,
    QueryObserver,
)

__all__ = [
    "MISSING",
    "ArtifactCache",
    "CacheSnapshot",
    "OptimisticMutation",
    "PreviousState",
    "QueryClient",
    "QueryObserver",
    "run_mutation",
]
