"""Optimistic mutation protocol.

    cancel in-flight fetches -> snapshot -> apply to warm scopes -> commit
        success: settle authoritative data, invalidate touched + derived scopes
        failure: restore snapshot, invalidate touched scopes, re-raise

Scopes that hold no data are never written speculatively, so a mutation on
a cold cache leaves it exactly as cold as it was.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from momentful.cache.query_client import CacheSnapshot, QueryClient, QueryKey

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OptimisticMutation(Generic[T]):
    scopes: tuple[QueryKey, ...]
    # Speculative change applied to each warm scope's data
    apply: Callable[[Any], Any]
    commit: Callable[[], Awaitable[T]]
    # Writes the committed result into each warm scope
    settle: Callable[[Any, T], Any] | None = None
    # Extra prefixes to invalidate once the result is known
    derived_scopes: Callable[[T], Iterable[QueryKey]] | None = None


def _apply(client: QueryClient, scopes: Iterable[QueryKey], updater: Callable[[Any], Any]) -> list[QueryKey]:
    touched = []
    for key in scopes:
        if client.update_query_data(key, updater):
            touched.append(key)
    return touched


async def run_mutation(client: QueryClient, mutation: OptimisticMutation[T]) -> T:
    scopes = tuple(dict.fromkeys(tuple(key) for key in mutation.scopes))

    for key in scopes:
        await client.cancel_queries(key)
    snapshot: CacheSnapshot = client.snapshot(scopes)
    warm = _apply(client, scopes, mutation.apply)
    logger.debug(f"Applied optimistic update to {len(warm)}/{len(scopes)} scopes")

    try:
        result = await mutation.commit()
    except asyncio.CancelledError:
        client.restore(snapshot)
        for key in scopes:
            client.mark_invalidated(key)
        raise
    except Exception as e:
        logger.info(f"Mutation failed, rolling back {len(scopes)} cache scopes: {e}")
        client.restore(snapshot)
        for key in scopes:
            await client.invalidate_queries(key)
        raise

    if mutation.settle is not None:
        settle = mutation.settle
        _apply(client, scopes, lambda data: settle(data, result))

    invalidate = list(scopes)
    if mutation.derived_scopes is not None:
        invalidate.extend(tuple(key) for key in mutation.derived_scopes(result))
    for key in dict.fromkeys(invalidate):
        await client.invalidate_queries(key)
    return result
