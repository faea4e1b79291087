"""Artifact lists, lineage timelines and their optimistic mutations."""

import logging
import uuid
from collections.abc import Awaitable, Callable

from momentful.cache import keys
from momentful.cache.mutations import OptimisticMutation, run_mutation
from momentful.cache.query_client import QueryClient
from momentful.schemas.artifact import ArtifactView, LineageView, TimelineView

logger = logging.getLogger(__name__)


def prepend(artifact: ArtifactView) -> Callable[[tuple], tuple]:
    def updater(data: tuple) -> tuple:
        return (artifact,) + tuple(a for a in data if a.id != artifact.id)

    return updater


def replace(artifact: ArtifactView) -> Callable[[tuple], tuple]:
    def updater(data: tuple) -> tuple:
        if not any(a.id == artifact.id for a in data):
            return (artifact,) + tuple(data)
        return tuple(artifact if a.id == artifact.id else a for a in data)

    return updater


def remove(artifact_id: uuid.UUID) -> Callable[[tuple], tuple]:
    def updater(data: tuple) -> tuple:
        return tuple(a for a in data if a.id != artifact_id)

    return updater


def _settle(data: tuple, committed: ArtifactView | None) -> tuple:
    if committed is None:
        return data
    return replace(committed)(data)


def _derived(committed: ArtifactView | None):
    if committed is None:
        return ()
    return keys.scopes_for(committed) + keys.derived_scopes_for(committed)


class ArtifactCache:
    """Cached reads plus create/replace/delete mutations for generated artifacts.

    ``repository`` supplies the authoritative fetchers; see
    ``ArtifactRepository`` for their signatures.
    """

    def __init__(self, client: QueryClient, repository) -> None:
        self.client = client
        self._repository = repository

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def edited_images_for_project(self, project_id: uuid.UUID, user_id: str) -> tuple[ArtifactView, ...]:
        return await self.client.fetch_query(
            keys.edited_images_by_project(project_id, user_id),
            lambda: self._repository.list_edited_images(user_id, project_id=project_id),
        )

    async def edited_images_for_source(self, source_asset_id: uuid.UUID, user_id: str) -> tuple[ArtifactView, ...]:
        return await self.client.fetch_query(
            keys.edited_images_by_source(source_asset_id, user_id),
            lambda: self._repository.list_edited_images(user_id, source_asset_id=source_asset_id),
        )

    async def edited_images_for_lineage(self, lineage_id: uuid.UUID, user_id: str) -> tuple[ArtifactView, ...]:
        return await self.client.fetch_query(
            keys.edited_images_by_lineage(lineage_id, user_id),
            lambda: self._repository.list_edited_images(user_id, lineage_id=lineage_id),
        )

    async def generated_videos_for_project(self, project_id: uuid.UUID, user_id: str) -> tuple[ArtifactView, ...]:
        return await self.client.fetch_query(
            keys.generated_videos_by_project(project_id, user_id),
            lambda: self._repository.list_generated_videos(user_id, project_id),
        )

    async def timeline(self, lineage_id: uuid.UUID, user_id: str) -> TimelineView:
        return await self.client.fetch_query(
            keys.timeline(lineage_id, user_id),
            lambda: self._repository.get_timeline(lineage_id, user_id),
        )

    async def lineages_for_project(self, project_id: uuid.UUID, user_id: str) -> tuple[LineageView, ...]:
        return await self.client.fetch_query(
            keys.timelines(project_id, user_id),
            lambda: self._repository.list_lineages(user_id, project_id),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_artifact(
        self,
        placeholder: ArtifactView,
        commit: Callable[[], Awaitable[ArtifactView]],
    ) -> ArtifactView:
        """Show ``placeholder`` in warm lists while ``commit`` persists the real row."""
        return await run_mutation(
            self.client,
            OptimisticMutation(
                scopes=keys.scopes_for(placeholder),
                apply=prepend(placeholder),
                commit=commit,
                settle=_settle,
                derived_scopes=_derived,
            ),
        )

    async def replace_artifact(
        self,
        updated: ArtifactView,
        commit: Callable[[], Awaitable[ArtifactView]],
    ) -> ArtifactView:
        return await run_mutation(
            self.client,
            OptimisticMutation(
                scopes=keys.scopes_for(updated),
                apply=replace(updated),
                commit=commit,
                settle=_settle,
                derived_scopes=_derived,
            ),
        )

    async def delete_artifact(self, artifact: ArtifactView, commit: Callable[[], Awaitable[None]]) -> None:
        await run_mutation(
            self.client,
            OptimisticMutation(
                scopes=keys.scopes_for(artifact),
                apply=remove(artifact.id),
                commit=commit,
                derived_scopes=lambda _: keys.derived_scopes_for(artifact),
            ),
        )

    async def invalidate_artifact(self, artifact: ArtifactView) -> None:
        """Reconcile every scope showing ``artifact`` after an out-of-band change."""
        for key in keys.scopes_for(artifact) + keys.derived_scopes_for(artifact):
            await self.client.invalidate_queries(key)
