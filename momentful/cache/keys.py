"""Query keys for every cached scope.

User-scoped keys end with the user id so two users never share an entry,
while prefixes without it (``timeline_prefix``) reach every user's copy.
"""

import uuid

from momentful.cache.query_client import QueryKey
from momentful.schemas.artifact import ArtifactView

EDITED_IMAGES = "edited-images"
GENERATED_VIDEOS = "generated-videos"
TIMELINE = "timeline"
TIMELINES = "timelines"


def edited_images_by_project(project_id: uuid.UUID, user_id: str) -> QueryKey:
    return (EDITED_IMAGES, str(project_id), user_id)


def edited_images_by_source(source_asset_id: uuid.UUID, user_id: str) -> QueryKey:
    return (EDITED_IMAGES, "source", str(source_asset_id), user_id)


def edited_images_by_lineage(lineage_id: uuid.UUID, user_id: str) -> QueryKey:
    return (EDITED_IMAGES, "lineage", str(lineage_id), user_id)


def generated_videos_by_project(project_id: uuid.UUID, user_id: str) -> QueryKey:
    return (GENERATED_VIDEOS, str(project_id), user_id)


def timeline(lineage_id: uuid.UUID, user_id: str) -> QueryKey:
    return (TIMELINE, str(lineage_id), user_id)


def timelines(project_id: uuid.UUID, user_id: str) -> QueryKey:
    return (TIMELINES, str(project_id), user_id)


def timeline_prefix(lineage_id: uuid.UUID) -> QueryKey:
    return (TIMELINE, str(lineage_id))


def timelines_prefix(project_id: uuid.UUID) -> QueryKey:
    return (TIMELINES, str(project_id))


def lineage_images_prefix(lineage_id: uuid.UUID) -> QueryKey:
    return (EDITED_IMAGES, "lineage", str(lineage_id))


def scopes_for(artifact: ArtifactView) -> tuple[QueryKey, ...]:
    """List scopes that contain ``artifact``."""
    if artifact.kind == "generated_video":
        return (generated_videos_by_project(artifact.project_id, artifact.user_id),)

    scopes = [edited_images_by_project(artifact.project_id, artifact.user_id)]
    if artifact.source_asset_id is not None:
        scopes.append(edited_images_by_source(artifact.source_asset_id, artifact.user_id))
    if artifact.lineage_id is not None:
        scopes.append(edited_images_by_lineage(artifact.lineage_id, artifact.user_id))
    return tuple(scopes)


def derived_scopes_for(artifact: ArtifactView) -> tuple[QueryKey, ...]:
    """Prefixes whose data is computed from ``artifact`` but does not list it directly."""
    if artifact.lineage_id is None:
        return ()
    scopes = [timeline_prefix(artifact.lineage_id), timelines_prefix(artifact.project_id)]
    if artifact.kind == "edited_image":
        scopes.append(lineage_images_prefix(artifact.lineage_id))
    return tuple(scopes)
