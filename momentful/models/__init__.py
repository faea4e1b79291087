from momentful.models.artifact import EditedImage, GeneratedVideo
from momentful.models.base import Base
from momentful.models.generation_job import GenerationJob
from momentful.models.generation_limit import GenerationLimit
from momentful.models.lineage import Lineage, MediaAsset

__all__ = [
    "Base",
    "EditedImage",
    "GeneratedVideo",
    "GenerationJob",
    "GenerationLimit",
    "Lineage",
    "MediaAsset",
]
