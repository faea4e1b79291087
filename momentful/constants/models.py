"""Generation model ids, ratios and provider defaults."""

from enum import Enum


class Provider(str, Enum):
    RUNWAY = "runway"
    REPLICATE = "replicate"


class ResourceType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


# Runway
RUNWAY_IMAGE_MODELS = ("gen4_image", "gen4_image_turbo", "gemini_2.5_flash")
RUNWAY_VIDEO_MODELS = ("veo3.1_fast", "gen4_turbo")
RUNWAY_DEFAULT_IMAGE_MODEL = "gen4_image"
RUNWAY_DEFAULT_VIDEO_MODEL = "veo3.1_fast"
RUNWAY_DEFAULT_RATIO = "1280:720"

RUNWAY_IMAGE_RATIOS = frozenset({
    "1920:1080", "1080:1920", "1024:1024", "1360:768", "1080:1080",
    "1168:880", "1440:1080", "1080:1440", "1808:768", "2112:912",
    "1280:720", "720:1280", "720:720", "960:720", "720:960",
    "1680:720", "1344:768", "768:1344", "1184:864", "864:1184",
    "1536:672", "832x1248", "1248x832", "896x1152", "1152x896",
})

RUNWAY_VIDEO_RATIOS: dict[str, frozenset[str]] = {
    "veo3.1_fast": frozenset({"1280:720", "720:1280", "1920:1080", "1080:1920"}),
    "gen4_turbo": frozenset({"1280:720", "720:1280", "1104:832", "832:1104", "960:960", "1584:672"}),
}

# Seconds of output per video model
RUNWAY_VIDEO_DURATIONS = {
    "veo3.1_fast": 4,
    "gen4_turbo": 5,
}

# Replicate
FLUX_KONTEXT_PRO = "black-forest-labs/flux-kontext-pro"
REPLICATE_IMAGE_MODELS = (FLUX_KONTEXT_PRO,)
REPLICATE_MODEL_ALIASES = {
    "flux-pro": FLUX_KONTEXT_PRO,
    "flux-kontext-pro": FLUX_KONTEXT_PRO,
}

REPLICATE_ASPECT_RATIOS = frozenset({
    "match_input_image", "1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3",
    "4:5", "5:4", "21:9", "9:21", "2:1", "1:2",
})
REPLICATE_OUTPUT_FORMATS = frozenset({"jpg", "png"})

DEFAULT_MODELS = {
    ResourceType.IMAGE: FLUX_KONTEXT_PRO,
    ResourceType.VIDEO: RUNWAY_DEFAULT_VIDEO_MODEL,
}
