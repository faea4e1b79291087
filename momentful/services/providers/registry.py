from momentful.constants.models import (
    DEFAULT_MODELS,
    REPLICATE_IMAGE_MODELS,
    REPLICATE_MODEL_ALIASES,
    RUNWAY_IMAGE_MODELS,
    RUNWAY_VIDEO_MODELS,
    Provider,
    ResourceType,
)
from momentful.exceptions import UnsupportedModelError
from momentful.services.providers.base import ProviderClient


class ProviderRegistry:
    """Maps (resource type, model id) to the client that serves it."""

    def __init__(self, clients: dict[Provider, ProviderClient]) -> None:
        self._clients = dict(clients)

    def get(self, provider: Provider | str) -> ProviderClient:
        return self._clients[Provider(provider)]

    def resolve(self, resource_type: ResourceType, model_id: str | None) -> tuple[ProviderClient, str]:
        """Return the client and canonical model id for a request.

        Raises UnsupportedModelError for unknown models or a model that cannot
        produce the requested resource type.
        """
        model = model_id or DEFAULT_MODELS[resource_type]
        model = REPLICATE_MODEL_ALIASES.get(model, model)

        if resource_type == ResourceType.IMAGE:
            if model in RUNWAY_IMAGE_MODELS:
                provider = Provider.RUNWAY
            elif model.split(":", 1)[0] in REPLICATE_IMAGE_MODELS:
                provider = Provider.REPLICATE
            else:
                raise UnsupportedModelError(model, resource_type.value)
        elif model in RUNWAY_VIDEO_MODELS:
            provider = Provider.RUNWAY
        else:
            raise UnsupportedModelError(model, resource_type.value)

        if provider not in self._clients:
            raise UnsupportedModelError(model, resource_type.value)
        return self._clients[provider], model
