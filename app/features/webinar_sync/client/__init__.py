from .provider_client import (  # noqa: F401
    ENDPOINTS,
    PageStream,
    ProviderApiClient,
    ProviderEndpoint,
    build_provider_client,
)
