"""Temporal client factory.

Creates connections to Temporal (Cloud or a local dev server) using the
settings loaded from the environment.
"""

from typing import Optional

from temporalio.client import Client

from core.config import Settings, load_settings


async def get_temporal_client(settings: Optional[Settings] = None) -> Client:
    """Create and return a Temporal client.

    Reads configuration from Settings (environment variables):
    - TEMPORAL_ENDPOINT: Temporal endpoint (e.g., "temporal.example.com:7233")
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud; omit for a local server

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If TEMPORAL_ENDPOINT is not set
    """
    settings = settings or load_settings()

    if not settings.temporal_endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal endpoint (e.g., 'localhost:7233')"
        )

    # Local dev server: plain connection
    if not settings.temporal_api_key:
        return await Client.connect(
            settings.temporal_endpoint,
            namespace=settings.temporal_namespace,
        )

    # Temporal Cloud: TLS, API key as credential
    return await Client.connect(
        settings.temporal_endpoint,
        namespace=settings.temporal_namespace,
        tls=True,
        api_key=settings.temporal_api_key,
    )
