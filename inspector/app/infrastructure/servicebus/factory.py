"""Entity client factory: selects and assembles Service Bus adapters."""
from __future__ import annotations

from azure.servicebus.aio import ServiceBusClient
from azure.servicebus.aio.management import ServiceBusAdministrationClient

from inspector.app.config.settings import Settings
from inspector.app.core.connection_string import namespace_host
from inspector.app.infrastructure.servicebus.servicebus_client import AzureServiceBusEntityClient
from inspector.app.ports.broker import EntityClient
from inspector.app.ports.credential import TokenCredential


def create_entity_client(settings: Settings, credential: TokenCredential | None) -> EntityClient:
    """Connection string wins when both are configured; otherwise the token credential is used."""
    backend = settings.servicebus_backend.strip().lower()

    if backend == "azure":
        if settings.connection_string:
            return AzureServiceBusEntityClient(
                ServiceBusClient.from_connection_string(settings.connection_string),
                ServiceBusAdministrationClient.from_connection_string(settings.connection_string),
            )
        if credential is None or not settings.namespace:
            raise ValueError("SERVICEBUS_NAMESPACE and a credential, or SERVICEBUS_CONNECTION_STRING, are required")
        host = namespace_host(settings.namespace)
        return AzureServiceBusEntityClient(
            ServiceBusClient(fully_qualified_namespace=host, credential=credential),
            ServiceBusAdministrationClient(fully_qualified_namespace=host, credential=credential),
        )
    raise ValueError(f"Unsupported servicebus backend: {backend}")
