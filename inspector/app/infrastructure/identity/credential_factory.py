"""Credential factory: builds an azure-identity async credential from the auth mode."""
from __future__ import annotations

from azure.identity.aio import (
    AzureCliCredential,
    ChainedTokenCredential,
    DefaultAzureCredential,
    EnvironmentCredential,
    ManagedIdentityCredential,
)

from inspector.app.config.settings import Settings
from inspector.app.ports.credential import TokenCredential


def create_credential(settings: Settings) -> TokenCredential | None:
    """None when a connection string is configured and no auth mode was forced."""
    mode = settings.auth_mode.strip().lower()
    tenant_id = settings.tenant_id or None

    if mode == "none" or (mode == "auto" and settings.connection_string and not settings.namespace):
        return None
    if mode == "cli":
        return AzureCliCredential(tenant_id=tenant_id)
    if mode == "default":
        return DefaultAzureCredential()
    if mode == "environment":
        return EnvironmentCredential()
    if mode == "managed":
        return ManagedIdentityCredential()
    if mode == "auto":
        return ChainedTokenCredential(
            DefaultAzureCredential(exclude_cli_credential=True),
            AzureCliCredential(tenant_id=tenant_id),
        )
    raise ValueError(f"Unsupported auth mode: {mode}")
