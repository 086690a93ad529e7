"""AMQP connector factory: selects implementation from config. Only place that imports concrete connectors."""
from __future__ import annotations

from inspector.app.config.settings import Settings
from inspector.app.infrastructure.amqp.proton_connector import ProtonConnector
from inspector.app.ports.amqp import AmqpConnector


def create_amqp_connector(settings: Settings) -> AmqpConnector:
    backend = settings.amqp_backend.strip().lower()

    if backend == "proton":
        return ProtonConnector()

    raise ValueError(f"Unsupported amqp backend: {backend}")
