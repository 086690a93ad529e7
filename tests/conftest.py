from __future__ import annotations

import pytest

from inspector.app.domain.models import EntityRef


@pytest.fixture
def queue_entity() -> EntityRef:
    return EntityRef.queue("orders", namespace="contoso.servicebus.windows.net")


@pytest.fixture
def session_queue_entity() -> EntityRef:
    return EntityRef.queue("orders", session_enabled=True, namespace="contoso.servicebus.windows.net")
