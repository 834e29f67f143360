# services - Orchestration layer
from services import (
    clock,
    identity,
    instrument_service,
    maintenance_service,
    settings_service,
    template_service,
    user_service,
)

__all__ = [
    "clock",
    "identity",
    "instrument_service",
    "maintenance_service",
    "settings_service",
    "template_service",
    "user_service",
]
