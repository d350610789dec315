from src.services import (
    compliance_service,
    ledger,
    materializer,
    notification_service,
    projection,
    sync_gateway,
)


__all__ = [
    "compliance_service",
    "ledger",
    "materializer",
    "notification_service",
    "projection",
    "sync_gateway",
]
