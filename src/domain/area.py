"""Area domain model."""

from datetime import datetime

from pydantic import Field

from src.domain.wire import WireModel


class Area(WireModel):
    """A site or department tasks are grouped under."""

    id: str = Field(..., description="Unique area ID")
    tenant_id: str = Field(..., description="Owning tenant ID")
    name: str = Field(..., description="Display name")
    code: str | None = Field(default=None, description="Short code")
    parent_id: str | None = Field(default=None, description="Parent area ID")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
