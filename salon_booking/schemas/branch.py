from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class BranchSettings(BaseModel):
    """Closed set of per-branch operating options."""

    model_config = {"extra": "forbid"}

    auto_resolve_conflicts: bool = False
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=1)
    management_channel: Optional[str] = None
    holiday_country: Optional[str] = Field(None, min_length=2, max_length=2)
