# buyback/api/schemas.py
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelBody(BaseModel):
    # request bodies use the document's camelCase keys
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RefreshTrackingIn(_CamelBody):
    force: bool = False


class CancelOrderIn(_CamelBody):
    reason: Optional[str] = None
    notify_customer: bool = Field(default=True, alias="notifyCustomer")
    void_labels: bool = Field(default=True, alias="voidLabels")
    initiated_by: Optional[str] = Field(default=None, alias="initiatedBy")


class BulkVoidIn(_CamelBody):
    min_days: Optional[float] = Field(default=None, alias="minDays", ge=0)
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class ReofferIn(_CamelBody):
    new_price: float = Field(alias="newPrice", gt=0)
    reasons: List[str] = Field(min_length=1)
    comments: Optional[str] = None
    device_key: Optional[str] = Field(default=None, alias="deviceKey")


class ReofferResponseIn(_CamelBody):
    device_key: Optional[str] = Field(default=None, alias="deviceKey")
