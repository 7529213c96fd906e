# app/db/schemas/metric_schemas.py
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .common_schemas import utcnow


class MetricType(str, Enum):
    VIEW = "view"
    VIEW_TOTAL = "view_total"
    INITIATE_CHECKOUT = "initiate_checkout"


class CheckoutMetricDoc(BaseModel):
    offer_id: str
    type: MetricType
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"use_enum_values": True}


class TrackMetricRequest(BaseModel):
    offer_id: str = Field(..., alias="offerId")
    type: MetricType
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    event_source_url: Optional[str] = Field(None, alias="eventSourceUrl")

    model_config = {"populate_by_name": True}
