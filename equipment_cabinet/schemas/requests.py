from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RequestItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = Field(1, ge=1)


class CreateRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cityID: int
    requesterName: str
    requesterPhone: str
    callID: Optional[str] = None
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    items: List[RequestItemDto] = []


class CreateRequestResponse(BaseModel):
    requestID: int
    token: str
    expiresAt: datetime
    status: str


class VerifyTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str


class ConfirmPickupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str
    signature: Optional[str] = None


class ManageRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requestID: int
    cityID: int
    action: Literal["approve", "reject", "cancel", "regenerate"]
    rejectedReason: Optional[str] = None


class ExtendTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requestID: int
    minutes: Optional[int] = Field(None, ge=1)


class CancelTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requestID: int
    reason: Optional[str] = None
