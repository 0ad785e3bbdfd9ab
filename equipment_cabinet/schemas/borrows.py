from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from equipment_cabinet.schemas.requests import RequestItemDto


class DirectBorrowDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cityID: int
    name: str
    phone: str
    items: List[RequestItemDto] = []


class ReturnEquipmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowID: int
    equipmentStatus: Literal["working", "faulty"] = "working"
    faultyNotes: Optional[str] = None


class ApproveReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowID: int
