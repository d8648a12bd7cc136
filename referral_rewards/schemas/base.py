"""Base schema shared by request/response models"""

from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
import uuid

class BaseSchema(BaseModel):
    """Base schema with common configuration"""

    class Config:
        from_attributes = True
        populate_by_name = True
        json_encoders = {
            datetime: lambda v: v.isoformat(),
            uuid.UUID: lambda v: str(v),
            Decimal: lambda v: float(v)
        }
