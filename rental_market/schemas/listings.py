from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# Integer columns are 32-bit signed on every supported backend.
MAX_UNITS = 2_147_483_647


class UploadedFile(BaseModel):
    filename: str = ""
    content_type: str = ""
    content: bytes = b""


class ListingForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    category: str = Field(min_length=1, max_length=50)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    brand: str = Field(min_length=1, max_length=255)
    model: str = Field(min_length=1, max_length=255)
    stock: int = Field(gt=0, le=MAX_UNITS)
    pricePerHour: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    images: list[UploadedFile] = Field(default_factory=list)
