from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.listings import MAX_UNITS, UploadedFile


MAX_DURATION_HOURS = 24 * 365


class CheckoutForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    customerName: str = Field(min_length=1, max_length=255)
    contactNumber: str = Field(pattern=r"^\d{10}$")
    rentalDurationHours: int = Field(ge=1, le=MAX_DURATION_HOURS)
    quantity: int = Field(ge=1, le=MAX_UNITS)
    identityDocument: UploadedFile
    idempotencyKey: Optional[str] = Field(default=None, max_length=128)


class CustomerInfoForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    governmentIdNumber: str = Field(pattern=r"^\d{12}$")
    name: str = Field(min_length=1, max_length=255)
    contactNumber: str = Field(pattern=r"^\d{10}$")
    location: str = Field(min_length=1, max_length=255)
    document: UploadedFile
