from typing import Optional

from pydantic import BaseModel, ConfigDict


class RegisterRenterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    password: str
    entityName: str
    pocName: str
    phoneNumber: str
    location: str


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    password: Optional[str] = None
