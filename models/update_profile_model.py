from pydantic import BaseModel, Field
from typing import Optional


class ShippingAddress(BaseModel):
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class UpdateUserProfile(BaseModel):
    username: Optional[str] = Field(default=None, min_length=1, max_length=50)
    shipping_address: Optional[ShippingAddress] = None
