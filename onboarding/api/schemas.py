from typing import Optional
from pydantic import BaseModel


class OnboardingRequest(BaseModel):
    id: Optional[str] = None
    typeDiscriminator: str
    name: str
    idType: str = ""
    idNumber: str
    taxNumber: str = ""
    mobile: str = ""
    phone: str = ""
    fax: str = ""
    email: str = ""
    country: str = ""
    city: str = ""
    street: str = ""
    postalCode: str = ""
    locality: str = ""
    category: str = ""
    division: str = ""
    salesOrg: str = ""


class UpdateRequest(BaseModel):
    # Only fields the client actually sends are applied (exclude_unset)
    name: Optional[str] = None
    idType: Optional[str] = None
    idNumber: Optional[str] = None
    taxNumber: Optional[str] = None
    mobile: Optional[str] = None
    phone: Optional[str] = None
    fax: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    street: Optional[str] = None
    postalCode: Optional[str] = None
    locality: Optional[str] = None
    category: Optional[str] = None
    division: Optional[str] = None
    salesOrg: Optional[str] = None

