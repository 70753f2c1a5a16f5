from datetime import datetime
from typing import Generic, Literal, Optional, TypeVar, get_args

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pettapp.locations import GeoJsonPoint, LatLng

BusinessType = Literal["veterinary", "grooming", "boarding", "daycare", "training", "pet-shop", "other"]
ServiceCategory = Literal[
    "veterinary",
    "grooming",
    "boarding",
    "daycare",
    "training",
    "emergency",
    "consultation",
    "other",
]
PetType = Literal["dog", "cat", "bird", "fish", "rabbit", "hamster", "guinea-pig", "reptile", "other"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
Currency = Literal["PHP", "USD"]

BUSINESS_TYPES: tuple[str, ...] = get_args(BusinessType)
SERVICE_CATEGORIES: tuple[str, ...] = get_args(ServiceCategory)
PET_TYPES: tuple[str, ...] = get_args(PetType)

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


class CamelModel(BaseModel):
    """Documents and payloads use camelCase keys on the wire and in storage."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Location(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    def to_lat_lng(self) -> LatLng:
        return LatLng(latitude=self.latitude, longitude=self.longitude)


class GeoPoint(CamelModel):
    type: Literal["Point"] = "Point"
    coordinates: list[float] = Field(min_length=2, max_length=2, description="[longitude, latitude]")

    @classmethod
    def from_point(cls, point: GeoJsonPoint) -> "GeoPoint":
        return cls(coordinates=[point.longitude, point.latitude])


class ContactInfo(CamelModel):
    email: str = ""
    phone: str = ""
    website: Optional[str] = None


class AddressFields(CamelModel):
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "Philippines"


class Address(AddressFields):
    coordinates: Optional[GeoPoint] = None


class AddressInput(AddressFields):
    location: Optional[Location] = None


class DayHours(CamelModel):
    open: str = Field(default="09:00", pattern=TIME_PATTERN)
    close: str = Field(default="17:00", pattern=TIME_PATTERN)
    is_open: bool = True


class BusinessHours(CamelModel):
    monday: DayHours = Field(default_factory=DayHours)
    tuesday: DayHours = Field(default_factory=DayHours)
    wednesday: DayHours = Field(default_factory=DayHours)
    thursday: DayHours = Field(default_factory=DayHours)
    friday: DayHours = Field(default_factory=DayHours)
    saturday: DayHours = Field(default_factory=DayHours)
    sunday: DayHours = Field(default_factory=lambda: DayHours(is_open=False))


class Credentials(CamelModel):
    license_number: Optional[str] = None
    certifications: list[str] = Field(default_factory=list)
    insurance_info: Optional[str] = None


class Ratings(CamelModel):
    average_rating: float = Field(default=0.0, ge=0, le=5)
    total_reviews: int = Field(default=0, ge=0)


class Business(CamelModel):
    id: str
    owner_id: str = ""
    business_name: str
    business_type: BusinessType
    description: Optional[str] = None
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    address: Address = Field(default_factory=Address)
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    credentials: Credentials = Field(default_factory=Credentials)
    ratings: Ratings = Field(default_factory=Ratings)
    is_verified: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    distance_km: Optional[float] = None


class BusinessSummary(CamelModel):
    id: str
    business_name: str
    business_type: BusinessType
    address: Address = Field(default_factory=Address)
    ratings: Ratings = Field(default_factory=Ratings)


class BusinessCreateRequest(CamelModel):
    owner_id: str = Field(min_length=1)
    business_name: str = Field(min_length=1, max_length=100)
    business_type: BusinessType
    description: Optional[str] = Field(default=None, max_length=1000)
    contact_info: ContactInfo
    address: AddressInput
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    credentials: Credentials = Field(default_factory=Credentials)


class LocationUpdateRequest(CamelModel):
    location: Optional[Location] = None


class Price(CamelModel):
    amount: float = Field(ge=0)
    currency: Currency = "PHP"


class TimeSlot(CamelModel):
    start: str = Field(pattern=TIME_PATTERN)
    end: str = Field(pattern=TIME_PATTERN)


class Availability(CamelModel):
    days: list[Weekday] = Field(default_factory=list)
    time_slots: list[TimeSlot] = Field(default_factory=list)


class AgeRestrictions(CamelModel):
    min_age: Optional[float] = Field(default=None, ge=0)
    max_age: Optional[float] = Field(default=None, le=30)


class Requirements(CamelModel):
    pet_types: list[PetType] = Field(default_factory=list)
    age_restrictions: Optional[AgeRestrictions] = None
    health_requirements: list[str] = Field(default_factory=list)
    special_notes: Optional[str] = Field(default=None, max_length=300)


class ServiceLocation(CamelModel):
    coordinates: GeoPoint


class Service(CamelModel):
    id: str
    business_id: str
    name: str
    category: ServiceCategory
    description: str = ""
    duration: int
    price: Price
    availability: Availability = Field(default_factory=Availability)
    requirements: Requirements = Field(default_factory=Requirements)
    location: Optional[ServiceLocation] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    distance_km: Optional[float] = None
    business: Optional[BusinessSummary] = None


class ServiceCreateRequest(CamelModel):
    business_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    category: ServiceCategory
    description: str = Field(min_length=1, max_length=500)
    duration: int = Field(ge=15, le=1440)
    price: Price
    availability: Availability = Field(default_factory=Availability)
    requirements: Requirements = Field(default_factory=Requirements)
    location: Optional[Location] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


T = TypeVar("T")


class ListResponse(CamelModel, Generic[T]):
    success: bool = True
    data: list[T]
    pagination: Optional[Pagination] = None


class ItemResponse(CamelModel, Generic[T]):
    success: bool = True
    message: Optional[str] = None
    data: T


class MessageResponse(CamelModel):
    success: bool = True
    message: str
