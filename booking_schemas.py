"""
Request body schemas.

Each write endpoint validates its JSON payload against one of these models
before touching the database. Bounds mirror the database check constraints.
"""
import datetime
import re
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from booking_rules import generate_end_time_slots, generate_time_slots, time_to_minutes, today_local

EMAIL_REGEX = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
MAX_PRICE = 99_999.99
MAX_ROOM_IMAGES = 10

MODEL_CONFIG = ConfigDict(str_strip_whitespace=True, extra="ignore")


def _check_email(value):
    if not re.match(EMAIL_REGEX, value):
        raise ValueError("Invalid email address.")
    return value.lower()


Email = Annotated[str, AfterValidator(_check_email)]


def format_validation_error(exc: ValidationError):
    """Flatten a pydantic ValidationError into (message, details)."""
    details = []
    for issue in exc.errors():
        message = issue["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"path": [str(part) for part in issue["loc"]], "message": message})
    message = ". ".join(d["message"].rstrip(".") for d in details) + "."
    return message, details


# --- Auth & Users ---

class SignInInput(BaseModel):
    model_config = MODEL_CONFIG

    email: Email
    password: str = Field(min_length=1)


class CompleteSignupInput(BaseModel):
    model_config = MODEL_CONFIG

    token: str = Field(min_length=1)
    password: str = Field(min_length=8)


class CreateInviteInput(BaseModel):
    model_config = MODEL_CONFIG

    email: Email
    company_name: str = Field(min_length=2, max_length=50)
    subscription_id: int = Field(gt=0)
    role_id: int = Field(gt=0)


class CreateUserInput(CreateInviteInput):
    password: str = Field(min_length=8)


class UpdateProfileInput(BaseModel):
    model_config = MODEL_CONFIG

    user_company_name: Optional[str] = Field(default=None, min_length=2, max_length=50)


class UpdateEmailInput(BaseModel):
    model_config = MODEL_CONFIG

    email: Email


class UpdatePasswordInput(BaseModel):
    model_config = MODEL_CONFIG

    password: str = Field(min_length=8)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


class BanUserInput(BaseModel):
    banned: bool


class UpdateUserSubscriptionInput(BaseModel):
    subscription_id: int = Field(gt=0)


# --- Meeting Rooms ---

class CreateMeetingRoomInput(BaseModel):
    model_config = MODEL_CONFIG

    meeting_room_name: str = Field(min_length=2, max_length=100)
    meeting_room_capacity: int = Field(ge=1, le=1000)
    meeting_room_price_per_hour: float = Field(ge=1, le=MAX_PRICE)
    meeting_room_size: float = Field(ge=1, le=MAX_PRICE)
    meeting_room_images: List[str] = Field(default_factory=list, max_length=MAX_ROOM_IMAGES)
    amenity_ids: List[int] = Field(default_factory=list)


class UpdateMeetingRoomInput(BaseModel):
    model_config = MODEL_CONFIG

    meeting_room_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    meeting_room_capacity: Optional[int] = Field(default=None, ge=1, le=1000)
    meeting_room_price_per_hour: Optional[float] = Field(default=None, ge=1, le=MAX_PRICE)
    meeting_room_size: Optional[float] = Field(default=None, ge=1, le=MAX_PRICE)
    meeting_room_images: Optional[List[str]] = Field(default=None, max_length=MAX_ROOM_IMAGES)


class RoomAmenitiesInput(BaseModel):
    amenity_ids: List[int]


class DeleteRoomImagesInput(BaseModel):
    urls: List[str] = Field(min_length=1)


class RoomUnavailabilityInput(BaseModel):
    model_config = MODEL_CONFIG

    unavailable_start_date: datetime.date
    unavailable_end_date: datetime.date
    unavailability_reason: Optional[str] = None

    @model_validator(mode="after")
    def end_after_start(self):
        if self.unavailable_end_date < self.unavailable_start_date:
            raise ValueError("End date must be on or after the start date.")
        return self


class UpdateRoomUnavailabilityInput(BaseModel):
    model_config = MODEL_CONFIG

    unavailable_start_date: Optional[datetime.date] = None
    unavailable_end_date: Optional[datetime.date] = None
    unavailability_reason: Optional[str] = None

    @model_validator(mode="after")
    def end_after_start(self):
        start, end = self.unavailable_start_date, self.unavailable_end_date
        if start and end and end < start:
            raise ValueError("End date must be on or after the start date.")
        return self


class AvailabilityQuery(BaseModel):
    date: datetime.date
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    @model_validator(mode="after")
    def time_range(self):
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError("Provide both start_time and end_time, or neither.")
        if self.start_time is not None:
            start, end = time_to_minutes(self.start_time), time_to_minutes(self.end_time)
            if start is None or end is None:
                raise ValueError("Times must use the HH:MM format.")
            if end <= start:
                raise ValueError("End time must be after start time.")
        return self


# --- Amenities ---

class CreateAmenityInput(BaseModel):
    model_config = MODEL_CONFIG

    amenity_name: str = Field(min_length=2, max_length=100)
    amenity_price: Optional[float] = Field(default=None, ge=0, le=MAX_PRICE)


class UpdateAmenityInput(BaseModel):
    model_config = MODEL_CONFIG

    amenity_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    amenity_price: Optional[float] = Field(default=None, ge=0, le=MAX_PRICE)


# --- Subscriptions ---

class CreateSubscriptionInput(BaseModel):
    model_config = MODEL_CONFIG

    subscription_name: str = Field(min_length=2, max_length=100)
    subscription_monthly_price: float = Field(ge=0, le=MAX_PRICE)
    subscription_max_monthly_bookings: Optional[int] = Field(default=None, ge=0)
    subscription_discount_rate: float = Field(ge=0, le=100)


class UpdateSubscriptionInput(BaseModel):
    model_config = MODEL_CONFIG

    subscription_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    subscription_monthly_price: Optional[float] = Field(default=None, ge=0, le=MAX_PRICE)
    subscription_max_monthly_bookings: Optional[int] = Field(default=None, ge=0)
    subscription_discount_rate: Optional[float] = Field(default=None, ge=0, le=100)


# --- Bookings ---

class CreateBookingInput(BaseModel):
    model_config = MODEL_CONFIG

    meeting_room_id: int = Field(gt=0)
    booking_date: datetime.date
    start_time: str
    end_time: str
    number_of_people: int = Field(ge=1)
    amenity_ids: List[int] = Field(default_factory=list)

    @field_validator("booking_date")
    @classmethod
    def not_in_past(cls, value):
        if value < today_local():
            raise ValueError("Booking date cannot be in the past.")
        return value

    @field_validator("start_time")
    @classmethod
    def valid_start(cls, value):
        if value not in generate_time_slots():
            raise ValueError("Start time must be a half-hour slot between 09:00 and 21:30.")
        return value

    @field_validator("end_time")
    @classmethod
    def valid_end(cls, value):
        if value not in generate_end_time_slots():
            raise ValueError("End time must be a half-hour slot between 09:30 and 22:00.")
        return value

    @model_validator(mode="after")
    def end_after_start(self):
        if time_to_minutes(self.end_time) <= time_to_minutes(self.start_time):
            raise ValueError("End time must be after start time.")
        return self


class GetBookingsQuery(BaseModel):
    room_id: Optional[int] = Field(default=None, gt=0)
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None


class ConfirmPaymentInput(BaseModel):
    model_config = MODEL_CONFIG

    payment_intent_id: str = Field(min_length=1)
