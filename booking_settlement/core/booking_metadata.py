"""
Typed booking metadata.

The checkout front-end attaches a flat ``metadata`` bag of strings to each
Stripe checkout session (French keys, as the booking pages send them):

    type                "traineeship" | "show" | "courses"
    courseType          "trial" | "classic"          (courses only)
    eventId             capacity record id            (or eventData[0].id)
    nombreParticipants  traineeship participant count
    adultes, enfants    show ticket counts
    nom, email, telephone
    eventData           JSON snapshot of the booked event (object or list)

That bag is untrusted input. ``parse_booking_request`` turns it into exactly
one of the tagged ``BookingRequest`` models or raises
``MalformedMetadataError``; nothing downstream reads the raw bag again except
to store it verbatim on the order.
"""

import json
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from booking_settlement.core.exceptions import MalformedMetadataError


class BookingKind(str, Enum):
    """Closed set of bookable event kinds."""

    TRAINEESHIP = "traineeship"
    SHOW = "show"
    CLASSIC_COURSE = "classic-course"
    TRIAL_COURSE = "trial-course"


class EventSnapshot(BaseModel):
    """Denormalized copy of the booked event, frozen at settlement time."""

    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True)

    title: Optional[str] = None
    place: Optional[str] = None
    date: Optional[str] = None
    hours: Optional[str] = None

    def is_empty(self) -> bool:
        return not any((self.title, self.place, self.date, self.hours))


class CustomerFields(BaseModel):
    """Customer contact fields as typed on the booking form."""

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class _BookingBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., min_length=1)
    customer: CustomerFields = CustomerFields()
    snapshot: EventSnapshot = EventSnapshot()

    @property
    def places_requested(self) -> int:
        return 1


class TraineeshipBooking(_BookingBase):
    kind: Literal[BookingKind.TRAINEESHIP] = BookingKind.TRAINEESHIP
    participants: int = Field(..., gt=0)

    @property
    def places_requested(self) -> int:
        return self.participants


class ShowBooking(_BookingBase):
    kind: Literal[BookingKind.SHOW] = BookingKind.SHOW
    adults: int = Field(default=0, ge=0)
    children: int = Field(default=0, ge=0)

    @property
    def places_requested(self) -> int:
        return self.adults + self.children


class ClassicCourseBooking(_BookingBase):
    kind: Literal[BookingKind.CLASSIC_COURSE] = BookingKind.CLASSIC_COURSE


class TrialCourseBooking(_BookingBase):
    kind: Literal[BookingKind.TRIAL_COURSE] = BookingKind.TRIAL_COURSE


BookingRequest = Annotated[
    Union[TraineeshipBooking, ShowBooking, ClassicCourseBooking, TrialCourseBooking],
    Field(discriminator="kind"),
]

_booking_adapter: TypeAdapter[Any] = TypeAdapter(BookingRequest)

_COURSE_KINDS = {
    "classic": BookingKind.CLASSIC_COURSE,
    "trial": BookingKind.TRIAL_COURSE,
}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_count(metadata: Mapping[str, Any], key: str, required: bool) -> int:
    raw = _clean(metadata.get(key))
    if raw is None:
        if required:
            raise MalformedMetadataError(f"Missing '{key}' in booking metadata", field=key)
        return 0
    try:
        return int(raw)
    except ValueError:
        raise MalformedMetadataError(
            f"'{key}' is not an integer: {raw!r}", field=key
        ) from None


def _resolve_kind(metadata: Mapping[str, Any]) -> BookingKind:
    raw_type = _clean(metadata.get("type"))
    if raw_type is None:
        raise MalformedMetadataError("Missing booking type", field="type")

    if raw_type == "courses":
        course_type = _clean(metadata.get("courseType"))
        if course_type not in _COURSE_KINDS:
            raise MalformedMetadataError(
                f"Unknown course type: {course_type!r}", field="courseType"
            )
        return _COURSE_KINDS[course_type]

    try:
        return BookingKind(raw_type)
    except ValueError:
        raise MalformedMetadataError(f"Unknown booking type: {raw_type!r}", field="type") from None


def _parse_event_data(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    """First event of the ``eventData`` JSON, or an empty dict."""
    raw = metadata.get("eventData")
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise MalformedMetadataError("eventData is not valid JSON", field="eventData") from None
    if isinstance(raw, list):
        raw = raw[0] if raw else {}
    if not isinstance(raw, dict):
        raise MalformedMetadataError("eventData must be an object", field="eventData")
    return raw


def parse_booking_request(metadata: Optional[Mapping[str, Any]]) -> BookingRequest:
    """
    Decode a checkout session's metadata into a typed booking request.

    Args:
        metadata: The session's metadata bag (Stripe sends every value as a string)

    Returns:
        BookingRequest: One of the tagged booking models

    Raises:
        MalformedMetadataError: If the kind, event id or place count is
            missing or invalid
    """
    if not metadata:
        raise MalformedMetadataError("Empty booking metadata", field="type")

    kind = _resolve_kind(metadata)
    event_data = _parse_event_data(metadata)

    event_id = _clean(metadata.get("eventId")) or _clean(
        event_data.get("id") or event_data.get("_id")
    )
    if event_id is None:
        raise MalformedMetadataError("Missing event id", field="eventId")

    fields: Dict[str, Any] = {
        "kind": kind,
        "event_id": event_id,
        "customer": CustomerFields(
            name=_clean(metadata.get("nom")),
            email=_clean(metadata.get("email")),
            phone=_clean(metadata.get("telephone")),
        ),
        "snapshot": event_data,
    }

    if kind is BookingKind.TRAINEESHIP:
        fields["participants"] = _parse_count(metadata, "nombreParticipants", required=True)
    elif kind is BookingKind.SHOW:
        fields["adults"] = _parse_count(metadata, "adultes", required=False)
        fields["children"] = _parse_count(metadata, "enfants", required=False)

    try:
        request = _booking_adapter.validate_python(fields)
    except ValidationError as e:
        first = e.errors()[0]
        raise MalformedMetadataError(
            f"Invalid booking metadata: {first['msg']}",
            field=".".join(str(part) for part in first["loc"]),
        ) from None

    if request.places_requested <= 0:
        raise MalformedMetadataError("Booking requests no places", field="places")

    return request
