"""
Booking rules shared by the API and the seed script: opening hours,
the 30-minute slot grid, buffer handling, overlap checks and pricing.
"""
import datetime
import re
from zoneinfo import ZoneInfo

# --- Booking Configuration ---

BOOKING_START_HOUR = 9
BOOKING_END_HOUR = 22
TIME_SLOT_INTERVAL = 30  # minutes
BUFFER_MINUTES = 30
TIMEZONE = "Europe/Copenhagen"
MIN_CHARGE_MINOR_UNITS = 50  # 0.50 DKK

WHITESPACE_REGEX = re.compile(r"\s+")


# --- Time Helpers ---

def time_to_minutes(time_str):
    """Convert time string (HH:MM) to minutes since midnight."""
    try:
        parts = time_str.split(':')
        return int(parts[0]) * 60 + int(parts[1])
    except (ValueError, IndexError, AttributeError):
        return None


def minutes_to_time(minutes):
    """Convert minutes since midnight back to HH:MM."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def add_minutes(time_str, minutes):
    return minutes_to_time(time_to_minutes(time_str) + minutes)


def generate_time_slots():
    """
    Start times a booking may use: 09:00, 09:30, ... 21:30.
    The last start leaves room for a 30 minute booking before closing.
    """
    first = BOOKING_START_HOUR * 60
    last = BOOKING_END_HOUR * 60 - TIME_SLOT_INTERVAL
    return [minutes_to_time(m) for m in range(first, last + 1, TIME_SLOT_INTERVAL)]


def generate_end_time_slots():
    """End times a booking may use: 09:30, 10:00, ... 22:00."""
    first = BOOKING_START_HOUR * 60 + TIME_SLOT_INTERVAL
    last = BOOKING_END_HOUR * 60
    return [minutes_to_time(m) for m in range(first, last + 1, TIME_SLOT_INTERVAL)]


def ranges_overlap(start1, end1, start2, end2):
    """Half-open minute ranges overlap if one starts before the other ends."""
    return start1 < end2 and start2 < end1


def slots_overlap(slot1_start, slot1_end, slot2_start, slot2_end):
    """
    Check if two time slots overlap.
    Returns True if slots overlap, False otherwise.
    """
    start1 = time_to_minutes(slot1_start)
    end1 = time_to_minutes(slot1_end)
    start2 = time_to_minutes(slot2_start)
    end2 = time_to_minutes(slot2_end)

    if start1 is None or end1 is None or start2 is None or end2 is None:
        return False

    return ranges_overlap(start1, end1, start2, end2)


def booking_conflicts(start_time, end_time, existing_start, existing_end, existing_type="booking"):
    """
    Check a requested booking against an existing row.

    Both the request and existing bookings are extended by their buffer.
    Buffer rows already describe blocked time and are compared as-is.
    """
    start = time_to_minutes(start_time)
    end = time_to_minutes(end_time) + BUFFER_MINUTES
    other_start = time_to_minutes(existing_start)
    other_end = time_to_minutes(existing_end)
    if existing_type != "buffer":
        other_end += BUFFER_MINUTES
    return ranges_overlap(start, end, other_start, other_end)


def date_ranges_overlap(start1, end1, start2, end2):
    """Inclusive date ranges overlap if start1 <= end2 and start2 <= end1."""
    return str(start1) <= str(end2) and str(start2) <= str(end1)


def today_local():
    return datetime.datetime.now(ZoneInfo(TIMEZONE)).date()


def current_booking_period():
    """Month key (YYYY-MM) the monthly booking counter belongs to."""
    return today_local().strftime("%Y-%m")


def booking_period(created_at):
    """Month key a booking was counted in, from its UTC ISO creation time."""
    created = datetime.datetime.fromisoformat(created_at)
    if created.tzinfo is None:
        created = created.replace(tzinfo=datetime.timezone.utc)
    return created.astimezone(ZoneInfo(TIMEZONE)).strftime("%Y-%m")


# --- Pricing ---

def calculate_booking_price(price_per_hour, start_time, end_time, amenity_prices=(), discount_rate=0):
    """
    Price a booking: room time plus amenities, minus the subscription discount.
    Returns a dict with room_subtotal, amenities_total, subtotal, discount and total.
    """
    minutes = time_to_minutes(end_time) - time_to_minutes(start_time)
    hours = max(0, minutes) / 60
    room_subtotal = price_per_hour * hours
    amenities_total = sum(price or 0 for price in amenity_prices)
    subtotal = room_subtotal + amenities_total
    discount = subtotal * (discount_rate or 0) / 100
    total = max(0, subtotal - discount)
    return {
        "hours": hours,
        "room_subtotal": round(room_subtotal, 2),
        "amenities_total": round(amenities_total, 2),
        "subtotal": round(subtotal, 2),
        "discount_rate": discount_rate or 0,
        "discount": round(discount, 2),
        "total": round(total, 2),
    }


def to_minor_units(amount):
    """DKK -> øre."""
    return int(round(amount * 100))


def format_price(price):
    """10.0 -> '10', 10.5 -> '10.50'."""
    if price % 1 != 0:
        return f"{price:.2f}"
    return str(int(round(price)))


def room_name_to_slug(room_name):
    """'Room of Innovation' -> 'room-of-innovation'."""
    return "-".join(WHITESPACE_REGEX.split(room_name.lower().strip()))
