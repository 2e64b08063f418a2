"""
Unit tests for the booking rules: slot grid, buffer-aware conflicts,
date range overlap and pricing.
"""
import re

import booking_rules
from booking_rules import (
    booking_conflicts,
    booking_period,
    calculate_booking_price,
    current_booking_period,
    date_ranges_overlap,
    format_price,
    generate_end_time_slots,
    generate_time_slots,
    room_name_to_slug,
    slots_overlap,
    time_to_minutes,
    to_minor_units,
)


def test_time_to_minutes():
    assert time_to_minutes("09:30") == 570
    assert time_to_minutes("00:00") == 0
    assert time_to_minutes("bad") is None
    assert time_to_minutes(None) is None


def test_start_slots_cover_opening_hours():
    slots = generate_time_slots()
    assert slots[0] == "09:00"
    assert slots[-1] == "21:30"
    assert len(slots) == 26
    assert "12:30" in slots
    assert "22:00" not in slots


def test_end_slots_cover_opening_hours():
    slots = generate_end_time_slots()
    assert slots[0] == "09:30"
    assert slots[-1] == "22:00"
    assert len(slots) == 26
    assert "09:00" not in slots


def test_slots_overlap_is_half_open():
    assert slots_overlap("10:00", "11:00", "10:30", "11:30") is True
    assert slots_overlap("10:00", "11:00", "11:00", "12:00") is False
    assert slots_overlap("10:00", "11:00", "xx", "12:00") is False


def test_booking_conflicts_respects_buffer_after_existing_booking():
    # Existing 10:00-11:00 blocks until 11:30
    assert booking_conflicts("11:00", "12:00", "10:00", "11:00") is True
    assert booking_conflicts("11:30", "12:00", "10:00", "11:00") is False


def test_booking_conflicts_respects_buffer_after_requested_booking():
    # Requested 09:00-10:00 needs 10:00-10:30 for cleaning
    assert booking_conflicts("09:00", "10:00", "10:00", "11:00") is True
    assert booking_conflicts("09:00", "09:30", "10:00", "11:00") is False


def test_buffer_rows_are_not_extended():
    assert booking_conflicts("11:30", "12:00", "11:00", "11:30", existing_type="buffer") is False
    assert booking_conflicts("11:00", "12:00", "11:00", "11:30", existing_type="buffer") is True


def test_date_ranges_overlap_is_inclusive():
    assert date_ranges_overlap("2030-01-01", "2030-01-05", "2030-01-05", "2030-01-07") is True
    assert date_ranges_overlap("2030-01-01", "2030-01-04", "2030-01-05", "2030-01-07") is False


def test_calculate_booking_price_with_amenities_and_discount():
    price = calculate_booking_price(100, "10:00", "11:30", [50, None], discount_rate=10)
    assert price["hours"] == 1.5
    assert price["room_subtotal"] == 150
    assert price["amenities_total"] == 50
    assert price["subtotal"] == 200
    assert price["discount"] == 20
    assert price["total"] == 180


def test_calculate_booking_price_never_negative():
    price = calculate_booking_price(100, "10:00", "11:00", discount_rate=100)
    assert price["total"] == 0


def test_to_minor_units_rounds():
    assert to_minor_units(499) == 49900
    assert to_minor_units(0.5) == 50
    assert to_minor_units(19.999) == 2000


def test_format_price():
    assert format_price(10.0) == "10"
    assert format_price(10.5) == "10.50"


def test_room_name_to_slug():
    assert room_name_to_slug("Room of Innovation") == "room-of-innovation"
    assert room_name_to_slug("  Board   Room ") == "board-room"


def test_current_booking_period_format():
    assert re.match(r"^\d{4}-\d{2}$", current_booking_period())
    assert booking_rules.today_local().strftime("%Y-%m") == current_booking_period()


def test_booking_period_uses_copenhagen_month():
    # 23:30 UTC on Jan 31 is already February in Copenhagen
    assert booking_period("2025-01-31T23:30:00+00:00") == "2025-02"
    assert booking_period("2025-01-31T12:00:00+00:00") == "2025-01"
    assert booking_period("2025-06-30T21:59:00") == "2025-06"
