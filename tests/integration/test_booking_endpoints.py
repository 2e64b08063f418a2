"""
Integration tests for the booking endpoints: creation with server-side
pricing, payment confirmation and buffers, cancellation, rollback and the
monthly subscription limit.
"""
import datetime
import sqlite3
from datetime import timezone, timedelta

import jwt
import pytest
from werkzeug.security import generate_password_hash

import room_booking as app_module
import stripe_client
from booking_rules import today_local
from stripe_client import StripeError

TOMORROW = (today_local() + timedelta(days=1)).isoformat()


@pytest.fixture
def conn(monkeypatch):
    app_module.app.config["TESTING"] = True
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    monkeypatch.setattr("room_booking.get_db_connection", lambda: conn)
    monkeypatch.setattr("room_booking.DATABASE", ":memory:")
    app_module.init_db()
    yield conn
    conn.close()


@pytest.fixture
def client(conn):
    with app_module.app.test_client() as test_client:
        yield test_client


@pytest.fixture
def payments(monkeypatch):
    """Fake Stripe payment intents; every created intent succeeds when retrieved."""
    intents = {}

    def create_payment_intent(amount, metadata, customer=None, currency=None):
        intent_id = f"pi_{len(intents) + 1}"
        intents[intent_id] = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "amount": amount,
            "metadata": metadata,
            "status": "succeeded",
            "latest_charge": {"id": "ch_1", "receipt_url": "https://pay.stripe.com/receipts/1"},
        }
        return intents[intent_id]

    def retrieve_payment_intent(intent_id):
        if intent_id not in intents:
            raise StripeError("No such payment_intent")
        return intents[intent_id]

    monkeypatch.setattr(stripe_client, "create_payment_intent", create_payment_intent)
    monkeypatch.setattr(stripe_client, "retrieve_payment_intent", retrieve_payment_intent)
    return intents


@pytest.fixture
def setup_data(conn):
    """One room with two amenities, a Basic subscription and two users."""
    cursor = conn.cursor()
    cursor.execute(
        """
        INSERT INTO subscriptions (subscription_name, subscription_monthly_price,
                                   subscription_max_monthly_bookings, subscription_discount_rate)
        VALUES ('Basic', 499, 2, 10)
        """
    )
    sub_id = cursor.lastrowid
    user_role = conn.execute("SELECT role_id FROM roles WHERE role_name = 'user'").fetchone()[0]
    admin_role = conn.execute("SELECT role_id FROM roles WHERE role_name = 'admin'").fetchone()[0]
    now = datetime.datetime.now(timezone.utc).isoformat()
    users = {}
    for email, role in (("alice@test.com", user_role), ("bob@test.com", user_role), ("admin@test.com", admin_role)):
        cursor.execute(
            """
            INSERT INTO users (user_email, user_password_hash, user_company_name, user_role_id,
                               user_subscription_id, user_status, user_created_at)
            VALUES (?, ?, ?, ?, ?, 'active', ?)
            """,
            (email, generate_password_hash("password123"), email.split("@")[0].title(), role, sub_id, now),
        )
        users[email.split("@")[0]] = cursor.lastrowid

    cursor.execute(
        """
        INSERT INTO meeting_rooms (meeting_room_name, meeting_room_capacity, meeting_room_price_per_hour,
                                   meeting_room_size, meeting_room_images)
        VALUES ('Room of Innovation', 10, 100, 30, '[]')
        """
    )
    room_id = cursor.lastrowid
    cursor.execute("INSERT INTO amenities (amenity_name, amenity_price) VALUES ('Projector', 50)")
    projector = cursor.lastrowid
    cursor.execute("INSERT INTO amenities (amenity_name, amenity_price) VALUES ('Catering', 200)")
    catering = cursor.lastrowid
    cursor.execute("INSERT INTO meeting_room_amenities VALUES (?, ?)", (room_id, projector))
    conn.commit()
    return {"subscription_id": sub_id, "room_id": room_id, "projector": projector, "catering": catering, **users}


def bearer(user_id, role="user"):
    token = jwt.encode({"user_id": user_id, "role": role}, app_module.SECRET_KEY, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def book(client, user_id, room_id, start="10:00", end="11:00", **extra):
    body = {
        "meeting_room_id": room_id,
        "booking_date": TOMORROW,
        "start_time": start,
        "end_time": end,
        "number_of_people": 4,
    }
    body.update(extra)
    return client.post("/api/bookings", json=body, headers=bearer(user_id))


def monthly_count(conn, user_id):
    return conn.execute(
        "SELECT user_current_monthly_bookings FROM users WHERE user_id = ?", (user_id,)
    ).fetchone()[0]


# --- Create ---

def test_create_booking_prices_on_server(client, conn, setup_data, payments):
    response = book(client, setup_data["alice"], setup_data["room_id"], amenity_ids=[setup_data["projector"]],
                    booking_total_price=1)
    assert response.status_code == 201
    data = response.get_json()
    # (100 * 1h + 50) - 10%
    assert data["price"]["subtotal"] == 150
    assert data["price"]["discount"] == 15
    assert data["price"]["total"] == 135
    assert data["booking"]["booking_total_price"] == 135
    assert data["booking"]["booking_payment_status"] == "pending"
    assert data["booking"]["amenities"][0]["amenity_name"] == "Projector"
    assert data["client_secret"] == "pi_1_secret"
    assert payments["pi_1"]["amount"] == 13500
    assert payments["pi_1"]["metadata"]["booking_id"] == str(data["booking"]["booking_id"])
    assert monthly_count(conn, setup_data["alice"]) == 1


def test_create_booking_validation_error(client, setup_data, payments):
    response = book(client, setup_data["alice"], setup_data["room_id"], start="10:15")
    assert response.status_code == 422
    assert response.get_json()["code"] == "VALIDATION_ERROR"


def test_create_booking_unknown_room(client, setup_data, payments):
    response = book(client, setup_data["alice"], 999)
    assert response.status_code == 404


def test_create_booking_over_capacity(client, setup_data, payments):
    response = book(client, setup_data["alice"], setup_data["room_id"], number_of_people=11)
    assert response.status_code == 400
    assert response.get_json()["code"] == "CAPACITY_EXCEEDED"


def test_create_booking_amenity_not_in_room(client, setup_data, payments):
    response = book(client, setup_data["alice"], setup_data["room_id"], amenity_ids=[setup_data["catering"]])
    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_AMENITY"


def test_create_booking_conflicts_with_pending_booking(client, setup_data, payments):
    assert book(client, setup_data["alice"], setup_data["room_id"]).status_code == 201
    response = book(client, setup_data["bob"], setup_data["room_id"], start="10:30", end="11:30")
    assert response.status_code == 409
    assert response.get_json()["code"] == "ROOM_UNAVAILABLE"


def test_create_booking_respects_buffer(client, setup_data, payments):
    assert book(client, setup_data["alice"], setup_data["room_id"]).status_code == 201
    # 11:00 falls in the cleaning buffer, 11:30 does not
    assert book(client, setup_data["bob"], setup_data["room_id"], start="11:00", end="12:00").status_code == 409
    assert book(client, setup_data["bob"], setup_data["room_id"], start="11:30", end="12:00").status_code == 201


def test_expired_pending_booking_does_not_block(client, conn, setup_data, payments):
    old = (datetime.datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
    conn.execute(
        """
        INSERT INTO bookings (booking_user_id, booking_meeting_room_id, booking_date, booking_start_time,
                              booking_end_time, booking_number_of_people, booking_total_price,
                              booking_payment_status, booking_created_at)
        VALUES (?, ?, ?, '10:00', '11:00', 2, 100, 'pending', ?)
        """,
        (setup_data["bob"], setup_data["room_id"], TOMORROW, old),
    )
    conn.commit()
    assert book(client, setup_data["alice"], setup_data["room_id"]).status_code == 201


def test_create_booking_in_unavailability_period(client, conn, setup_data, payments):
    conn.execute(
        """
        INSERT INTO room_unavailabilities (meeting_room_id, unavailable_start_date, unavailable_end_date,
                                           unavailability_reason)
        VALUES (?, ?, ?, 'Renovation')
        """,
        (setup_data["room_id"], TOMORROW, TOMORROW),
    )
    conn.commit()
    response = book(client, setup_data["alice"], setup_data["room_id"])
    assert response.status_code == 409
    assert "Renovation" in response.get_json()["message"]


def test_monthly_limit(client, conn, setup_data, payments):
    assert book(client, setup_data["alice"], setup_data["room_id"], start="09:00", end="10:00").status_code == 201
    assert book(client, setup_data["alice"], setup_data["room_id"], start="12:00", end="13:00").status_code == 201
    response = book(client, setup_data["alice"], setup_data["room_id"], start="15:00", end="16:00")
    assert response.status_code == 400
    assert response.get_json()["code"] == "SUBSCRIPTION_LIMIT_EXCEEDED"


def test_monthly_limit_resets_with_new_period(client, conn, setup_data, payments):
    conn.execute(
        "UPDATE users SET user_current_monthly_bookings = 2, user_bookings_period = '2000-01' WHERE user_id = ?",
        (setup_data["alice"],),
    )
    conn.commit()
    assert book(client, setup_data["alice"], setup_data["room_id"]).status_code == 201
    row = conn.execute(
        "SELECT user_current_monthly_bookings, user_bookings_period FROM users WHERE user_id = ?",
        (setup_data["alice"],),
    ).fetchone()
    assert row[0] == 1
    assert row[1] == app_module.current_booking_period()


def test_unlimited_subscription(client, conn, setup_data, payments):
    conn.execute("UPDATE subscriptions SET subscription_max_monthly_bookings = NULL")
    conn.commit()
    for start, end in (("09:00", "09:30"), ("10:00", "10:30"), ("11:00", "11:30")):
        assert book(client, setup_data["alice"], setup_data["room_id"], start=start, end=end).status_code == 201


def test_create_booking_amount_too_small(client, conn, setup_data, payments):
    conn.execute("UPDATE subscriptions SET subscription_discount_rate = 100")
    conn.commit()
    response = book(client, setup_data["alice"], setup_data["room_id"])
    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_AMOUNT"
    assert conn.execute("SELECT COUNT(*) FROM bookings").fetchone()[0] == 0


def test_create_booking_stripe_failure_rolls_back(client, conn, setup_data, monkeypatch):
    def failing_intent(*args, **kwargs):
        raise StripeError("Stripe is down")

    monkeypatch.setattr(stripe_client, "create_payment_intent", failing_intent)
    response = book(client, setup_data["alice"], setup_data["room_id"], amenity_ids=[setup_data["projector"]])
    assert response.status_code == 502
    assert conn.execute("SELECT COUNT(*) FROM bookings").fetchone()[0] == 0
    assert conn.execute("SELECT COUNT(*) FROM booking_amenities").fetchone()[0] == 0
    assert monthly_count(conn, setup_data["alice"]) == 0


def test_refused_booking_releases_write_lock(client, conn, setup_data, payments):
    assert book(client, setup_data["alice"], setup_data["room_id"]).status_code == 201
    assert book(client, setup_data["bob"], setup_data["room_id"]).status_code == 409
    assert not conn.in_transaction
    assert book(client, setup_data["bob"], setup_data["room_id"], number_of_people=50).status_code == 400
    assert not conn.in_transaction
    assert book(client, setup_data["bob"], setup_data["room_id"], start="13:00", end="14:00").status_code == 201


# --- Confirm payment ---

def test_confirm_payment_marks_paid_and_adds_buffer(client, conn, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    booking_id = created["booking"]["booking_id"]

    response = client.post(
        f"/api/bookings/{booking_id}/confirm-payment",
        json={"payment_intent_id": created["payment_intent_id"]},
        headers=bearer(setup_data["alice"]),
    )
    assert response.status_code == 200
    booking = response.get_json()["booking"]
    assert booking["booking_payment_status"] == "paid"
    assert booking["booking_stripe_transaction_id"] == "pi_1"
    assert booking["booking_receipt_url"] == "https://pay.stripe.com/receipts/1"

    buffers = conn.execute(
        "SELECT * FROM bookings WHERE booking_is_type_of_booking = 'buffer'"
    ).fetchall()
    assert len(buffers) == 1
    assert buffers[0]["booking_start_time"] == "11:00"
    assert buffers[0]["booking_end_time"] == "11:30"
    assert buffers[0]["booking_payment_status"] == "confirmed"

    # Confirming again does not add a second buffer
    client.post(
        f"/api/bookings/{booking_id}/confirm-payment",
        json={"payment_intent_id": created["payment_intent_id"]},
        headers=bearer(setup_data["alice"]),
    )
    count = conn.execute("SELECT COUNT(*) FROM bookings WHERE booking_is_type_of_booking = 'buffer'").fetchone()[0]
    assert count == 1


def test_confirm_payment_not_succeeded(client, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    payments["pi_1"]["status"] = "requires_payment_method"
    response = client.post(
        f"/api/bookings/{created['booking']['booking_id']}/confirm-payment",
        json={"payment_intent_id": "pi_1"},
        headers=bearer(setup_data["alice"]),
    )
    assert response.status_code == 400
    assert response.get_json()["code"] == "PAYMENT_NOT_SUCCEEDED"


def test_confirm_payment_only_owner(client, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    response = client.post(
        f"/api/bookings/{created['booking']['booking_id']}/confirm-payment",
        json={"payment_intent_id": "pi_1"},
        headers=bearer(setup_data["bob"]),
    )
    assert response.status_code == 403


def test_confirm_payment_stripe_error(client, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    response = client.post(
        f"/api/bookings/{created['booking']['booking_id']}/confirm-payment",
        json={"payment_intent_id": "pi_missing"},
        headers=bearer(setup_data["alice"]),
    )
    assert response.status_code == 502


def test_confirm_payment_rejects_intent_without_booking(client, conn, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    # A succeeded subscription invoice of the same user carries no booking id
    payments["pi_invoice"] = {"id": "pi_invoice", "amount": 13500, "metadata": {}, "status": "succeeded"}
    response = client.post(
        f"/api/bookings/{created['booking']['booking_id']}/confirm-payment",
        json={"payment_intent_id": "pi_invoice"},
        headers=bearer(setup_data["alice"]),
    )
    assert response.status_code == 400
    assert response.get_json()["code"] == "PAYMENT_MISMATCH"
    status = conn.execute("SELECT booking_payment_status FROM bookings").fetchone()[0]
    assert status == "pending"


def test_confirm_payment_rejects_wrong_amount(client, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    payments["pi_1"]["amount"] = 100
    response = client.post(
        f"/api/bookings/{created['booking']['booking_id']}/confirm-payment",
        json={"payment_intent_id": "pi_1"},
        headers=bearer(setup_data["alice"]),
    )
    assert response.status_code == 400
    assert response.get_json()["code"] == "PAYMENT_MISMATCH"


def _age_booking(conn, booking_id, hours=2):
    old = (datetime.datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
    conn.execute("UPDATE bookings SET booking_created_at = ? WHERE booking_id = ?", (old, booking_id))
    conn.commit()


def test_late_confirmation_refused_when_slot_taken(client, conn, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    alice_booking = created["booking"]["booking_id"]
    _age_booking(conn, alice_booking)

    # The expired hold lets bob take and pay for the same hour
    _paid_booking(client, setup_data, user="bob")

    response = client.post(
        f"/api/bookings/{alice_booking}/confirm-payment",
        json={"payment_intent_id": created["payment_intent_id"]},
        headers=bearer(setup_data["alice"]),
    )
    assert response.status_code == 409
    assert response.get_json()["code"] == "ROOM_UNAVAILABLE"
    assert not conn.in_transaction
    paid = conn.execute(
        "SELECT COUNT(*) FROM bookings WHERE booking_is_type_of_booking = 'booking' AND booking_payment_status = 'paid'"
    ).fetchone()[0]
    assert paid == 1
    assert conn.execute(
        "SELECT COUNT(*) FROM bookings WHERE booking_is_type_of_booking = 'buffer'"
    ).fetchone()[0] == 1


def test_late_confirmation_accepted_when_slot_free(client, conn, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"]).get_json()
    booking_id = created["booking"]["booking_id"]
    _age_booking(conn, booking_id)

    response = client.post(
        f"/api/bookings/{booking_id}/confirm-payment",
        json={"payment_intent_id": created["payment_intent_id"]},
        headers=bearer(setup_data["alice"]),
    )
    assert response.status_code == 200
    assert response.get_json()["booking"]["booking_payment_status"] == "paid"


# --- Cancel & rollback ---

def _paid_booking(client, setup_data, user="alice"):
    created = book(client, setup_data[user], setup_data["room_id"]).get_json()
    booking_id = created["booking"]["booking_id"]
    client.post(
        f"/api/bookings/{booking_id}/confirm-payment",
        json={"payment_intent_id": created["payment_intent_id"]},
        headers=bearer(setup_data[user]),
    )
    return booking_id


def test_cancel_booking_removes_buffer_and_decrements(client, conn, setup_data, payments):
    booking_id = _paid_booking(client, setup_data)
    assert monthly_count(conn, setup_data["alice"]) == 1

    response = client.delete(f"/api/bookings/{booking_id}", headers=bearer(setup_data["alice"]))
    assert response.status_code == 200
    status = conn.execute(
        "SELECT booking_payment_status FROM bookings WHERE booking_id = ?", (booking_id,)
    ).fetchone()[0]
    assert status == "cancelled"
    assert conn.execute(
        "SELECT COUNT(*) FROM bookings WHERE booking_is_type_of_booking = 'buffer'"
    ).fetchone()[0] == 0
    assert monthly_count(conn, setup_data["alice"]) == 0

    # Cancelling twice is a no-op and never drives the counter negative
    response = client.delete(f"/api/bookings/{booking_id}", headers=bearer(setup_data["alice"]))
    assert response.status_code == 200
    assert "already cancelled" in response.get_json()["message"]
    assert monthly_count(conn, setup_data["alice"]) == 0


def test_cancel_booking_from_earlier_month_keeps_current_count(client, conn, setup_data, payments):
    assert book(client, setup_data["alice"], setup_data["room_id"], start="09:00", end="10:00").status_code == 201
    assert book(client, setup_data["alice"], setup_data["room_id"], start="12:00", end="13:00").status_code == 201
    last_month = (datetime.datetime.now(timezone.utc) - timedelta(days=40)).isoformat()
    old_booking = conn.execute(
        """
        INSERT INTO bookings (booking_user_id, booking_meeting_room_id, booking_date, booking_start_time,
                              booking_end_time, booking_number_of_people, booking_total_price,
                              booking_payment_status, booking_created_at)
        VALUES (?, ?, ?, '15:00', '16:00', 2, 90, 'paid', ?)
        """,
        (setup_data["alice"], setup_data["room_id"], TOMORROW, last_month),
    ).lastrowid
    conn.commit()

    response = client.delete(f"/api/bookings/{old_booking}", headers=bearer(setup_data["alice"]))
    assert response.status_code == 200
    assert monthly_count(conn, setup_data["alice"]) == 2

    response = book(client, setup_data["alice"], setup_data["room_id"], start="17:00", end="18:00")
    assert response.status_code == 400
    assert response.get_json()["code"] == "SUBSCRIPTION_LIMIT_EXCEEDED"


def test_cancelled_slot_can_be_booked_again(client, setup_data, payments):
    booking_id = _paid_booking(client, setup_data)
    client.delete(f"/api/bookings/{booking_id}", headers=bearer(setup_data["alice"]))
    assert book(client, setup_data["bob"], setup_data["room_id"]).status_code == 201


def test_cancel_other_users_booking_forbidden(client, setup_data, payments):
    booking_id = _paid_booking(client, setup_data)
    response = client.delete(f"/api/bookings/{booking_id}", headers=bearer(setup_data["bob"]))
    assert response.status_code == 403


def test_admin_can_cancel_any_booking(client, conn, setup_data, payments):
    booking_id = _paid_booking(client, setup_data)
    response = client.post(
        f"/api/admin/bookings/{booking_id}/cancel", headers=bearer(setup_data["admin"], role="admin")
    )
    assert response.status_code == 200
    assert monthly_count(conn, setup_data["alice"]) == 0


def test_rollback_deletes_booking(client, conn, setup_data, payments):
    created = book(client, setup_data["alice"], setup_data["room_id"], amenity_ids=[setup_data["projector"]])
    booking_id = created.get_json()["booking"]["booking_id"]

    response = client.post(f"/api/bookings/{booking_id}/rollback", headers=bearer(setup_data["alice"]))
    assert response.status_code == 200
    assert conn.execute("SELECT COUNT(*) FROM bookings").fetchone()[0] == 0
    assert conn.execute("SELECT COUNT(*) FROM booking_amenities").fetchone()[0] == 0
    assert monthly_count(conn, setup_data["alice"]) == 0


def test_rollback_unknown_booking(client, setup_data):
    response = client.post("/api/bookings/999/rollback", headers=bearer(setup_data["alice"]))
    assert response.status_code == 404


def test_rollback_cancelled_booking_keeps_newer_buffer(client, conn, setup_data, payments):
    first = _paid_booking(client, setup_data)
    client.delete(f"/api/bookings/{first}", headers=bearer(setup_data["alice"]))
    # Same user, same room, same hour: the new buffer must survive the old rollback
    second = _paid_booking(client, setup_data)

    response = client.post(f"/api/bookings/{first}/rollback", headers=bearer(setup_data["alice"]))
    assert response.status_code == 200
    buffers = conn.execute(
        "SELECT booking_parent_id FROM bookings WHERE booking_is_type_of_booking = 'buffer'"
    ).fetchall()
    assert [row[0] for row in buffers] == [second]
    assert monthly_count(conn, setup_data["alice"]) == 1


# --- Reads ---

def test_get_booking_owner_and_admin(client, setup_data, payments):
    booking_id = _paid_booking(client, setup_data)
    response = client.get(f"/api/bookings/{booking_id}", headers=bearer(setup_data["alice"]))
    assert response.status_code == 200
    assert response.get_json()["booking"]["room"]["slug"] == "room-of-innovation"

    assert client.get(f"/api/bookings/{booking_id}", headers=bearer(setup_data["bob"])).status_code == 403
    admin_headers = bearer(setup_data["admin"], role="admin")
    assert client.get(f"/api/bookings/{booking_id}", headers=admin_headers).status_code == 200


def test_list_bookings_filters(client, setup_data, payments):
    _paid_booking(client, setup_data)
    headers = bearer(setup_data["bob"])

    response = client.get(f"/api/bookings?room_id={setup_data['room_id']}&start_date={TOMORROW}", headers=headers)
    assert response.status_code == 200
    rows = response.get_json()["bookings"]
    assert [r["booking_is_type_of_booking"] for r in rows] == ["booking", "buffer"]

    response = client.get("/api/bookings?room_id=999", headers=headers)
    assert response.get_json()["bookings"] == []

    response = client.get("/api/bookings?start_date=not-a-date", headers=headers)
    assert response.status_code == 422


def test_upcoming_bookings_only_paid(client, setup_data, payments):
    _paid_booking(client, setup_data)
    book(client, setup_data["alice"], setup_data["room_id"], start="14:00", end="15:00")

    response = client.get("/api/bookings/mine/upcoming", headers=bearer(setup_data["alice"]))
    bookings = response.get_json()["bookings"]
    assert len(bookings) == 1
    assert bookings[0]["booking_start_time"] == "10:00"
    assert bookings[0]["meeting_room_name"] == "Room of Innovation"


def test_booked_slots_include_company(client, setup_data, payments):
    _paid_booking(client, setup_data)
    response = client.get("/api/bookings/slots", headers=bearer(setup_data["bob"]))
    slots = response.get_json()["slots"]
    assert len(slots) == 2
    assert {s["user_company_name"] for s in slots} == {"Alice"}


def test_room_availability_endpoint(client, setup_data, payments):
    room_id = setup_data["room_id"]
    headers = bearer(setup_data["bob"])
    url = f"/api/rooms/{room_id}/availability?date={TOMORROW}&start_time=10:00&end_time=11:00"

    assert client.get(url, headers=headers).get_json()["available"] is True
    _paid_booking(client, setup_data)
    data = client.get(url, headers=headers).get_json()
    assert data["available"] is False
    assert "reason" in data

    response = client.get(f"/api/rooms/{room_id}/availability?date={TOMORROW}&start_time=10:00", headers=headers)
    assert response.status_code == 422
