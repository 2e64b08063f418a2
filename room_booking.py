import sqlite3
from functools import wraps
import json
import secrets
import shutil
import time

from dotenv import load_dotenv
from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import safe_join
import os
import jwt
import datetime
from datetime import timezone

import stripe_client
from stripe_client import StripeError
from booking_rules import (
    BUFFER_MINUTES,
    MIN_CHARGE_MINOR_UNITS,
    add_minutes,
    booking_conflicts,
    booking_period,
    calculate_booking_price,
    current_booking_period,
    date_ranges_overlap,
    generate_end_time_slots,
    generate_time_slots,
    room_name_to_slug,
    to_minor_units,
    today_local,
)
from booking_schemas import (
    AvailabilityQuery,
    BanUserInput,
    CompleteSignupInput,
    ConfirmPaymentInput,
    CreateAmenityInput,
    CreateBookingInput,
    CreateInviteInput,
    CreateMeetingRoomInput,
    CreateSubscriptionInput,
    CreateUserInput,
    DeleteRoomImagesInput,
    GetBookingsQuery,
    MAX_ROOM_IMAGES,
    RoomAmenitiesInput,
    RoomUnavailabilityInput,
    SignInInput,
    UpdateAmenityInput,
    UpdateEmailInput,
    UpdateMeetingRoomInput,
    UpdatePasswordInput,
    UpdateProfileInput,
    UpdateRoomUnavailabilityInput,
    UpdateSubscriptionInput,
    UpdateUserSubscriptionInput,
    format_validation_error,
)

# --- Configuration ---
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(BASE_DIR, ".env"))

app = Flask(__name__)
# Browser frontends call the API from another origin
CORS(app, resources={r"/api/*": {"origins": "*"}})
app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_UPLOAD_BYTES", 50 * 1024 * 1024))

DATABASE = os.getenv("DATABASE_PATH", os.path.join(BASE_DIR, "room_booking.db"))
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
JWT_EXP_DELTA_SECONDS = int(os.getenv("JWT_EXP_DELTA_SECONDS", 3600))
UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", os.path.join(BASE_DIR, "uploads"))
SITE_URL = os.getenv("SITE_URL", "http://127.0.0.1:5000").rstrip("/")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
PENDING_BOOKING_TTL_MINUTES = int(os.getenv("PENDING_BOOKING_TTL_MINUTES", 30))

ROOM_IMAGE_DIR = "meeting-room-images"
ALLOWED_IMAGE_TYPES = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}

if not os.getenv("PYTEST_CURRENT_TEST"):
    app.logger.info("Using database file: %s", DATABASE)

# --- Database Setup ---


def get_db_connection():
    """Connects to the SQLite database."""
    conn = sqlite3.connect(DATABASE)
    conn.row_factory = sqlite3.Row  # This allows accessing columns by name
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db():
    """Initializes the database schema if it doesn't exist."""
    conn = get_db_connection()
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS roles (
                role_id INTEGER PRIMARY KEY AUTOINCREMENT,
                role_name TEXT UNIQUE NOT NULL
            );

            CREATE TABLE IF NOT EXISTS subscriptions (
                subscription_id INTEGER PRIMARY KEY AUTOINCREMENT,
                subscription_name TEXT UNIQUE NOT NULL,
                subscription_monthly_price REAL NOT NULL DEFAULT 0,
                subscription_max_monthly_bookings INTEGER,
                subscription_discount_rate REAL NOT NULL DEFAULT 0
                    CHECK (subscription_discount_rate >= 0 AND subscription_discount_rate <= 100),
                subscription_stripe_product_id TEXT,
                subscription_stripe_price_id TEXT
            );

            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_email TEXT UNIQUE NOT NULL,
                user_password_hash TEXT NOT NULL,
                user_company_name TEXT UNIQUE NOT NULL,
                user_role_id INTEGER NOT NULL,
                user_subscription_id INTEGER,
                user_current_monthly_bookings INTEGER NOT NULL DEFAULT 0
                    CHECK (user_current_monthly_bookings >= 0),
                user_bookings_period TEXT,
                user_is_banned INTEGER NOT NULL DEFAULT 0,
                user_status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (user_status IN ('pending', 'active')),
                user_stripe_customer_id TEXT,
                user_created_at TEXT NOT NULL,
                FOREIGN KEY (user_role_id) REFERENCES roles(role_id),
                FOREIGN KEY (user_subscription_id) REFERENCES subscriptions(subscription_id)
            );

            CREATE TABLE IF NOT EXISTS invites (
                invite_id INTEGER PRIMARY KEY AUTOINCREMENT,
                invite_token TEXT UNIQUE NOT NULL,
                invite_email TEXT NOT NULL,
                invite_company_name TEXT NOT NULL,
                invite_subscription_id INTEGER NOT NULL,
                invite_role_id INTEGER NOT NULL,
                invite_status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (invite_status IN ('pending', 'completed', 'revoked')),
                invite_created_at TEXT NOT NULL,
                FOREIGN KEY (invite_subscription_id) REFERENCES subscriptions(subscription_id) ON DELETE CASCADE,
                FOREIGN KEY (invite_role_id) REFERENCES roles(role_id)
            );

            CREATE TABLE IF NOT EXISTS meeting_rooms (
                meeting_room_id INTEGER PRIMARY KEY AUTOINCREMENT,
                meeting_room_name TEXT UNIQUE NOT NULL,
                meeting_room_capacity INTEGER NOT NULL,
                meeting_room_price_per_hour REAL NOT NULL,
                meeting_room_size REAL NOT NULL,
                meeting_room_images TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS amenities (
                amenity_id INTEGER PRIMARY KEY AUTOINCREMENT,
                amenity_name TEXT UNIQUE NOT NULL,
                amenity_price REAL
            );

            CREATE TABLE IF NOT EXISTS meeting_room_amenities (
                meeting_room_id INTEGER NOT NULL,
                amenity_id INTEGER NOT NULL,
                PRIMARY KEY (meeting_room_id, amenity_id),
                FOREIGN KEY (meeting_room_id) REFERENCES meeting_rooms(meeting_room_id) ON DELETE CASCADE,
                FOREIGN KEY (amenity_id) REFERENCES amenities(amenity_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS room_unavailabilities (
                unavailability_id INTEGER PRIMARY KEY AUTOINCREMENT,
                meeting_room_id INTEGER NOT NULL,
                unavailable_start_date TEXT NOT NULL,
                unavailable_end_date TEXT NOT NULL,
                unavailability_reason TEXT,
                FOREIGN KEY (meeting_room_id) REFERENCES meeting_rooms(meeting_room_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS bookings (
                booking_id INTEGER PRIMARY KEY AUTOINCREMENT,
                booking_user_id INTEGER NOT NULL,
                booking_meeting_room_id INTEGER NOT NULL,
                booking_date TEXT NOT NULL,
                booking_start_time TEXT NOT NULL,
                booking_end_time TEXT NOT NULL,
                booking_is_type_of_booking TEXT NOT NULL DEFAULT 'booking'
                    CHECK (booking_is_type_of_booking IN ('booking', 'buffer')),
                booking_number_of_people INTEGER NOT NULL,
                booking_total_price REAL NOT NULL DEFAULT 0,
                booking_discount REAL,
                booking_payment_status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (booking_payment_status IN ('pending', 'paid', 'confirmed', 'cancelled')),
                booking_stripe_transaction_id TEXT,
                booking_receipt_url TEXT,
                booking_created_at TEXT NOT NULL,
                booking_parent_id INTEGER,
                FOREIGN KEY (booking_user_id) REFERENCES users(user_id),
                FOREIGN KEY (booking_meeting_room_id) REFERENCES meeting_rooms(meeting_room_id),
                FOREIGN KEY (booking_parent_id) REFERENCES bookings(booking_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS booking_amenities (
                booking_id INTEGER NOT NULL,
                amenity_id INTEGER NOT NULL,
                PRIMARY KEY (booking_id, amenity_id),
                FOREIGN KEY (booking_id) REFERENCES bookings(booking_id) ON DELETE CASCADE,
                FOREIGN KEY (amenity_id) REFERENCES amenities(amenity_id)
            );

            CREATE INDEX IF NOT EXISTS idx_bookings_room_date
                ON bookings (booking_meeting_room_id, booking_date);
            """
        )
        conn.executemany(
            "INSERT OR IGNORE INTO roles (role_name) VALUES (?)", [("admin",), ("user",)]
        )
        conn.commit()
    finally:
        # Tests hand in a shared in-memory connection
        if DATABASE != ":memory:":
            conn.close()
    app.logger.debug("Database initialization complete.")


# --- Response Helpers ---

UNIQUE_CONSTRAINT_MESSAGES = {
    "users.user_email": "This email is already registered.",
    "users.user_company_name": "This company name is already taken.",
    "meeting_rooms.meeting_room_name": "A meeting room with this name already exists.",
    "amenities.amenity_name": "An amenity with this name already exists.",
    "subscriptions.subscription_name": "A subscription with this name already exists.",
    "invites.invite_token": "Invite token collision, please try again.",
}


def error_response(message, status, code=None, details=None):
    body = {"success": False, "message": message}
    if code:
        body["code"] = code
    if details is not None:
        body["details"] = details
    return jsonify(body), status


def validate(schema, data):
    """Validate a dict against a schema; returns (model, error_response)."""
    try:
        return schema.model_validate(data), None
    except ValidationError as e:
        message, details = format_validation_error(e)
        return None, error_response(message, 422, code="VALIDATION_ERROR", details=details)


def parse_body(schema):
    # silent=True keeps Flask from answering bad JSON with an HTML page
    data = request.get_json(silent=True)
    if data is None or not isinstance(data, dict):
        return None, error_response("Invalid JSON payload.", 400)
    return validate(schema, data)


def database_error(conn, e, action):
    """Roll back and translate a sqlite3 error into a JSON response."""
    conn.rollback()
    if isinstance(e, sqlite3.IntegrityError):
        text = str(e)
        for constraint, message in UNIQUE_CONSTRAINT_MESSAGES.items():
            if f"UNIQUE constraint failed: {constraint}" in text:
                return error_response(message, 409, code="DUPLICATE_VALUE")
        if "FOREIGN KEY constraint failed" in text:
            return error_response(
                "This record is still referenced by other data.", 409, code="FOREIGN_KEY_CONSTRAINT"
            )
    app.logger.exception("Database error while trying to %s", action)
    return error_response(f"Failed to {action}.", 500)


def begin_write(conn):
    """Take SQLite's write lock before a check-then-write sequence."""
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")


def stripe_error(e, action):
    app.logger.error("Stripe error while trying to %s: %s", action, e.message)
    return error_response(e.message, 502, code=e.code)


def utc_now_iso():
    return datetime.datetime.now(timezone.utc).isoformat()


def pending_cutoff_iso():
    """Unpaid bookings created before this instant no longer hold their slot."""
    cutoff = datetime.datetime.now(timezone.utc) - datetime.timedelta(minutes=PENDING_BOOKING_TTL_MINUTES)
    return cutoff.isoformat()


# Rows that still block a slot: not cancelled, and not an abandoned checkout
LIVE_BOOKING_FILTER = (
    "b.booking_payment_status != 'cancelled' "
    "AND NOT (b.booking_payment_status = 'pending' AND b.booking_created_at < ?)"
)


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    return error_response(e.description, e.code)


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    app.logger.exception("Unexpected error: %s", e)
    return error_response("An unexpected error occurred.", 500)


# --- Serializers ---

USER_SELECT = """
    SELECT u.*, r.role_name, s.subscription_name, s.subscription_monthly_price,
           s.subscription_discount_rate, s.subscription_max_monthly_bookings,
           s.subscription_stripe_price_id
    FROM users u
    JOIN roles r ON r.role_id = u.user_role_id
    LEFT JOIN subscriptions s ON s.subscription_id = u.user_subscription_id
"""


def effective_monthly_count(user_row):
    """The stored counter only applies to the month it was written in."""
    if user_row["user_bookings_period"] != current_booking_period():
        return 0
    return user_row["user_current_monthly_bookings"] or 0


def serialize_user(row):
    subscription = None
    if row["user_subscription_id"] is not None:
        subscription = {
            "subscription_id": row["user_subscription_id"],
            "subscription_name": row["subscription_name"],
            "subscription_monthly_price": row["subscription_monthly_price"],
            "subscription_discount_rate": row["subscription_discount_rate"],
            "subscription_max_monthly_bookings": row["subscription_max_monthly_bookings"],
        }
    return {
        "user_id": row["user_id"],
        "user_email": row["user_email"],
        "user_company_name": row["user_company_name"],
        "user_role_id": row["user_role_id"],
        "role": row["role_name"],
        "user_status": row["user_status"],
        "user_is_banned": bool(row["user_is_banned"]),
        "user_current_monthly_bookings": effective_monthly_count(row),
        "user_stripe_customer_id": row["user_stripe_customer_id"],
        "user_created_at": row["user_created_at"],
        "subscription": subscription,
    }


def serialize_room(row, amenities=None):
    room = dict(row)
    room["meeting_room_images"] = json.loads(row["meeting_room_images"] or "[]")
    room["slug"] = room_name_to_slug(row["meeting_room_name"])
    if amenities is not None:
        room["amenities"] = amenities
    return room


def serialize_booking(row, amenities=None):
    booking = dict(row)
    if amenities is not None:
        booking["amenities"] = amenities
    return booking


def serialize_invite(row):
    return {
        "invite_id": row["invite_id"],
        "invite_email": row["invite_email"],
        "invite_company_name": row["invite_company_name"],
        "invite_status": row["invite_status"],
        "invite_created_at": row["invite_created_at"],
        "subscription_id": row["invite_subscription_id"],
        "subscription_name": row["subscription_name"],
        "role_id": row["invite_role_id"],
        "role_name": row["role_name"],
    }


# --- Authentication ---


def _generate_token(payload: dict) -> str:
    """Return a JWT for the given payload (adds expiry)."""
    payload_copy = payload.copy()
    payload_copy["exp"] = datetime.datetime.now(timezone.utc) + datetime.timedelta(
        seconds=JWT_EXP_DELTA_SECONDS
    )
    token = jwt.encode(payload_copy, SECRET_KEY, algorithm="HS256")
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def verify_token():
    """Extract and verify JWT token from Authorization header."""
    auth = request.headers.get("Authorization", None)
    if not auth or not auth.startswith("Bearer "):
        return None, error_response("Missing or invalid Authorization header.", 401)

    token = auth.split(" ", 1)[1]
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"]), None
    except jwt.ExpiredSignatureError:
        return None, error_response("Token expired.", 401)
    except jwt.InvalidTokenError:
        return None, error_response("Invalid token.", 401)


def load_user(user_id):
    conn = get_db_connection()
    try:
        return conn.execute(USER_SELECT + " WHERE u.user_id = ?", (user_id,)).fetchone()
    finally:
        if DATABASE != ":memory:":
            conn.close()


def require_auth(f):
    """
    Decorator to require authentication for an endpoint.

    The user row is re-read on every request so bans and deactivations
    take effect before the token expires.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token_data, error = verify_token()
        if error:
            return error
        try:
            row = load_user(token_data.get("user_id"))
        except sqlite3.Error:
            app.logger.exception("Could not load authenticated user")
            return error_response("Failed to authenticate.", 500)
        if row is None:
            return error_response("User no longer exists.", 401)
        if row["user_is_banned"]:
            return error_response("This account has been banned.", 403, code="USER_BANNED")
        if row["user_status"] != "active":
            return error_response("This account is not active yet.", 403, code="USER_NOT_ACTIVE")
        request.current_user = serialize_user(row)
        return f(*args, **kwargs)
    return decorated_function


def require_role(*allowed_roles):
    """Decorator to require specific role(s) for an endpoint."""
    def decorator(f):
        @wraps(f)
        @require_auth
        def decorated_function(*args, **kwargs):
            if request.current_user.get("role") not in allowed_roles:
                return error_response("Insufficient permissions.", 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def is_admin():
    return request.current_user.get("role") == "admin"


@app.route("/api/auth/login", methods=["POST"])
def handle_login():
    """Authenticate user and return JWT token on success."""
    payload, error = parse_body(SignInInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        row = conn.execute(USER_SELECT + " WHERE u.user_email = ?", (payload.email,)).fetchone()

        # Do not leak whether the user exists
        if row is None or not check_password_hash(row["user_password_hash"], payload.password):
            return error_response("Invalid credentials.", 401)
        if row["user_is_banned"]:
            return error_response("This account has been banned.", 403, code="USER_BANNED")
        if row["user_status"] != "active":
            return error_response(
                "This account is not active yet. Complete the subscription payment first.",
                403,
                code="USER_NOT_ACTIVE",
            )

        token = _generate_token({"user_id": row["user_id"], "role": row["role_name"]})
        app.logger.info("User %s signed in", row["user_id"])
        return jsonify({"success": True, "token": token, "user": serialize_user(row)}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "sign in")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/auth/me", methods=["GET"])
@require_auth
def handle_me():
    """Return the signed-in user with role and subscription."""
    return jsonify({"success": True, "user": request.current_user}), 200


# --- Invites & Signup ---

INVITE_SELECT = """
    SELECT i.*, s.subscription_name, s.subscription_monthly_price,
           s.subscription_stripe_price_id, r.role_name
    FROM invites i
    JOIN subscriptions s ON s.subscription_id = i.invite_subscription_id
    JOIN roles r ON r.role_id = i.invite_role_id
"""


def _check_invite(cursor, token):
    """Return (invite, None) for a usable invite or (None, error_response)."""
    cursor.execute(INVITE_SELECT + " WHERE i.invite_token = ?", (token,))
    invite = cursor.fetchone()
    if invite is None:
        return None, error_response("Invite not found.", 404, code="INVITE_NOT_FOUND")
    if invite["invite_status"] != "pending":
        if invite["invite_status"] == "completed":
            message = "This invite has already been used."
        else:
            message = "This invite is no longer valid."
        return None, error_response(message, 409, code="INVITE_ALREADY_USED")
    return invite, None


@app.route("/api/auth/invites/<token>", methods=["GET"])
def get_invite(token):
    conn = get_db_connection()
    try:
        invite, error = _check_invite(conn.cursor(), token)
        if error:
            return error
        data = serialize_invite(invite)
        data["subscription_monthly_price"] = invite["subscription_monthly_price"]
        return jsonify({"success": True, "invite": data}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load invite")
    finally:
        if DATABASE != ":memory:":
            conn.close()


def _subscription_payment_intent(subscription, customer_id, user_id):
    """
    Find the payment intent that pays the subscription's first invoice.

    Stripe normally expands it on the subscription; when it does not (free
    trial, zero-amount first invoice, older API versions) fall back to a
    standalone intent for the invoice amount.
    """
    invoice = subscription.get("latest_invoice")
    if isinstance(invoice, str):
        invoice = stripe_client.retrieve_invoice(invoice)
    invoice = invoice or {}

    intent = invoice.get("payment_intent")
    if isinstance(intent, str):
        intent = stripe_client.retrieve_payment_intent(intent)
    if not intent or not intent.get("client_secret"):
        amount = invoice.get("amount_due") or 0
        if amount < MIN_CHARGE_MINOR_UNITS:
            raise StripeError("Subscription invoice amount is too small to charge.", code="INVALID_AMOUNT")
        intent = stripe_client.create_payment_intent(
            amount,
            {"user_id": str(user_id), "invoice_id": invoice.get("id") or "", "type": "subscription"},
            customer=customer_id,
            currency=invoice.get("currency"),
        )
    return intent, invoice


def _cleanup_signup(cursor, user_id, customer_id, stripe_subscription_id):
    """Undo a half-finished signup so the invite can be retried."""
    if stripe_subscription_id:
        try:
            stripe_client.cancel_subscription(stripe_subscription_id)
        except StripeError as e:
            app.logger.warning("Could not cancel subscription %s: %s", stripe_subscription_id, e.message)
    if customer_id:
        try:
            stripe_client.delete_customer(customer_id)
        except StripeError as e:
            app.logger.warning("Could not delete customer %s: %s", customer_id, e.message)
    cursor.execute("DELETE FROM users WHERE user_id = ?", (user_id,))


@app.route("/api/auth/complete-signup", methods=["POST"])
def complete_signup():
    """Create the invited account and start its subscription payment."""
    payload, error = parse_body(CompleteSignupInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        invite, error = _check_invite(cursor, payload.token)
        if error:
            return error

        price_id = invite["subscription_stripe_price_id"]
        if not price_id:
            return error_response(
                "This subscription has no Stripe price configured.", 400, code="STRIPE_PRICE_MISSING"
            )

        cursor.execute("SELECT 1 FROM users WHERE user_email = ?", (invite["invite_email"],))
        if cursor.fetchone():
            return error_response(
                "An account with this email already exists.", 409, code="USER_ALREADY_EXISTS"
            )

        cursor.execute(
            """
            INSERT INTO users (user_email, user_password_hash, user_company_name, user_role_id,
                               user_subscription_id, user_current_monthly_bookings,
                               user_bookings_period, user_status, user_created_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, 'pending', ?)
            """,
            (
                invite["invite_email"],
                generate_password_hash(payload.password),
                invite["invite_company_name"],
                invite["invite_role_id"],
                invite["invite_subscription_id"],
                current_booking_period(),
                utc_now_iso(),
            ),
        )
        user_id = cursor.lastrowid
        conn.commit()

        customer_id = None
        stripe_subscription_id = None
        try:
            customer = stripe_client.create_customer(
                invite["invite_email"], invite["invite_company_name"], {"user_id": str(user_id)}
            )
            customer_id = customer["id"]
            subscription = stripe_client.create_subscription(customer_id, price_id)
            stripe_subscription_id = subscription["id"]
            intent, invoice = _subscription_payment_intent(subscription, customer_id, user_id)
        except StripeError as e:
            _cleanup_signup(cursor, user_id, customer_id, stripe_subscription_id)
            conn.commit()
            return stripe_error(e, "complete signup")

        cursor.execute(
            "UPDATE users SET user_stripe_customer_id = ? WHERE user_id = ?", (customer_id, user_id)
        )
        cursor.execute(
            "UPDATE invites SET invite_status = 'completed' WHERE invite_id = ?", (invite["invite_id"],)
        )
        conn.commit()
        app.logger.info("Signup completed for user %s, awaiting first payment", user_id)

        amount_due = invoice.get("amount_due")
        if amount_due is None:
            amount_due = intent.get("amount") or 0
        return jsonify({
            "success": True,
            "user_id": user_id,
            "client_secret": intent.get("client_secret"),
            "payment_intent_id": intent.get("id"),
            "subscription_name": invite["subscription_name"],
            "invoice_amount": amount_due / 100,
            "invoice_currency": invoice.get("currency") or intent.get("currency") or stripe_client.default_currency(),
        }), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "complete signup")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/webhooks/stripe", methods=["POST"])
def stripe_webhook():
    """Activate users once their first subscription payment succeeds."""
    if not STRIPE_WEBHOOK_SECRET:
        app.logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        return error_response("Webhook secret not configured.", 500)

    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        return error_response("Missing Stripe-Signature header.", 400)

    try:
        event = stripe_client.construct_event(request.get_data(as_text=True), sig_header, STRIPE_WEBHOOK_SECRET)
    except StripeError as e:
        app.logger.warning("Rejected Stripe webhook: %s", e.message)
        return error_response(e.message, 400, code=e.code)

    if event.get("type") != "payment_intent.succeeded":
        return jsonify({"received": True, "status": "unhandled_event"}), 200

    intent = (event.get("data") or {}).get("object") or {}
    customer_id = intent.get("customer")
    if not customer_id:
        # Booking payments are confirmed by the client, not here
        return jsonify({"received": True, "status": "unhandled_event"}), 200

    try:
        customer = stripe_client.retrieve_customer(customer_id)
    except StripeError as e:
        return stripe_error(e, "load webhook customer")

    user_id = (customer.get("metadata") or {}).get("user_id")
    if not user_id:
        return jsonify({"received": True, "status": "already_processed"}), 200

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "UPDATE users SET user_status = 'active' WHERE user_id = ? AND user_status = 'pending'",
            (user_id,),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return jsonify({"received": True, "status": "already_processed"}), 200
        app.logger.info("User %s activated by payment %s", user_id, intent.get("id"))
        return jsonify({"received": True, "status": "user_activated"}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "activate user")
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Rooms & Amenities ---


def _room_amenities(cursor, room_id):
    cursor.execute(
        """
        SELECT a.amenity_id, a.amenity_name, a.amenity_price
        FROM meeting_room_amenities mra
        JOIN amenities a ON a.amenity_id = mra.amenity_id
        WHERE mra.meeting_room_id = ?
        ORDER BY a.amenity_name
        """,
        (room_id,),
    )
    return [dict(row) for row in cursor.fetchall()]


def _get_room(cursor, room_id):
    cursor.execute("SELECT * FROM meeting_rooms WHERE meeting_room_id = ?", (room_id,))
    return cursor.fetchone()


def _check_room_availability(cursor, room_id, booking_date, start_time=None, end_time=None,
                             exclude_booking_id=None):
    """
    Return (available, reason) for a room on a date, optionally for a time range.

    The requested range and every live booking are both extended by the
    cleaning buffer before comparing. exclude_booking_id leaves a booking
    and its buffer out, so a stored booking can be checked against the rest.
    """
    booking_date = str(booking_date)
    cursor.execute(
        """
        SELECT unavailability_reason FROM room_unavailabilities
        WHERE meeting_room_id = ? AND unavailable_start_date <= ? AND unavailable_end_date >= ?
        """,
        (room_id, booking_date, booking_date),
    )
    blocked = cursor.fetchone()
    if blocked:
        reason = "The room is unavailable on this date."
        if blocked["unavailability_reason"]:
            reason = f"The room is unavailable on this date: {blocked['unavailability_reason']}"
        return False, reason

    if not start_time or not end_time:
        return True, None

    query = f"""
        SELECT b.booking_start_time, b.booking_end_time, b.booking_is_type_of_booking
        FROM bookings b
        WHERE b.booking_meeting_room_id = ? AND b.booking_date = ? AND {LIVE_BOOKING_FILTER}
    """
    params = [room_id, booking_date, pending_cutoff_iso()]
    if exclude_booking_id is not None:
        query += " AND b.booking_id != ? AND COALESCE(b.booking_parent_id, 0) != ?"
        params += [exclude_booking_id, exclude_booking_id]
    cursor.execute(query, params)
    for row in cursor.fetchall():
        if booking_conflicts(
            start_time, end_time, row["booking_start_time"], row["booking_end_time"],
            row["booking_is_type_of_booking"],
        ):
            return False, (
                f"The room is already booked at this time "
                f"(including the {BUFFER_MINUTES} minute buffer between bookings)."
            )
    return True, None


@app.route("/api/rooms", methods=["GET"])
@require_auth
def get_rooms():
    """List meeting rooms with their amenities."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM meeting_rooms ORDER BY meeting_room_name")
        rooms = [serialize_room(row, _room_amenities(cursor, row["meeting_room_id"])) for row in cursor.fetchall()]
        return jsonify({"success": True, "rooms": rooms}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load rooms")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/rooms/<slug>", methods=["GET"])
@require_auth
def get_room_by_slug(slug):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM meeting_rooms")
        for row in cursor.fetchall():
            if room_name_to_slug(row["meeting_room_name"]) == slug.lower():
                room = serialize_room(row, _room_amenities(cursor, row["meeting_room_id"]))
                return jsonify({"success": True, "room": room}), 200
        return error_response("Meeting room not found.", 404)
    except sqlite3.Error as e:
        return database_error(conn, e, "load room")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/rooms/<int:room_id>/amenities", methods=["GET"])
@require_auth
def get_room_amenities(room_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if _get_room(cursor, room_id) is None:
            return error_response("Meeting room not found.", 404)
        return jsonify({"success": True, "amenities": _room_amenities(cursor, room_id)}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load room amenities")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/rooms/<int:room_id>/availability", methods=["GET"])
@require_auth
def get_room_availability(room_id):
    """Check whether a room can be booked on a date, optionally for a time range."""
    query, error = validate(AvailabilityQuery, request.args.to_dict())
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if _get_room(cursor, room_id) is None:
            return error_response("Meeting room not found.", 404)
        available, reason = _check_room_availability(
            cursor, room_id, query.date, query.start_time, query.end_time
        )
        body = {"success": True, "available": available}
        if reason:
            body["reason"] = reason
        return jsonify(body), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "check availability")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/unavailabilities", methods=["GET"])
@require_auth
def get_unavailabilities():
    """Current and future unavailability periods across all rooms."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT ru.*, mr.meeting_room_name
            FROM room_unavailabilities ru
            JOIN meeting_rooms mr ON mr.meeting_room_id = ru.meeting_room_id
            WHERE ru.unavailable_end_date >= ?
            ORDER BY ru.unavailable_start_date, mr.meeting_room_name
            """,
            (today_local().isoformat(),),
        )
        periods = [dict(row) for row in cursor.fetchall()]
        return jsonify({"success": True, "unavailabilities": periods}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load unavailabilities")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/amenities", methods=["GET"])
@require_auth
def get_amenities():
    conn = get_db_connection()
    try:
        rows = conn.execute("SELECT * FROM amenities ORDER BY amenity_name").fetchall()
        return jsonify({"success": True, "amenities": [dict(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load amenities")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/time-slots", methods=["GET"])
@require_auth
def get_time_slots():
    return jsonify({
        "success": True,
        "start_slots": generate_time_slots(),
        "end_slots": generate_end_time_slots(),
    }), 200


# --- Booking Endpoints ---


def _get_booking(cursor, booking_id):
    cursor.execute("SELECT * FROM bookings WHERE booking_id = ?", (booking_id,))
    return cursor.fetchone()


def _booking_amenities(cursor, booking_id):
    cursor.execute(
        """
        SELECT a.amenity_id, a.amenity_name, a.amenity_price
        FROM booking_amenities ba
        JOIN amenities a ON a.amenity_id = ba.amenity_id
        WHERE ba.booking_id = ?
        ORDER BY a.amenity_name
        """,
        (booking_id,),
    )
    return [dict(row) for row in cursor.fetchall()]


def _can_access_booking(booking):
    return booking["booking_user_id"] == request.current_user["user_id"] or is_admin()


def _decrement_monthly_count(cursor, booking):
    """Give back a booking's slot in the monthly counter it was counted in."""
    period = current_booking_period()
    if booking_period(booking["booking_created_at"]) != period:
        return
    cursor.execute(
        """
        UPDATE users
        SET user_current_monthly_bookings = MAX(user_current_monthly_bookings - 1, 0)
        WHERE user_id = ? AND user_bookings_period = ?
        """,
        (booking["booking_user_id"], period),
    )


def _find_buffer(cursor, booking):
    cursor.execute(
        "SELECT * FROM bookings WHERE booking_is_type_of_booking = 'buffer' AND booking_parent_id = ?",
        (booking["booking_id"],),
    )
    return cursor.fetchone()


def _delete_buffer(cursor, booking):
    cursor.execute(
        "DELETE FROM bookings WHERE booking_is_type_of_booking = 'buffer' AND booking_parent_id = ?",
        (booking["booking_id"],),
    )


def _create_buffer(cursor, booking):
    """Block the cleaning time after a paid booking, once."""
    if _find_buffer(cursor, booking):
        return
    cursor.execute(
        """
        INSERT INTO bookings (booking_user_id, booking_meeting_room_id, booking_date,
                              booking_start_time, booking_end_time, booking_is_type_of_booking,
                              booking_number_of_people, booking_total_price,
                              booking_payment_status, booking_created_at, booking_parent_id)
        VALUES (?, ?, ?, ?, ?, 'buffer', ?, 0, 'confirmed', ?, ?)
        """,
        (
            booking["booking_user_id"],
            booking["booking_meeting_room_id"],
            booking["booking_date"],
            booking["booking_end_time"],
            add_minutes(booking["booking_end_time"], BUFFER_MINUTES),
            booking["booking_number_of_people"],
            utc_now_iso(),
            booking["booking_id"],
        ),
    )


def _cancel_booking(cursor, booking):
    """Cancel a booking; returns False when it was already cancelled."""
    if booking["booking_payment_status"] == "cancelled":
        return False
    cursor.execute(
        "UPDATE bookings SET booking_payment_status = 'cancelled' WHERE booking_id = ?",
        (booking["booking_id"],),
    )
    _delete_buffer(cursor, booking)
    _decrement_monthly_count(cursor, booking)
    return True


def _remove_booking(cursor, booking):
    """Delete a booking together with its amenities and buffer."""
    # Cancelled bookings already gave back their buffer and counter slot
    if booking["booking_payment_status"] != "cancelled":
        _delete_buffer(cursor, booking)
        _decrement_monthly_count(cursor, booking)
    cursor.execute("DELETE FROM booking_amenities WHERE booking_id = ?", (booking["booking_id"],))
    cursor.execute("DELETE FROM bookings WHERE booking_id = ?", (booking["booking_id"],))


@app.route("/api/bookings", methods=["POST"])
@require_auth
def create_booking():
    """
    Reserve a room and start the card payment.

    The booking is stored as pending and counted against the monthly limit
    right away; the returned client secret is used to pay, after which the
    client calls confirm-payment.
    """
    payload, error = parse_body(CreateBookingInput)
    if error:
        return error

    user_id = request.current_user["user_id"]
    booking_date = payload.booking_date.isoformat()

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        begin_write(conn)
        try:
            room = _get_room(cursor, payload.meeting_room_id)
            if room is None:
                return error_response("Meeting room not found.", 404)
            if payload.number_of_people > room["meeting_room_capacity"]:
                return error_response(
                    f"This room fits at most {room['meeting_room_capacity']} people.",
                    400,
                    code="CAPACITY_EXCEEDED",
                )

            room_amenities = {a["amenity_id"]: a for a in _room_amenities(cursor, room["meeting_room_id"])}
            amenity_ids = sorted(set(payload.amenity_ids))
            invalid = [a for a in amenity_ids if a not in room_amenities]
            if invalid:
                return error_response(
                    "Some selected amenities are not available in this room.",
                    400,
                    code="INVALID_AMENITY",
                    details=[{"amenity_id": a} for a in invalid],
                )

            available, reason = _check_room_availability(
                cursor, room["meeting_room_id"], booking_date, payload.start_time, payload.end_time
            )
            if not available:
                return error_response(reason, 409, code="ROOM_UNAVAILABLE")

            user = conn.execute(USER_SELECT + " WHERE u.user_id = ?", (user_id,)).fetchone()
            monthly_count = effective_monthly_count(user)
            limit = user["subscription_max_monthly_bookings"]
            if limit is not None and monthly_count >= limit:
                return error_response(
                    f"You have reached your monthly limit of {limit} bookings.",
                    400,
                    code="SUBSCRIPTION_LIMIT_EXCEEDED",
                )

            price = calculate_booking_price(
                room["meeting_room_price_per_hour"],
                payload.start_time,
                payload.end_time,
                [room_amenities[a]["amenity_price"] for a in amenity_ids],
                user["subscription_discount_rate"] or 0,
            )
            amount_minor = to_minor_units(price["total"])
            if amount_minor < MIN_CHARGE_MINOR_UNITS:
                return error_response("The booking amount is too small to charge.", 400, code="INVALID_AMOUNT")

            cursor.execute(
                """
                INSERT INTO bookings (booking_user_id, booking_meeting_room_id, booking_date,
                                      booking_start_time, booking_end_time, booking_is_type_of_booking,
                                      booking_number_of_people, booking_total_price, booking_discount,
                                      booking_payment_status, booking_created_at)
                VALUES (?, ?, ?, ?, ?, 'booking', ?, ?, ?, 'pending', ?)
                """,
                (
                    user_id,
                    room["meeting_room_id"],
                    booking_date,
                    payload.start_time,
                    payload.end_time,
                    payload.number_of_people,
                    price["total"],
                    price["discount"] or None,
                    utc_now_iso(),
                ),
            )
            booking_id = cursor.lastrowid
            cursor.executemany(
                "INSERT INTO booking_amenities (booking_id, amenity_id) VALUES (?, ?)",
                [(booking_id, a) for a in amenity_ids],
            )
            cursor.execute(
                """
                UPDATE users SET user_current_monthly_bookings = ?, user_bookings_period = ?
                WHERE user_id = ?
                """,
                (monthly_count + 1, current_booking_period(), user_id),
            )
            conn.commit()
        finally:
            if conn.in_transaction:
                conn.rollback()

        try:
            intent = stripe_client.create_payment_intent(
                amount_minor,
                {"booking_id": str(booking_id), "user_id": str(user_id), "type": "booking"},
                customer=user["user_stripe_customer_id"],
            )
        except StripeError as e:
            _remove_booking(cursor, _get_booking(cursor, booking_id))
            conn.commit()
            return stripe_error(e, "create booking payment")

        app.logger.info(
            "Booking %s created for room %s on %s %s-%s",
            booking_id, room["meeting_room_id"], booking_date, payload.start_time, payload.end_time,
        )
        booking = serialize_booking(_get_booking(cursor, booking_id), _booking_amenities(cursor, booking_id))
        return jsonify({
            "success": True,
            "booking": booking,
            "client_secret": intent.get("client_secret"),
            "payment_intent_id": intent.get("id"),
            "price": price,
        }), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "create booking")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/bookings/<int:booking_id>/confirm-payment", methods=["POST"])
@require_auth
def confirm_booking_payment(booking_id):
    """Mark a booking paid once its payment intent has succeeded."""
    payload, error = parse_body(ConfirmPaymentInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        booking = _get_booking(cursor, booking_id)
        if booking is None or booking["booking_is_type_of_booking"] != "booking":
            return error_response("Booking not found.", 404)
        if booking["booking_user_id"] != request.current_user["user_id"]:
            return error_response("You can only confirm your own bookings.", 403)
        if booking["booking_payment_status"] == "cancelled":
            return error_response("This booking has been cancelled.", 400, code="BOOKING_CANCELLED")

        try:
            intent = stripe_client.retrieve_payment_intent(payload.payment_intent_id)
        except StripeError as e:
            return stripe_error(e, "load payment intent")

        metadata = intent.get("metadata") or {}
        if (
            metadata.get("booking_id") != str(booking_id)
            or intent.get("amount") != to_minor_units(booking["booking_total_price"])
        ):
            return error_response(
                "This payment does not belong to this booking.", 400, code="PAYMENT_MISMATCH"
            )
        if intent.get("status") != "succeeded":
            return error_response(
                f"Payment has not succeeded (status: {intent.get('status')}).",
                400,
                code="PAYMENT_NOT_SUCCEEDED",
            )

        receipt_url = None
        charge = intent.get("latest_charge")
        try:
            if isinstance(charge, str):
                charge = stripe_client.retrieve_charge(charge)
        except StripeError as e:
            app.logger.warning("No receipt for booking %s: %s", booking_id, e.message)
            charge = None
        if isinstance(charge, dict):
            receipt_url = charge.get("receipt_url")

        begin_write(conn)
        try:
            # An unpaid booking past its hold may have lost the slot to someone else
            stale = (
                booking["booking_payment_status"] == "pending"
                and booking["booking_created_at"] < pending_cutoff_iso()
            )
            if stale:
                available, reason = _check_room_availability(
                    cursor, booking["booking_meeting_room_id"], booking["booking_date"],
                    booking["booking_start_time"], booking["booking_end_time"],
                    exclude_booking_id=booking_id,
                )
                if not available:
                    app.logger.warning(
                        "Late payment %s for booking %s refused: slot taken", intent.get("id"), booking_id
                    )
                    return error_response(reason, 409, code="ROOM_UNAVAILABLE")

            cursor.execute(
                """
                UPDATE bookings
                SET booking_payment_status = 'paid', booking_stripe_transaction_id = ?,
                    booking_receipt_url = COALESCE(?, booking_receipt_url)
                WHERE booking_id = ?
                """,
                (intent.get("id"), receipt_url, booking_id),
            )
            _create_buffer(cursor, booking)
            conn.commit()
        finally:
            if conn.in_transaction:
                conn.rollback()
        app.logger.info("Booking %s paid with %s", booking_id, intent.get("id"))

        booking = serialize_booking(_get_booking(cursor, booking_id), _booking_amenities(cursor, booking_id))
        return jsonify({"success": True, "booking": booking}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "confirm payment")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/bookings/<int:booking_id>/rollback", methods=["POST"])
@require_auth
def rollback_booking(booking_id):
    """Throw away a booking whose checkout was abandoned."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        booking = _get_booking(cursor, booking_id)
        if booking is None or booking["booking_is_type_of_booking"] != "booking":
            return error_response("Booking not found.", 404)
        if not _can_access_booking(booking):
            return error_response("You can only roll back your own bookings.", 403)

        _remove_booking(cursor, booking)
        conn.commit()
        app.logger.info("Booking %s rolled back", booking_id)
        return jsonify({"success": True, "message": "Booking rolled back."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "roll back booking")
    finally:
        if DATABASE != ":memory:":
            conn.close()


def _cancel_booking_response(booking_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        booking = _get_booking(cursor, booking_id)
        if booking is None or booking["booking_is_type_of_booking"] != "booking":
            return error_response("Booking not found.", 404)
        if not _can_access_booking(booking):
            return error_response("You can only cancel your own bookings.", 403)

        if not _cancel_booking(cursor, booking):
            return jsonify({"success": True, "message": "Booking was already cancelled."}), 200
        conn.commit()
        app.logger.info("Booking %s cancelled by user %s", booking_id, request.current_user["user_id"])
        return jsonify({"success": True, "message": "Booking cancelled successfully."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "cancel booking")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/bookings/<int:booking_id>", methods=["DELETE"])
@require_auth
def cancel_booking(booking_id):
    """Cancel a booking. Users can cancel their own bookings, admin can cancel any."""
    return _cancel_booking_response(booking_id)


@app.route("/api/bookings/<int:booking_id>", methods=["GET"])
@require_auth
def get_booking(booking_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        booking = _get_booking(cursor, booking_id)
        if booking is None:
            return error_response("Booking not found.", 404)
        if not _can_access_booking(booking):
            return error_response("You can only view your own bookings.", 403)

        data = serialize_booking(booking, _booking_amenities(cursor, booking_id))
        room = _get_room(cursor, booking["booking_meeting_room_id"])
        data["room"] = serialize_room(room) if room else None
        return jsonify({"success": True, "booking": data}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load booking")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/bookings", methods=["GET"])
@require_auth
def get_bookings():
    """Live bookings and buffers, optionally filtered by room and date range."""
    query, error = validate(GetBookingsQuery, request.args.to_dict())
    if error:
        return error

    sql = f"""
        SELECT b.*, mr.meeting_room_name
        FROM bookings b
        JOIN meeting_rooms mr ON mr.meeting_room_id = b.booking_meeting_room_id
        WHERE {LIVE_BOOKING_FILTER}
    """
    params = [pending_cutoff_iso()]
    if query.room_id is not None:
        sql += " AND b.booking_meeting_room_id = ?"
        params.append(query.room_id)
    if query.start_date is not None:
        sql += " AND b.booking_date >= ?"
        params.append(query.start_date.isoformat())
    if query.end_date is not None:
        sql += " AND b.booking_date <= ?"
        params.append(query.end_date.isoformat())
    sql += " ORDER BY b.booking_date, b.booking_start_time"

    conn = get_db_connection()
    try:
        rows = conn.execute(sql, params).fetchall()
        return jsonify({"success": True, "bookings": [serialize_booking(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load bookings")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/bookings/mine/upcoming", methods=["GET"])
@require_auth
def get_my_upcoming_bookings():
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT b.*, mr.meeting_room_name
            FROM bookings b
            JOIN meeting_rooms mr ON mr.meeting_room_id = b.booking_meeting_room_id
            WHERE b.booking_user_id = ? AND b.booking_is_type_of_booking = 'booking'
              AND b.booking_payment_status = 'paid' AND b.booking_date >= ?
            ORDER BY b.booking_date, b.booking_start_time
            """,
            (request.current_user["user_id"], today_local().isoformat()),
        )
        bookings = [
            serialize_booking(row, _booking_amenities(cursor, row["booking_id"])) for row in cursor.fetchall()
        ]
        return jsonify({"success": True, "bookings": bookings}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load upcoming bookings")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/bookings/slots", methods=["GET"])
@require_auth
def get_booked_slots():
    """Calendar overview: paid bookings and their buffers from today on."""
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """
            SELECT b.booking_id, b.booking_meeting_room_id, b.booking_date, b.booking_start_time,
                   b.booking_end_time, b.booking_is_type_of_booking, b.booking_payment_status,
                   u.user_company_name, mr.meeting_room_name
            FROM bookings b
            JOIN users u ON u.user_id = b.booking_user_id
            JOIN meeting_rooms mr ON mr.meeting_room_id = b.booking_meeting_room_id
            WHERE b.booking_payment_status IN ('paid', 'confirmed') AND b.booking_date >= ?
            ORDER BY b.booking_date, b.booking_start_time, mr.meeting_room_name
            """,
            (today_local().isoformat(),),
        ).fetchall()
        return jsonify({"success": True, "slots": [dict(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load booked slots")
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Profile ---


@app.route("/api/profile", methods=["PATCH"])
@require_auth
def update_profile():
    payload, error = parse_body(UpdateProfileInput)
    if error:
        return error
    if payload.user_company_name is None:
        return error_response("No fields to update.", 400, code="NO_FIELDS")

    conn = get_db_connection()
    try:
        conn.execute(
            "UPDATE users SET user_company_name = ? WHERE user_id = ?",
            (payload.user_company_name, request.current_user["user_id"]),
        )
        conn.commit()
        user = serialize_user(conn.execute(USER_SELECT + " WHERE u.user_id = ?",
                                           (request.current_user["user_id"],)).fetchone())
        return jsonify({"success": True, "user": user}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update profile")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/profile/email", methods=["PUT"])
@require_auth
def update_email():
    payload, error = parse_body(UpdateEmailInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        conn.execute(
            "UPDATE users SET user_email = ? WHERE user_id = ?",
            (payload.email, request.current_user["user_id"]),
        )
        conn.commit()
        return jsonify({"success": True, "message": "Email updated.", "email": payload.email}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update email")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/profile/password", methods=["PUT"])
@require_auth
def update_password():
    payload, error = parse_body(UpdatePasswordInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        conn.execute(
            "UPDATE users SET user_password_hash = ? WHERE user_id = ?",
            (generate_password_hash(payload.password), request.current_user["user_id"]),
        )
        conn.commit()
        return jsonify({"success": True, "message": "Password updated."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update password")
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Admin: Meeting Rooms ---


def _set_room_amenities(cursor, room_id, amenity_ids):
    """Replace a room's amenity set; returns the unknown ids (nothing written then)."""
    amenity_ids = sorted(set(amenity_ids))
    if amenity_ids:
        placeholders = ",".join("?" for _ in amenity_ids)
        cursor.execute(f"SELECT amenity_id FROM amenities WHERE amenity_id IN ({placeholders})", amenity_ids)
        known = {row["amenity_id"] for row in cursor.fetchall()}
        unknown = [a for a in amenity_ids if a not in known]
        if unknown:
            return unknown
    cursor.execute("DELETE FROM meeting_room_amenities WHERE meeting_room_id = ?", (room_id,))
    cursor.executemany(
        "INSERT INTO meeting_room_amenities (meeting_room_id, amenity_id) VALUES (?, ?)",
        [(room_id, a) for a in amenity_ids],
    )
    return []


@app.route("/api/admin/rooms", methods=["POST"])
@require_role("admin")
def create_room():
    """Create a new meeting room (admin only)."""
    payload, error = parse_body(CreateMeetingRoomInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT INTO meeting_rooms (meeting_room_name, meeting_room_capacity,
                                       meeting_room_price_per_hour, meeting_room_size, meeting_room_images)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                payload.meeting_room_name,
                payload.meeting_room_capacity,
                payload.meeting_room_price_per_hour,
                payload.meeting_room_size,
                json.dumps(payload.meeting_room_images),
            ),
        )
        room_id = cursor.lastrowid
        unknown = _set_room_amenities(cursor, room_id, payload.amenity_ids)
        if unknown:
            conn.rollback()
            return error_response("Unknown amenities.", 400, code="INVALID_AMENITY",
                                  details=[{"amenity_id": a} for a in unknown])
        conn.commit()
        app.logger.info("Meeting room %s created", room_id)
        room = serialize_room(_get_room(cursor, room_id), _room_amenities(cursor, room_id))
        return jsonify({"success": True, "room": room}), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "create room")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/rooms/<int:room_id>", methods=["PUT"])
@require_role("admin")
def update_room(room_id):
    payload, error = parse_body(UpdateMeetingRoomInput)
    if error:
        return error
    updates = payload.model_dump(exclude_none=True)
    if not updates:
        return error_response("No fields to update.", 400, code="NO_FIELDS")
    if "meeting_room_images" in updates:
        updates["meeting_room_images"] = json.dumps(updates["meeting_room_images"])

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if _get_room(cursor, room_id) is None:
            return error_response("Meeting room not found.", 404)
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cursor.execute(
            f"UPDATE meeting_rooms SET {assignments} WHERE meeting_room_id = ?",
            list(updates.values()) + [room_id],
        )
        conn.commit()
        room = serialize_room(_get_room(cursor, room_id), _room_amenities(cursor, room_id))
        return jsonify({"success": True, "room": room}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update room")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/rooms/<int:room_id>", methods=["DELETE"])
@require_role("admin")
def delete_room(room_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if _get_room(cursor, room_id) is None:
            return error_response("Meeting room not found.", 404)
        cursor.execute("SELECT COUNT(*) FROM bookings WHERE booking_meeting_room_id = ?", (room_id,))
        if cursor.fetchone()[0]:
            return error_response(
                "This room has bookings and cannot be deleted.", 409, code="ROOM_HAS_BOOKINGS"
            )
        cursor.execute("DELETE FROM meeting_room_amenities WHERE meeting_room_id = ?", (room_id,))
        cursor.execute("DELETE FROM meeting_rooms WHERE meeting_room_id = ?", (room_id,))
        conn.commit()
        shutil.rmtree(os.path.join(UPLOAD_FOLDER, ROOM_IMAGE_DIR, str(room_id)), ignore_errors=True)
        app.logger.info("Meeting room %s deleted", room_id)
        return jsonify({"success": True, "message": "Meeting room deleted."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "delete room")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/rooms/<int:room_id>/amenities", methods=["PUT"])
@require_role("admin")
def set_room_amenities(room_id):
    payload, error = parse_body(RoomAmenitiesInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if _get_room(cursor, room_id) is None:
            return error_response("Meeting room not found.", 404)
        unknown = _set_room_amenities(cursor, room_id, payload.amenity_ids)
        if unknown:
            return error_response("Unknown amenities.", 400, code="INVALID_AMENITY",
                                  details=[{"amenity_id": a} for a in unknown])
        conn.commit()
        return jsonify({"success": True, "amenities": _room_amenities(cursor, room_id)}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update room amenities")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/rooms/<int:room_id>/images", methods=["POST"])
@require_role("admin")
def upload_room_images(room_id):
    """Store uploaded JPEG/PNG/WebP files and append their URLs to the room."""
    files = [f for f in request.files.getlist("images") if f and f.filename]
    if not files:
        return error_response("No images uploaded.", 400)
    for file in files:
        if file.mimetype not in ALLOWED_IMAGE_TYPES:
            return error_response(
                f"Unsupported image type: {file.mimetype}. Use JPEG, PNG or WebP.",
                400,
                code="INVALID_FILE_TYPE",
            )

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        room = _get_room(cursor, room_id)
        if room is None:
            return error_response("Meeting room not found.", 404)
        images = json.loads(room["meeting_room_images"] or "[]")
        if len(images) + len(files) > MAX_ROOM_IMAGES:
            return error_response(
                f"A room can have at most {MAX_ROOM_IMAGES} images.", 400, code="TOO_MANY_IMAGES"
            )

        folder = os.path.join(UPLOAD_FOLDER, ROOM_IMAGE_DIR, str(room_id))
        os.makedirs(folder, exist_ok=True)
        urls = []
        for file in files:
            filename = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}.{ALLOWED_IMAGE_TYPES[file.mimetype]}"
            file.save(os.path.join(folder, filename))
            urls.append(f"/uploads/{ROOM_IMAGE_DIR}/{room_id}/{filename}")

        cursor.execute(
            "UPDATE meeting_rooms SET meeting_room_images = ? WHERE meeting_room_id = ?",
            (json.dumps(images + urls), room_id),
        )
        conn.commit()
        return jsonify({"success": True, "urls": urls, "images": images + urls}), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "upload images")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/rooms/<int:room_id>/images", methods=["DELETE"])
@require_role("admin")
def delete_room_images(room_id):
    payload, error = parse_body(DeleteRoomImagesInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        room = _get_room(cursor, room_id)
        if room is None:
            return error_response("Meeting room not found.", 404)
        images = json.loads(room["meeting_room_images"] or "[]")
        remaining = [url for url in images if url not in payload.urls]

        for url in payload.urls:
            if url in images and url.startswith("/uploads/"):
                path = safe_join(UPLOAD_FOLDER, url[len("/uploads/"):])
                if path and os.path.isfile(path):
                    os.remove(path)

        cursor.execute(
            "UPDATE meeting_rooms SET meeting_room_images = ? WHERE meeting_room_id = ?",
            (json.dumps(remaining), room_id),
        )
        conn.commit()
        return jsonify({"success": True, "images": remaining}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "delete images")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/uploads/<path:filename>", methods=["GET"])
def serve_upload(filename):
    return send_from_directory(UPLOAD_FOLDER, filename)


# --- Admin: Room Unavailability ---


def _unavailability_conflict(cursor, room_id, start_date, end_date, exclude_id=None):
    """Return an error response when the period clashes, else None."""
    cursor.execute(
        "SELECT * FROM room_unavailabilities WHERE meeting_room_id = ? AND unavailability_id != ?",
        (room_id, exclude_id or 0),
    )
    for period in cursor.fetchall():
        if date_ranges_overlap(
            start_date, end_date, period["unavailable_start_date"], period["unavailable_end_date"]
        ):
            return error_response(
                "This period overlaps another unavailability period for the room.",
                409,
                code="OVERLAPPING_DATES",
            )

    cursor.execute(
        f"""
        SELECT COUNT(*) FROM bookings b
        WHERE b.booking_meeting_room_id = ? AND b.booking_is_type_of_booking = 'booking'
          AND b.booking_date >= ? AND b.booking_date <= ? AND {LIVE_BOOKING_FILTER}
        """,
        (room_id, str(start_date), str(end_date), pending_cutoff_iso()),
    )
    if cursor.fetchone()[0]:
        return error_response(
            "The room has bookings in this period.", 409, code="BOOKING_CONFLICT"
        )
    return None


@app.route("/api/admin/rooms/<int:room_id>/unavailabilities", methods=["GET"])
@require_role("admin")
def get_room_unavailabilities(room_id):
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """
            SELECT * FROM room_unavailabilities WHERE meeting_room_id = ?
            ORDER BY unavailable_start_date
            """,
            (room_id,),
        ).fetchall()
        return jsonify({"success": True, "unavailabilities": [dict(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load unavailabilities")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/rooms/<int:room_id>/unavailabilities", methods=["POST"])
@require_role("admin")
def create_room_unavailability(room_id):
    payload, error = parse_body(RoomUnavailabilityInput)
    if error:
        return error
    start_date = payload.unavailable_start_date.isoformat()
    end_date = payload.unavailable_end_date.isoformat()

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if _get_room(cursor, room_id) is None:
            return error_response("Meeting room not found.", 404)
        conflict = _unavailability_conflict(cursor, room_id, start_date, end_date)
        if conflict:
            return conflict

        cursor.execute(
            """
            INSERT INTO room_unavailabilities (meeting_room_id, unavailable_start_date,
                                               unavailable_end_date, unavailability_reason)
            VALUES (?, ?, ?, ?)
            """,
            (room_id, start_date, end_date, payload.unavailability_reason),
        )
        conn.commit()
        cursor.execute("SELECT * FROM room_unavailabilities WHERE unavailability_id = ?", (cursor.lastrowid,))
        return jsonify({"success": True, "unavailability": dict(cursor.fetchone())}), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "create unavailability")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/unavailabilities/<int:unavailability_id>", methods=["PUT"])
@require_role("admin")
def update_room_unavailability(unavailability_id):
    payload, error = parse_body(UpdateRoomUnavailabilityInput)
    if error:
        return error
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        return error_response("No fields to update.", 400, code="NO_FIELDS")

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM room_unavailabilities WHERE unavailability_id = ?", (unavailability_id,))
        period = cursor.fetchone()
        if period is None:
            return error_response("Unavailability period not found.", 404)

        start_date = str(updates.get("unavailable_start_date") or period["unavailable_start_date"])
        end_date = str(updates.get("unavailable_end_date") or period["unavailable_end_date"])
        if end_date < start_date:
            return error_response(
                "End date must be on or after the start date.", 422, code="VALIDATION_ERROR"
            )
        reason = updates.get("unavailability_reason", period["unavailability_reason"])

        conflict = _unavailability_conflict(
            cursor, period["meeting_room_id"], start_date, end_date, exclude_id=unavailability_id
        )
        if conflict:
            return conflict

        cursor.execute(
            """
            UPDATE room_unavailabilities
            SET unavailable_start_date = ?, unavailable_end_date = ?, unavailability_reason = ?
            WHERE unavailability_id = ?
            """,
            (start_date, end_date, reason, unavailability_id),
        )
        conn.commit()
        cursor.execute("SELECT * FROM room_unavailabilities WHERE unavailability_id = ?", (unavailability_id,))
        return jsonify({"success": True, "unavailability": dict(cursor.fetchone())}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update unavailability")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/unavailabilities/<int:unavailability_id>", methods=["DELETE"])
@require_role("admin")
def delete_room_unavailability(unavailability_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("DELETE FROM room_unavailabilities WHERE unavailability_id = ?", (unavailability_id,))
        if cursor.rowcount == 0:
            return error_response("Unavailability period not found.", 404)
        conn.commit()
        return jsonify({"success": True, "message": "Unavailability period deleted."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "delete unavailability")
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Admin: Amenities ---


@app.route("/api/admin/amenities", methods=["GET"])
@require_role("admin")
def admin_get_amenities():
    """Amenities with the number of rooms offering each."""
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """
            SELECT a.*, COUNT(mra.meeting_room_id) AS room_count
            FROM amenities a
            LEFT JOIN meeting_room_amenities mra ON mra.amenity_id = a.amenity_id
            GROUP BY a.amenity_id
            ORDER BY a.amenity_name
            """
        ).fetchall()
        return jsonify({"success": True, "amenities": [dict(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load amenities")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/amenities", methods=["POST"])
@require_role("admin")
def create_amenity():
    payload, error = parse_body(CreateAmenityInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "INSERT INTO amenities (amenity_name, amenity_price) VALUES (?, ?)",
            (payload.amenity_name, payload.amenity_price),
        )
        conn.commit()
        cursor.execute("SELECT * FROM amenities WHERE amenity_id = ?", (cursor.lastrowid,))
        return jsonify({"success": True, "amenity": dict(cursor.fetchone())}), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "create amenity")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/amenities/<int:amenity_id>", methods=["PUT"])
@require_role("admin")
def update_amenity(amenity_id):
    payload, error = parse_body(UpdateAmenityInput)
    if error:
        return error
    # A null price clears it; a null name is ignored
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("amenity_name") is None:
        updates.pop("amenity_name", None)
    if not updates:
        return error_response("No fields to update.", 400, code="NO_FIELDS")

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cursor.execute(
            f"UPDATE amenities SET {assignments} WHERE amenity_id = ?",
            list(updates.values()) + [amenity_id],
        )
        if cursor.rowcount == 0:
            return error_response("Amenity not found.", 404)
        conn.commit()
        cursor.execute("SELECT * FROM amenities WHERE amenity_id = ?", (amenity_id,))
        return jsonify({"success": True, "amenity": dict(cursor.fetchone())}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update amenity")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/amenities/<int:amenity_id>", methods=["DELETE"])
@require_role("admin")
def delete_amenity(amenity_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("DELETE FROM amenities WHERE amenity_id = ?", (amenity_id,))
        if cursor.rowcount == 0:
            return error_response("Amenity not found.", 404)
        conn.commit()
        return jsonify({"success": True, "message": "Amenity deleted."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "delete amenity")
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Admin: Bookings ---


@app.route("/api/admin/bookings", methods=["GET"])
@require_role("admin")
def admin_get_bookings():
    """All bookings with user, room and the buffer that follows each one."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT booking_parent_id, booking_start_time, booking_end_time
            FROM bookings WHERE booking_is_type_of_booking = 'buffer'
            """
        )
        buffers = {
            row["booking_parent_id"]: {"start_time": row["booking_start_time"], "end_time": row["booking_end_time"]}
            for row in cursor.fetchall()
        }

        cursor.execute(
            """
            SELECT b.*, u.user_email, u.user_company_name, mr.meeting_room_name
            FROM bookings b
            JOIN users u ON u.user_id = b.booking_user_id
            JOIN meeting_rooms mr ON mr.meeting_room_id = b.booking_meeting_room_id
            WHERE b.booking_is_type_of_booking = 'booking'
            ORDER BY b.booking_date DESC, b.booking_start_time
            """
        )
        bookings = []
        for row in cursor.fetchall():
            booking = serialize_booking(row)
            booking["buffer"] = buffers.get(row["booking_id"])
            bookings.append(booking)
        return jsonify({"success": True, "bookings": bookings}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load bookings")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/bookings/<int:booking_id>/cancel", methods=["POST"])
@require_role("admin")
def admin_cancel_booking(booking_id):
    return _cancel_booking_response(booking_id)


# --- Admin: Subscriptions ---


def _product_metadata(max_monthly_bookings, discount_rate):
    return {
        "max_monthly_bookings": "unlimited" if max_monthly_bookings is None else str(max_monthly_bookings),
        "discount_rate": str(discount_rate),
    }


def _metadata_int(value):
    if value in (None, "", "unlimited", "null"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _metadata_rate(value):
    try:
        return min(max(float(value), 0), 100)
    except (TypeError, ValueError):
        return 0


def _monthly_price(prices, currency):
    for price in prices:
        recurring = price.get("recurring") or {}
        if (
            price.get("active", True)
            and recurring.get("interval") == "month"
            and (price.get("currency") or "").lower() == currency
            and price.get("unit_amount") is not None
        ):
            return price
    return None


def import_stripe_subscriptions(cursor):
    """
    Create or refresh subscription rows from active Stripe products.

    Products without an active monthly price in the configured currency are
    skipped. Rows are matched by product id first, then by name.
    """
    currency = stripe_client.default_currency()
    summary = {"created": 0, "updated": 0, "skipped": 0}
    for product in stripe_client.list_products():
        price = _monthly_price(stripe_client.list_prices(product["id"]), currency)
        if price is None:
            summary["skipped"] += 1
            continue

        metadata = product.get("metadata") or {}
        values = (
            product["name"],
            price["unit_amount"] / 100,
            _metadata_int(metadata.get("max_monthly_bookings")),
            _metadata_rate(metadata.get("discount_rate")),
            product["id"],
            price["id"],
        )
        cursor.execute(
            """
            SELECT subscription_id FROM subscriptions
            WHERE subscription_stripe_product_id = ? OR subscription_name = ?
            ORDER BY subscription_stripe_product_id = ? DESC
            """,
            (product["id"], product["name"], product["id"]),
        )
        existing = cursor.fetchone()
        if existing:
            cursor.execute(
                """
                UPDATE subscriptions
                SET subscription_name = ?, subscription_monthly_price = ?,
                    subscription_max_monthly_bookings = ?, subscription_discount_rate = ?,
                    subscription_stripe_product_id = ?, subscription_stripe_price_id = ?
                WHERE subscription_id = ?
                """,
                values + (existing["subscription_id"],),
            )
            summary["updated"] += 1
        else:
            cursor.execute(
                """
                INSERT INTO subscriptions (subscription_name, subscription_monthly_price,
                                           subscription_max_monthly_bookings, subscription_discount_rate,
                                           subscription_stripe_product_id, subscription_stripe_price_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                values,
            )
            summary["created"] += 1
    return summary


@app.route("/api/admin/subscriptions", methods=["GET"])
@require_role("admin")
def admin_get_subscriptions():
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """
            SELECT s.*, COUNT(u.user_id) AS user_count
            FROM subscriptions s
            LEFT JOIN users u ON u.user_subscription_id = s.subscription_id
            GROUP BY s.subscription_id
            ORDER BY s.subscription_monthly_price
            """
        ).fetchall()
        return jsonify({"success": True, "subscriptions": [dict(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load subscriptions")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/subscriptions", methods=["POST"])
@require_role("admin")
def create_subscription():
    """Create a subscription tier, backed by a Stripe product and monthly price."""
    payload, error = parse_body(CreateSubscriptionInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT 1 FROM subscriptions WHERE subscription_name = ?", (payload.subscription_name,))
        if cursor.fetchone():
            return error_response(
                UNIQUE_CONSTRAINT_MESSAGES["subscriptions.subscription_name"], 409, code="DUPLICATE_VALUE"
            )

        product_id = price_id = None
        if stripe_client.is_configured():
            try:
                product = stripe_client.create_product(
                    payload.subscription_name,
                    _product_metadata(payload.subscription_max_monthly_bookings, payload.subscription_discount_rate),
                )
                product_id = product["id"]
                price_id = stripe_client.create_price(
                    product_id, to_minor_units(payload.subscription_monthly_price)
                )["id"]
            except StripeError as e:
                if product_id:
                    try:
                        stripe_client.update_product(product_id, active=False)
                    except StripeError as archive_error:
                        app.logger.warning("Could not archive product %s: %s", product_id, archive_error.message)
                return stripe_error(e, "create subscription")

        cursor.execute(
            """
            INSERT INTO subscriptions (subscription_name, subscription_monthly_price,
                                       subscription_max_monthly_bookings, subscription_discount_rate,
                                       subscription_stripe_product_id, subscription_stripe_price_id)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                payload.subscription_name,
                payload.subscription_monthly_price,
                payload.subscription_max_monthly_bookings,
                payload.subscription_discount_rate,
                product_id,
                price_id,
            ),
        )
        conn.commit()
        cursor.execute("SELECT * FROM subscriptions WHERE subscription_id = ?", (cursor.lastrowid,))
        return jsonify({"success": True, "subscription": dict(cursor.fetchone())}), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "create subscription")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/subscriptions/<int:subscription_id>", methods=["PUT"])
@require_role("admin")
def update_subscription(subscription_id):
    payload, error = parse_body(UpdateSubscriptionInput)
    if error:
        return error
    # Only the monthly limit may be set to null (= unlimited)
    updates = payload.model_dump(exclude_unset=True)
    for column in ("subscription_name", "subscription_monthly_price", "subscription_discount_rate"):
        if updates.get(column) is None:
            updates.pop(column, None)
    if not updates:
        return error_response("No fields to update.", 400, code="NO_FIELDS")

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM subscriptions WHERE subscription_id = ?", (subscription_id,))
        current = cursor.fetchone()
        if current is None:
            return error_response("Subscription not found.", 404)

        # Name clashes are checked before any Stripe call
        if updates.get("subscription_name", current["subscription_name"]) != current["subscription_name"]:
            cursor.execute(
                "SELECT 1 FROM subscriptions WHERE subscription_name = ? AND subscription_id != ?",
                (updates["subscription_name"], subscription_id),
            )
            if cursor.fetchone():
                return error_response(
                    UNIQUE_CONSTRAINT_MESSAGES["subscriptions.subscription_name"], 409, code="DUPLICATE_VALUE"
                )

        merged = dict(current)
        merged.update(updates)
        product_id = current["subscription_stripe_product_id"]
        if product_id and stripe_client.is_configured():
            try:
                if merged["subscription_monthly_price"] != current["subscription_monthly_price"]:
                    price = stripe_client.create_price(
                        product_id, to_minor_units(merged["subscription_monthly_price"])
                    )
                    updates["subscription_stripe_price_id"] = price["id"]
                    stripe_client.update_product(product_id, default_price=price["id"])
                stripe_client.update_product(
                    product_id,
                    name=merged["subscription_name"],
                    metadata=_product_metadata(
                        merged["subscription_max_monthly_bookings"], merged["subscription_discount_rate"]
                    ),
                )
            except StripeError as e:
                return stripe_error(e, "update subscription")

        assignments = ", ".join(f"{column} = ?" for column in updates)
        cursor.execute(
            f"UPDATE subscriptions SET {assignments} WHERE subscription_id = ?",
            list(updates.values()) + [subscription_id],
        )
        conn.commit()
        cursor.execute("SELECT * FROM subscriptions WHERE subscription_id = ?", (subscription_id,))
        return jsonify({"success": True, "subscription": dict(cursor.fetchone())}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update subscription")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/subscriptions/<int:subscription_id>", methods=["DELETE"])
@require_role("admin")
def delete_subscription(subscription_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM subscriptions WHERE subscription_id = ?", (subscription_id,))
        subscription = cursor.fetchone()
        if subscription is None:
            return error_response("Subscription not found.", 404)
        cursor.execute("SELECT COUNT(*) FROM users WHERE user_subscription_id = ?", (subscription_id,))
        if cursor.fetchone()[0]:
            return error_response(
                "Users still hold this subscription.", 409, code="SUBSCRIPTION_IN_USE"
            )

        product_id = subscription["subscription_stripe_product_id"]
        if product_id and stripe_client.is_configured():
            try:
                stripe_client.update_product(product_id, active=False)
            except StripeError as e:
                return stripe_error(e, "archive subscription product")

        cursor.execute("DELETE FROM subscriptions WHERE subscription_id = ?", (subscription_id,))
        conn.commit()
        app.logger.info("Subscription %s deleted", subscription_id)
        return jsonify({"success": True, "message": "Subscription deleted."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "delete subscription")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/subscriptions/sync", methods=["POST"])
@require_role("admin")
def sync_subscriptions():
    if not stripe_client.is_configured():
        return error_response("Stripe is not configured.", 400, code="STRIPE_NOT_CONFIGURED")

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        try:
            summary = import_stripe_subscriptions(cursor)
        except StripeError as e:
            conn.rollback()
            return stripe_error(e, "sync subscriptions")
        conn.commit()
        app.logger.info("Subscriptions synced from Stripe: %s", summary)
        return jsonify({"success": True, **summary}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "sync subscriptions")
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Admin: Users & Invites ---


def _lookup_subscription_and_role(cursor, subscription_id, role_id):
    cursor.execute("SELECT 1 FROM subscriptions WHERE subscription_id = ?", (subscription_id,))
    if cursor.fetchone() is None:
        return error_response("Subscription not found.", 404)
    cursor.execute("SELECT 1 FROM roles WHERE role_id = ?", (role_id,))
    if cursor.fetchone() is None:
        return error_response("Role not found.", 404)
    return None


@app.route("/api/admin/users", methods=["GET"])
@require_role("admin")
def admin_get_users():
    conn = get_db_connection()
    try:
        rows = conn.execute(USER_SELECT + " ORDER BY u.user_created_at DESC").fetchall()
        return jsonify({"success": True, "users": [serialize_user(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load users")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/roles", methods=["GET"])
@require_role("admin")
def admin_get_roles():
    conn = get_db_connection()
    try:
        rows = conn.execute("SELECT * FROM roles ORDER BY role_name").fetchall()
        return jsonify({"success": True, "roles": [dict(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load roles")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/users", methods=["POST"])
@require_role("admin")
def admin_create_user():
    """Create an active account directly, skipping the invite and payment flow."""
    payload, error = parse_body(CreateUserInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        error = _lookup_subscription_and_role(cursor, payload.subscription_id, payload.role_id)
        if error:
            return error
        cursor.execute(
            """
            INSERT INTO users (user_email, user_password_hash, user_company_name, user_role_id,
                               user_subscription_id, user_current_monthly_bookings,
                               user_bookings_period, user_status, user_created_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, 'active', ?)
            """,
            (
                payload.email,
                generate_password_hash(payload.password),
                payload.company_name,
                payload.role_id,
                payload.subscription_id,
                current_booking_period(),
                utc_now_iso(),
            ),
        )
        user_id = cursor.lastrowid
        conn.commit()
        app.logger.info("User %s created by admin %s", user_id, request.current_user["user_id"])
        user = serialize_user(conn.execute(USER_SELECT + " WHERE u.user_id = ?", (user_id,)).fetchone())
        return jsonify({"success": True, "user": user}), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "create user")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/invites", methods=["POST"])
@require_role("admin")
def create_invite():
    """Invite a company; the signup link is returned rather than emailed."""
    payload, error = parse_body(CreateInviteInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT 1 FROM users WHERE user_email = ?", (payload.email,))
        if cursor.fetchone():
            return error_response(
                "A user with this email already exists.", 409, code="USER_ALREADY_EXISTS"
            )
        cursor.execute(
            "SELECT 1 FROM invites WHERE invite_email = ? AND invite_status = 'pending'", (payload.email,)
        )
        if cursor.fetchone():
            return error_response(
                "A pending invite already exists for this email.", 409, code="DUPLICATE_INVITE"
            )
        error = _lookup_subscription_and_role(cursor, payload.subscription_id, payload.role_id)
        if error:
            return error

        token = secrets.token_urlsafe(32)
        cursor.execute(
            """
            INSERT INTO invites (invite_token, invite_email, invite_company_name, invite_subscription_id,
                                 invite_role_id, invite_status, invite_created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?)
            """,
            (token, payload.email, payload.company_name, payload.subscription_id, payload.role_id, utc_now_iso()),
        )
        invite_id = cursor.lastrowid
        conn.commit()

        signup_link = f"{SITE_URL}/auth/complete-signup?token={token}"
        app.logger.info("Invite %s created for %s: %s", invite_id, payload.email, signup_link)
        cursor.execute(INVITE_SELECT + " WHERE i.invite_id = ?", (invite_id,))
        return jsonify({
            "success": True,
            "invite": serialize_invite(cursor.fetchone()),
            "token": token,
            "signup_link": signup_link,
        }), 201
    except sqlite3.Error as e:
        return database_error(conn, e, "create invite")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/invites", methods=["GET"])
@require_role("admin")
def admin_get_invites():
    conn = get_db_connection()
    try:
        rows = conn.execute(INVITE_SELECT + " ORDER BY i.invite_created_at DESC").fetchall()
        return jsonify({"success": True, "invites": [serialize_invite(row) for row in rows]}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "load invites")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/invites/<int:invite_id>", methods=["DELETE"])
@require_role("admin")
def revoke_invite(invite_id):
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT invite_status FROM invites WHERE invite_id = ?", (invite_id,))
        invite = cursor.fetchone()
        if invite is None:
            return error_response("Invite not found.", 404, code="INVITE_NOT_FOUND")
        if invite["invite_status"] != "pending":
            return error_response("Only pending invites can be revoked.", 409, code="INVITE_ALREADY_USED")
        cursor.execute("UPDATE invites SET invite_status = 'revoked' WHERE invite_id = ?", (invite_id,))
        conn.commit()
        return jsonify({"success": True, "message": "Invite revoked."}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "revoke invite")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/users/<int:user_id>/ban", methods=["POST"])
@require_role("admin")
def ban_user(user_id):
    payload, error = parse_body(BanUserInput)
    if error:
        return error
    if user_id == request.current_user["user_id"]:
        return error_response("You cannot ban yourself.", 400, code="CANNOT_BAN_SELF")

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "UPDATE users SET user_is_banned = ? WHERE user_id = ?", (1 if payload.banned else 0, user_id)
        )
        if cursor.rowcount == 0:
            return error_response("User not found.", 404)
        conn.commit()
        app.logger.warning("User %s %s", user_id, "banned" if payload.banned else "unbanned")
        user = serialize_user(conn.execute(USER_SELECT + " WHERE u.user_id = ?", (user_id,)).fetchone())
        return jsonify({"success": True, "user": user}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update ban status")
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/admin/users/<int:user_id>/subscription", methods=["PUT"])
@require_role("admin")
def update_user_subscription(user_id):
    payload, error = parse_body(UpdateUserSubscriptionInput)
    if error:
        return error

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT 1 FROM subscriptions WHERE subscription_id = ?", (payload.subscription_id,))
        if cursor.fetchone() is None:
            return error_response("Subscription not found.", 404)
        cursor.execute(
            "UPDATE users SET user_subscription_id = ? WHERE user_id = ?", (payload.subscription_id, user_id)
        )
        if cursor.rowcount == 0:
            return error_response("User not found.", 404)
        conn.commit()
        user = serialize_user(conn.execute(USER_SELECT + " WHERE u.user_id = ?", (user_id,)).fetchone())
        return jsonify({"success": True, "user": user}), 200
    except sqlite3.Error as e:
        return database_error(conn, e, "update user subscription")
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Application Runner ---
# Initialize database on startup
init_db()

if __name__ == "__main__":
    # Use environment variable for debug mode (default: False for security)
    debug_mode = os.getenv("FLASK_DEBUG", "False").lower() == "true"
    app.run(debug=debug_mode, port=5000)
