#!/usr/bin/env python3
"""
Seed the booking database with subscriptions, test accounts, amenities
and sample meeting rooms so the API can be tried out right away.

Usage:
    python seed_data.py                 # sample subscriptions
    python seed_data.py --from-stripe   # import subscriptions from Stripe products

Existing rows are skipped, so the script can be re-run safely.
"""
import argparse
import json
import sqlite3
import datetime
from datetime import timezone

from werkzeug.security import generate_password_hash

import room_booking
from booking_rules import current_booking_period
from stripe_client import StripeError

SAMPLE_SUBSCRIPTIONS = [
    {"name": "Basic", "monthly_price": 499, "max_monthly_bookings": 5, "discount_rate": 0},
    {"name": "Premium", "monthly_price": 999, "max_monthly_bookings": 15, "discount_rate": 10},
    {"name": "Enterprise", "monthly_price": 2499, "max_monthly_bookings": None, "discount_rate": 20},
]

TEST_USERS = [
    {
        "email": "admin@test.com",
        "password": "password",
        "company_name": "Admin Company",
        "role": "admin",
        "subscription": "Enterprise",
    },
    {
        "email": "user@test.com",
        "password": "password",
        "company_name": "User Company",
        "role": "user",
        "subscription": "Basic",
    },
]

SAMPLE_AMENITIES = [
    {"name": "Projector", "price": 100},
    {"name": "Whiteboard", "price": None},
    {"name": "Video Conference", "price": 150},
    {"name": "Coffee & Tea", "price": 50},
]

SAMPLE_ROOMS = [
    {
        "name": "Room of Innovation",
        "capacity": 12,
        "price_per_hour": 450,
        "size": 40,
        "amenities": ["Projector", "Whiteboard", "Video Conference"],
    },
    {
        "name": "Focus Room",
        "capacity": 4,
        "price_per_hour": 200,
        "size": 12,
        "amenities": ["Whiteboard"],
    },
    {
        "name": "Board Room",
        "capacity": 20,
        "price_per_hour": 750,
        "size": 60,
        "amenities": ["Projector", "Video Conference", "Coffee & Tea"],
    },
]


def seed_subscriptions(cursor):
    created = skipped = 0
    for sub in SAMPLE_SUBSCRIPTIONS:
        try:
            cursor.execute(
                """
                INSERT INTO subscriptions (subscription_name, subscription_monthly_price,
                                           subscription_max_monthly_bookings, subscription_discount_rate)
                VALUES (?, ?, ?, ?)
                """,
                (sub["name"], sub["monthly_price"], sub["max_monthly_bookings"], sub["discount_rate"]),
            )
            created += 1
            print(f"[OK] Created subscription: {sub['name']}")
        except sqlite3.IntegrityError:
            skipped += 1
            print(f"[SKIP] Subscription {sub['name']} already exists, skipping...")
    return created, skipped


def seed_users(cursor):
    created = skipped = 0
    for user in TEST_USERS:
        cursor.execute("SELECT role_id FROM roles WHERE role_name = ?", (user["role"],))
        role = cursor.fetchone()
        cursor.execute("SELECT subscription_id FROM subscriptions WHERE subscription_name = ?", (user["subscription"],))
        subscription = cursor.fetchone()
        if role is None or subscription is None:
            skipped += 1
            print(f"[SKIP] Missing role or subscription for {user['email']}, skipping...")
            continue
        try:
            cursor.execute(
                """
                INSERT INTO users (user_email, user_password_hash, user_company_name, user_role_id,
                                   user_subscription_id, user_current_monthly_bookings,
                                   user_bookings_period, user_status, user_created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, 'active', ?)
                """,
                (
                    user["email"],
                    generate_password_hash(user["password"]),
                    user["company_name"],
                    role[0],
                    subscription[0],
                    current_booking_period(),
                    datetime.datetime.now(timezone.utc).isoformat(),
                ),
            )
            created += 1
            print(f"[OK] Created user: {user['email']} ({user['role']})")
        except sqlite3.IntegrityError:
            skipped += 1
            print(f"[SKIP] User {user['email']} already exists, skipping...")
    return created, skipped


def seed_rooms(cursor):
    for amenity in SAMPLE_AMENITIES:
        cursor.execute(
            "INSERT OR IGNORE INTO amenities (amenity_name, amenity_price) VALUES (?, ?)",
            (amenity["name"], amenity["price"]),
        )

    created = skipped = 0
    for room in SAMPLE_ROOMS:
        try:
            cursor.execute(
                """
                INSERT INTO meeting_rooms (meeting_room_name, meeting_room_capacity,
                                           meeting_room_price_per_hour, meeting_room_size, meeting_room_images)
                VALUES (?, ?, ?, ?, ?)
                """,
                (room["name"], room["capacity"], room["price_per_hour"], room["size"], json.dumps([])),
            )
        except sqlite3.IntegrityError:
            skipped += 1
            print(f"[SKIP] Room {room['name']} already exists, skipping...")
            continue

        room_id = cursor.lastrowid
        for name in room["amenities"]:
            cursor.execute(
                """
                INSERT OR IGNORE INTO meeting_room_amenities (meeting_room_id, amenity_id)
                SELECT ?, amenity_id FROM amenities WHERE amenity_name = ?
                """,
                (room_id, name),
            )
        created += 1
        print(f"[OK] Created room: {room['name']} ({len(room['amenities'])} amenities)")
    return created, skipped


def seed(conn, from_stripe=False):
    """Run every seeding step on an open connection and commit."""
    cursor = conn.cursor()
    if from_stripe:
        summary = room_booking.import_stripe_subscriptions(cursor)
        print(
            f"[OK] Stripe subscriptions: {summary['created']} created, "
            f"{summary['updated']} updated, {summary['skipped']} skipped"
        )
    else:
        seed_subscriptions(cursor)
    users_created, users_skipped = seed_users(cursor)
    rooms_created, rooms_skipped = seed_rooms(cursor)
    conn.commit()
    print(f"\n[SUMMARY] {users_created} users created, {users_skipped} skipped")
    print(f"[SUMMARY] {rooms_created} rooms created, {rooms_skipped} skipped")


def main():
    parser = argparse.ArgumentParser(description="Seed the meeting room booking database.")
    parser.add_argument(
        "--from-stripe",
        action="store_true",
        help="Import subscriptions from Stripe products instead of the built-in samples.",
    )
    args = parser.parse_args()

    print(f"Seeding {room_booking.DATABASE}...")
    print("=" * 50)
    conn = room_booking.get_db_connection()
    try:
        seed(conn, from_stripe=args.from_stripe)
    except StripeError as e:
        conn.rollback()
        print(f"[ERROR] Stripe import failed: {e.message}")
        raise SystemExit(1)
    finally:
        conn.close()

    print("\n[TEST CREDENTIALS]")
    print("=" * 50)
    for user in TEST_USERS:
        print(f"Email: {user['email']}")
        print(f"Password: {user['password']}")
        print(f"Role: {user['role']}")
        print("-" * 50)


if __name__ == "__main__":
    main()
