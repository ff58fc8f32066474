"""
Mock Ledger Data Generator

Generates a fake but self-consistent savings-scheme ledger (profiles,
customers, staff, schemes, enrollments, payments, withdrawals, market rates
and the phone whitelist) for the in-memory gateway.

The same seed always produces the same ledger, so demo output and tests
are reproducible.

Usage:
    ledger = generate_mock_ledger(as_of=date(2025, 3, 31), seed=7)
    gateway = InMemoryGateway(ledger)
"""
import random
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List, Dict, Any, Optional

logger = logging.getLogger(__name__)

MOCK_FIRST_NAMES = [
    "Aarav", "Vivaan", "Aditya", "Ishaan", "Kavya", "Ananya", "Diya", "Meera",
    "Rohan", "Saanvi", "Arjun", "Lakshmi", "Priya", "Karthik", "Nisha", "Rahul",
]

MOCK_LAST_NAMES = [
    "Sharma", "Iyer", "Reddy", "Nair", "Patel", "Gupta", "Menon", "Rao",
    "Pillai", "Joshi", "Verma", "Das",
]

# (name, asset_type, min_daily, max_daily, duration_months)
MOCK_SCHEMES = [
    ("Swarna Daily", "gold", 100, 1000, 11),
    ("Swarna Plus", "gold", 500, 5000, 12),
    ("Rajat Daily", "silver", 50, 500, 11),
    ("Rajat Saver", "silver", 200, 2000, 6),
]

PAYMENT_METHODS = ["cash", "cash", "cash", "upi", "upi", "bank_transfer"]

BASE_RATES = {"gold": 6200.0, "silver": 76.0}


def _phone(rng: random.Random) -> str:
    return f"+91{rng.randint(6, 9)}{rng.randint(0, 999999999):09d}"


def _name(rng: random.Random) -> str:
    return f"{rng.choice(MOCK_FIRST_NAMES)} {rng.choice(MOCK_LAST_NAMES)}"


def _timestamp(day: date, rng: random.Random) -> str:
    moment = datetime.combine(day, time(rng.randint(3, 12), rng.randint(0, 59)), tzinfo=timezone.utc)
    return moment.isoformat()


def generate_mock_ledger(
    as_of: Optional[date] = None,
    days: int = 45,
    staff_count: int = 4,
    customer_count: int = 24,
    seed: int = 42,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Generate a mock ledger ending at `as_of`.

    Args:
        as_of: Last day with activity (defaults to today)
        days: Number of days of payment and rate history
        staff_count: Number of collection staff
        customer_count: Number of customers
        seed: Random seed

    Returns:
        Dict of collection name -> list of row dicts
    """
    rng = random.Random(seed)
    as_of = as_of or date.today()
    start = as_of - timedelta(days=days - 1)

    profiles: List[Dict[str, Any]] = []
    customers: List[Dict[str, Any]] = []
    staff_metadata: List[Dict[str, Any]] = []
    assignments: List[Dict[str, Any]] = []
    whitelist: List[Dict[str, Any]] = []

    admin_id = "admin-1"
    profiles.append({
        "id": admin_id, "name": "Office Admin", "phone": _phone(rng),
        "email": "admin@example.com", "role": "admin", "active": True,
    })

    staff_ids = []
    for i in range(1, staff_count + 1):
        staff_id = f"staff-{i}"
        staff_ids.append(staff_id)
        profiles.append({
            "id": staff_id, "name": _name(rng), "phone": _phone(rng),
            "email": f"staff{i}@example.com", "role": "staff", "active": True,
        })
        # The last staff member has no metadata row, to exercise defaults
        if i < staff_count:
            staff_metadata.append({
                "id": f"meta-{i}", "staff_id": staff_id, "staff_code": f"ST{i:03d}",
                "staff_type": "collection" if i % 3 else "office",
                "daily_target_amount": rng.choice([2000, 3000, 5000]),
                "is_active": True,
            })

    for i in range(1, customer_count + 1):
        profile_id = f"profile-c{i}"
        profiles.append({
            "id": profile_id, "name": _name(rng), "phone": _phone(rng),
            "email": None, "role": "customer", "active": True,
        })
        customers.append({"id": f"cust-{i}", "profile_id": profile_id, "active": i % 10 != 0})

    for i, customer in enumerate(customers):
        assignments.append({
            "id": f"assign-{i + 1}",
            "staff_id": staff_ids[i % len(staff_ids)],
            "customer_id": customer["id"],
            "is_active": i % 7 != 0,
            "assigned_date": (start - timedelta(days=rng.randint(0, 60))).isoformat(),
        })

    schemes = []
    for i, (name, asset_type, min_amount, max_amount, months) in enumerate(MOCK_SCHEMES, 1):
        schemes.append({
            "id": f"scheme-{i}", "name": name, "asset_type": asset_type,
            "min_daily_amount": min_amount, "max_daily_amount": max_amount,
            "duration_months": months, "active": i != len(MOCK_SCHEMES),
            "created_at": _timestamp(start - timedelta(days=200 - i * 20), rng),
        })

    # Market rates: one row per asset per day, small daily drift
    market_rates = []
    for asset_type, base in BASE_RATES.items():
        price = base
        for offset in range(days):
            day = start + timedelta(days=offset)
            price *= 1 + rng.uniform(-0.01, 0.012)
            market_rates.append({
                "id": f"rate-{asset_type}-{offset}", "asset_type": asset_type,
                "price_per_gram": round(price, 2), "rate_date": day.isoformat(),
                "source": "manual" if offset % 5 else "api",
            })
    rates = {(r["asset_type"], r["rate_date"]): r["price_per_gram"] for r in market_rates}

    # Enrollments and their payments
    user_schemes, payments = [], []
    payment_id = 1
    for i, customer in enumerate(customers):
        for j in range(1 if i % 3 else 2):
            scheme = schemes[(i + j) % len(schemes)]
            enrollment = {
                "id": f"us-{i + 1}-{j + 1}", "customer_id": customer["id"],
                "scheme_id": scheme["id"], "status": "completed" if (i + j) % 9 == 0 else "active",
                "accumulated_metal_grams": Decimal("0"), "total_amount_paid": Decimal("0"),
            }
            user_schemes.append(enrollment)
            staff_id = staff_ids[i % len(staff_ids)]

            for offset in range(days):
                if rng.random() > 0.45:
                    continue
                day = start + timedelta(days=offset)
                amount = rng.randrange(scheme["min_daily_amount"], scheme["max_daily_amount"] + 1, 50)
                status = rng.choices(["completed", "pending", "failed"], weights=[90, 6, 4])[0]
                payments.append({
                    "id": f"pay-{payment_id}", "user_scheme_id": enrollment["id"],
                    "customer_id": customer["id"],
                    "staff_id": staff_id if rng.random() > 0.1 else None,
                    "amount": amount, "payment_method": rng.choice(PAYMENT_METHODS),
                    "payment_date": day.isoformat(), "status": status,
                })
                payment_id += 1
                if status == "completed":
                    grams = Decimal(str(amount)) / Decimal(str(rates[(scheme["asset_type"], day.isoformat())]))
                    enrollment["accumulated_metal_grams"] += grams.quantize(Decimal("0.0001"))
                    enrollment["total_amount_paid"] += Decimal(amount)

    for enrollment in user_schemes:
        enrollment["accumulated_metal_grams"] = float(enrollment["accumulated_metal_grams"])
        enrollment["total_amount_paid"] = float(enrollment["total_amount_paid"])

    # Withdrawals against a few enrollments
    withdrawals = []
    for n, enrollment in enumerate(rng.sample(user_schemes, k=min(8, len(user_schemes))), 1):
        requested = round(min(enrollment["accumulated_metal_grams"], rng.uniform(0.5, 3.0)), 3)
        created = as_of - timedelta(days=rng.randint(0, days // 2))
        status = rng.choices(["pending", "processed", "rejected"], weights=[3, 5, 1])[0]
        scheme = next(s for s in schemes if s["id"] == enrollment["scheme_id"])
        rate = rates[(scheme["asset_type"], created.isoformat())]
        row = {
            "id": f"wd-{n}", "user_scheme_id": enrollment["id"],
            "customer_id": enrollment["customer_id"], "status": status,
            "requested_grams": requested, "requested_amount": round(requested * rate, 2),
            "final_grams": None, "final_amount": None,
            "created_at": _timestamp(created, rng), "processed_at": None,
        }
        if status == "processed":
            processed = min(created + timedelta(days=rng.randint(0, 2)), as_of)
            row["final_grams"] = round(requested * rng.uniform(0.97, 1.0), 3)
            row["final_amount"] = round(row["final_grams"] * rate, 2)
            row["processed_at"] = _timestamp(processed, rng)
        withdrawals.append(row)

    for n, profile in enumerate(p for p in profiles if p["role"] != "admin"):
        if n % 4 == 3:
            continue
        whitelist.append({
            "id": f"wl-{n + 1}", "phone": profile["phone"], "active": n % 6 != 5,
            "added_by": admin_id, "created_at": _timestamp(start + timedelta(days=n % days), rng),
        })
    # A whitelisted phone that has not signed up yet
    whitelist.append({
        "id": "wl-pending", "phone": _phone(rng), "active": True,
        "added_by": admin_id, "created_at": _timestamp(as_of, rng),
    })

    ledger = {
        "profiles": profiles,
        "customers": customers,
        "staff_metadata": staff_metadata,
        "staff_assignments": assignments,
        "schemes": schemes,
        "user_schemes": user_schemes,
        "payments": payments,
        "withdrawals": withdrawals,
        "market_rates": market_rates,
        "phone_whitelist": whitelist,
    }
    logger.info(
        f"Generated mock ledger: {len(customers)} customers, {len(payments)} payments, "
        f"{len(withdrawals)} withdrawals over {days} days"
    )
    return ledger
