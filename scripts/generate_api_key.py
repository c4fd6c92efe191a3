#!/usr/bin/env python3
"""
Generate API keys for MedVault parties and a JWT secret.
Keys can be inserted into the parties table; the secret goes in .env.
"""

import secrets
import string
from datetime import datetime, timezone


def generate_api_key(prefix="mv", length=32):
    """Generate a secure random API key."""
    chars = string.ascii_letters + string.digits
    random_part = ''.join(secrets.choice(chars) for _ in range(length))
    return f"{prefix}_{random_part}"


def insert_statement(display_name, role, api_key):
    """SQL that registers one party with the given key."""
    created_at = datetime.now(timezone.utc).isoformat()
    return f"""
INSERT INTO parties
    (display_name, role, api_key, is_active, created_at)
VALUES
    ('{display_name}', '{role}', '{api_key}', 1, '{created_at}');
"""


if __name__ == "__main__":
    print("=" * 70)
    print("MedVault API Key Generator")
    print("=" * 70)
    print()

    print("JWT secret for your .env file:")
    print(f"  JWT_SECRET_KEY={secrets.token_hex(32)}")
    print()

    doctor_key = generate_api_key()
    patient_key = generate_api_key()

    print("SQL Insert Example:")
    print("=" * 70)
    print("-- For a Doctor (requester):")
    print(insert_statement("Dr. Sarah Johnson", "doctor", doctor_key))
    print("-- For a Patient (holder):")
    print(insert_statement("Jane Doe", "patient", patient_key))

    print("=" * 70)
    print("Note: Run these SQL statements in your database to create parties.")
    print("=" * 70)
