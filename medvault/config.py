"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Recognized record fields ─────────────────────────────────────────
RECOGNIZED_FIELDS = [
    "patientInfo.name",
    "patientInfo.dateOfBirth",
    "patientInfo.gender",
    "patientInfo.bloodType",
    "patientInfo.allergies",
    "medicalHistory.conditions",
    "medicalHistory.medications",
    "medicalHistory.surgeries",
    "medicalHistory.familyHistory",
    "vitals.bloodPressure",
    "vitals.heartRate",
    "vitals.temperature",
    "vitals.weight",
    "vitals.height",
    "labResults.bloodWork",
    "labResults.imaging",
    "labResults.pathology",
    "currentTreatment.medications",
    "currentTreatment.therapies",
    "currentTreatment.followUpInstructions",
]

FIELD_CATEGORY_LABELS = {
    "patientInfo": "Patient Info",
    "medicalHistory": "Medical History",
    "vitals": "Vitals",
    "labResults": "Lab Results",
    "currentTreatment": "Current Treatment",
}

# ── Consent policy ───────────────────────────────────────────────────
# "replace": an approved request overwrites the grant's field set.
# "union":   an approved request adds to it.
APPROVAL_POLICY = os.getenv("APPROVAL_POLICY", "replace")

# Requests created within this window count as "recent" in stats.
RECENT_WINDOW_HOURS = 24

# ── Roles ────────────────────────────────────────────────────────────
HOLDER_ROLE = "patient"
REQUESTER_ROLE = "doctor"

# ── API server ───────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = 24


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
