"""
Recognized-field catalog – the injected validator for requested field paths.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from medvault.config import FIELD_CATEGORY_LABELS, RECOGNIZED_FIELDS
from medvault.field_paths import Record


class FieldCatalog:
    """Fixed list of dotted field paths a requester may ask for."""

    def __init__(self, fields: Optional[Iterable[str]] = None):
        self._fields: List[str] = list(RECOGNIZED_FIELDS if fields is None else fields)
        self._known = set(self._fields)

    @property
    def fields(self) -> List[str]:
        return list(self._fields)

    def is_recognized(self, path: str) -> bool:
        return path in self._known

    def validate(self, paths: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Split *paths* into (valid, invalid), preserving input order."""
        valid, invalid = [], []
        for p in paths:
            (valid if self.is_recognized(p) else invalid).append(p)
        return valid, invalid

    def categories(self) -> Dict[str, List[str]]:
        """Group fields by their top-level segment under a display label."""
        grouped: Dict[str, List[str]] = {}
        for f in self._fields:
            prefix = f.split(".", 1)[0]
            label = FIELD_CATEGORY_LABELS.get(prefix, prefix)
            grouped.setdefault(label, []).append(f)
        return grouped


def sample_record(name: str) -> Record:
    """A complete sample medical record covering every recognized field."""
    now = datetime.now(timezone.utc).isoformat()
    return {
        "patientInfo": {
            "name": name,
            "dateOfBirth": "1985-06-15",
            "gender": "Female",
            "bloodType": "A+",
            "allergies": ["Penicillin", "Shellfish"],
        },
        "medicalHistory": {
            "conditions": ["Hypertension", "Type 2 Diabetes"],
            "medications": ["Metformin 500mg", "Lisinopril 10mg"],
            "surgeries": ["Appendectomy (2010)"],
            "familyHistory": ["Heart disease (father)", "Diabetes (mother)"],
        },
        "vitals": {
            "bloodPressure": "130/85",
            "heartRate": 72,
            "temperature": 98.6,
            "weight": 150,
            "height": 165,
        },
        "labResults": {
            "bloodWork": {"glucose": 120, "cholesterol": 180, "hemoglobin": 12.5},
            "imaging": ["Chest X-ray (normal)", "ECG (normal)"],
            "pathology": [],
        },
        "currentTreatment": {
            "medications": ["Metformin 500mg twice daily", "Lisinopril 10mg daily"],
            "therapies": ["Dietary counseling", "Exercise program"],
            "followUpInstructions": "Return in 3 months for follow-up",
        },
        "recordDate": now,
        "lastUpdated": now,
    }
