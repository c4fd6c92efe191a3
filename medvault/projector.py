"""
Record projection – reduce a holder's record to the approved field paths.
"""

from typing import Iterable, Optional

from medvault.errors import NoRecordUploaded
from medvault.field_paths import ABSENT, Record, get, parse, set_value


def project(record: Optional[Record], approved_fields: Iterable[str]) -> Record:
    """
    Build a fresh record holding only the values reachable through
    *approved_fields*. Paths missing from *record* are skipped silently.
    The source record is never mutated.
    """
    if record is None:
        raise NoRecordUploaded("No record has been uploaded for this holder.")

    result: Record = {}
    for field in approved_fields:
        path = parse(field)
        value = get(record, path)
        if value is ABSENT:
            continue
        set_value(result, path, value)
    return result
