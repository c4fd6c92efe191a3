"""
Record storage and the consent-checked read path for requesters.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import insert, text
from sqlalchemy.exc import SQLAlchemyError

from medvault.database import medical_records
from medvault.errors import (
    NoActiveConnection, NoApprovedFields, NoRecordUploaded, RecordUnavailable,
    StorageFailure,
)
from medvault.field_paths import Record
from medvault.models import ConsentGrant
from medvault.projector import project


class SqlRecordStore:
    """Stores whole holder records as JSON, addressed by an opaque content id."""

    def __init__(self, engine):
        self.engine = engine

    def store(self, holder_id: int, record: Record) -> str:
        """Persist *record* and point the holder at it. Returns the content id."""
        if not isinstance(record, dict):
            raise ValueError("Record must be a JSON object.")
        content_id = f"cid_{uuid.uuid4().hex}"
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(medical_records).values(
                    content_id=content_id,
                    holder_id=holder_id,
                    body=json.dumps(record),
                    created_at=now,
                ))
                conn.execute(
                    text("UPDATE parties SET record_cid = :c WHERE id = :id"),
                    {"c": content_id, "id": holder_id},
                )
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not store record: {e}", cause=e) from e
        return content_id

    def retrieve(self, holder_id: int, content_id: str) -> Record:
        """Fetch a record; anything short of the holder's own record is unavailable."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(text("""
                    SELECT holder_id, body FROM medical_records WHERE content_id = :c
                """), {"c": content_id}).mappings().first()
        except SQLAlchemyError as e:
            raise RecordUnavailable(f"Record store error: {e}", content_id=content_id) from e

        if not row or int(row["holder_id"]) != int(holder_id):
            raise RecordUnavailable("Record not found for this holder.", content_id=content_id)
        try:
            return json.loads(row["body"])
        except (TypeError, ValueError) as e:
            raise RecordUnavailable("Stored record could not be decoded.", content_id=content_id) from e


def read_shared_record(registry, record_store, holder_id: int, requester_id: int,
                       content_id: Optional[str]) -> Record:
    """
    Serve a requester read: approved fields are fetched fresh for this exact
    pair on every call, then the holder's record is projected down to them.
    """
    return load_shared_record(registry, record_store, holder_id, requester_id, content_id)[1]


def load_shared_record(registry, record_store, holder_id: int, requester_id: int,
                       content_id: Optional[str]) -> Tuple[ConsentGrant, Record]:
    """Like read_shared_record, but also return the grant the projection used."""
    if not content_id:
        raise NoRecordUploaded("Holder has no record uploaded.", holder_id=holder_id)

    grant = registry.get_grant(holder_id, requester_id)
    if grant is None:
        raise NoActiveConnection(
            "No active access to this holder.",
            holder_id=holder_id, requester_id=requester_id,
        )
    if not grant.approved_fields:
        raise NoApprovedFields(
            "No approved fields for this holder.",
            holder_id=holder_id, requester_id=requester_id,
        )

    record = record_store.retrieve(holder_id, content_id)
    return grant, project(record, grant.approved_fields)
