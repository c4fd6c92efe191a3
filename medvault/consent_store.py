"""
Persistence for consent grants and access requests.

Every method takes an open connection so the caller owns the transaction.
"""

import json
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import insert, text

from medvault.database import access_requests, consent_grants
from medvault.models import AccessRequest, ConsentGrant, GrantStatus, RequestStatus


def _dump_fields(fields: Iterable[str]) -> str:
    return json.dumps(sorted(set(fields)))


def _load_fields(raw: Optional[str]) -> frozenset:
    return frozenset(json.loads(raw or "[]"))


def _grant_from_row(row) -> ConsentGrant:
    return ConsentGrant(
        id=int(row["id"]),
        holder_id=int(row["holder_id"]),
        requester_id=int(row["requester_id"]),
        approved_fields=_load_fields(row["approved_fields"]),
        status=GrantStatus(row["status"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        contract_address=row["contract_address"],
    )


def _request_from_row(row) -> AccessRequest:
    return AccessRequest(
        id=int(row["id"]),
        holder_id=int(row["holder_id"]),
        requester_id=int(row["requester_id"]),
        requested_fields=_load_fields(row["requested_fields"]),
        status=RequestStatus(row["status"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class ConsentStore:
    """SQL access to the consent_grants and access_requests tables."""

    # ── Grants ───────────────────────────────────────────────────────

    def insert_grant(self, conn, holder_id: int, requester_id: int,
                     fields: Iterable[str], status: GrantStatus,
                     now: datetime) -> ConsentGrant:
        result = conn.execute(insert(consent_grants).values(
            holder_id=holder_id,
            requester_id=requester_id,
            contract_address=f"contract_{uuid.uuid4().hex}",
            approved_fields=_dump_fields(fields),
            status=status.value,
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        ))
        return self.get_grant(conn, result.inserted_primary_key[0])

    def get_grant(self, conn, grant_id: int) -> Optional[ConsentGrant]:
        row = conn.execute(
            text("SELECT * FROM consent_grants WHERE id = :id"),
            {"id": grant_id},
        ).mappings().first()
        return _grant_from_row(row) if row else None

    def find_active_grant(self, conn, holder_id: int, requester_id: int) -> Optional[ConsentGrant]:
        row = conn.execute(text("""
            SELECT * FROM consent_grants
            WHERE holder_id = :h AND requester_id = :r AND status = 'active'
        """), {"h": holder_id, "r": requester_id}).mappings().first()
        return _grant_from_row(row) if row else None

    def find_latest_grant(self, conn, holder_id: int, requester_id: int) -> Optional[ConsentGrant]:
        row = conn.execute(text("""
            SELECT * FROM consent_grants
            WHERE holder_id = :h AND requester_id = :r
            ORDER BY id DESC
        """), {"h": holder_id, "r": requester_id}).mappings().first()
        return _grant_from_row(row) if row else None

    def update_grant(self, conn, grant_id: int, fields: Iterable[str],
                     status: GrantStatus, now: datetime) -> ConsentGrant:
        conn.execute(text("""
            UPDATE consent_grants
            SET approved_fields = :f, status = :s, updated_at = :u
            WHERE id = :id
        """), {"f": _dump_fields(fields), "s": status.value, "u": now.isoformat(), "id": grant_id})
        return self.get_grant(conn, grant_id)

    def grants_for_holder(self, conn, holder_id: int) -> List[ConsentGrant]:
        rows = conn.execute(
            text("SELECT * FROM consent_grants WHERE holder_id = :h ORDER BY id DESC"),
            {"h": holder_id},
        ).mappings().all()
        return [_grant_from_row(r) for r in rows]

    def grants_for_requester(self, conn, requester_id: int) -> List[ConsentGrant]:
        rows = conn.execute(
            text("SELECT * FROM consent_grants WHERE requester_id = :r ORDER BY id DESC"),
            {"r": requester_id},
        ).mappings().all()
        return [_grant_from_row(r) for r in rows]

    # ── Requests ─────────────────────────────────────────────────────

    def insert_request(self, conn, holder_id: int, requester_id: int,
                       fields: Iterable[str], now: datetime) -> AccessRequest:
        result = conn.execute(insert(access_requests).values(
            holder_id=holder_id,
            requester_id=requester_id,
            requested_fields=_dump_fields(fields),
            status=RequestStatus.PENDING.value,
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        ))
        return self.get_request(conn, result.inserted_primary_key[0])

    def get_request(self, conn, request_id: int) -> Optional[AccessRequest]:
        row = conn.execute(
            text("SELECT * FROM access_requests WHERE id = :id"),
            {"id": request_id},
        ).mappings().first()
        return _request_from_row(row) if row else None

    def find_pending_request(self, conn, holder_id: int, requester_id: int) -> Optional[AccessRequest]:
        row = conn.execute(text("""
            SELECT * FROM access_requests
            WHERE holder_id = :h AND requester_id = :r AND status = 'pending'
        """), {"h": holder_id, "r": requester_id}).mappings().first()
        return _request_from_row(row) if row else None

    def update_request_status(self, conn, request_id: int, status: RequestStatus,
                              now: datetime) -> AccessRequest:
        conn.execute(text("""
            UPDATE access_requests SET status = :s, updated_at = :u WHERE id = :id
        """), {"s": status.value, "u": now.isoformat(), "id": request_id})
        return self.get_request(conn, request_id)

    def delete_request(self, conn, request_id: int) -> bool:
        result = conn.execute(
            text("DELETE FROM access_requests WHERE id = :id"),
            {"id": request_id},
        )
        return result.rowcount > 0

    def requests_for_holder(self, conn, holder_id: int) -> List[AccessRequest]:
        rows = conn.execute(
            text("SELECT * FROM access_requests WHERE holder_id = :h ORDER BY id DESC"),
            {"h": holder_id},
        ).mappings().all()
        return [_request_from_row(r) for r in rows]

    def requests_for_requester(self, conn, requester_id: int) -> List[AccessRequest]:
        rows = conn.execute(
            text("SELECT * FROM access_requests WHERE requester_id = :r ORDER BY id DESC"),
            {"r": requester_id},
        ).mappings().all()
        return [_request_from_row(r) for r in rows]
