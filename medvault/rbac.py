"""
Party identity – API-key lookup, registration and role checks.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, text

from medvault.config import HOLDER_ROLE, REQUESTER_ROLE
from medvault.database import parties
from medvault.models import AccessContext

SUPPORTED_ROLES = {HOLDER_ROLE, REQUESTER_ROLE}


def load_access_context(engine, api_key: str) -> AccessContext:
    """Look up a party by API key and return their AccessContext."""
    sql = text("""
        SELECT id, display_name, role
        FROM parties
        WHERE api_key = :k AND is_active = :active
    """)
    with engine.connect() as conn:
        row = conn.execute(sql, {"k": api_key, "active": True}).mappings().first()

    if not row:
        raise ValueError("Invalid key or party inactive (no match in parties).")

    role = str(row["role"]).strip().lower()
    if role not in SUPPORTED_ROLES:
        raise ValueError(f"Unsupported role '{row['role']}' in parties.")

    return AccessContext(
        party_id=int(row["id"]),
        display_name=str(row["display_name"]),
        role=role,
    )


def require_role(ctx: AccessContext, role: str) -> None:
    """Raise PermissionError unless *ctx* acts in *role*."""
    if ctx.role != role:
        raise PermissionError(f"Access denied. {role.capitalize()} access required.")


def register_party(engine, display_name: str, role: str, api_key: str) -> int:
    """Insert a new active party and return its id."""
    role = role.strip().lower()
    if role not in SUPPORTED_ROLES:
        raise ValueError(f"Unsupported role '{role}'.")
    with engine.begin() as conn:
        result = conn.execute(insert(parties).values(
            display_name=display_name,
            role=role,
            api_key=api_key,
            is_active=True,
            created_at=datetime.now(timezone.utc).isoformat(),
        ))
        return int(result.inserted_primary_key[0])


def get_party(engine, party_id: int) -> Optional[Dict[str, Any]]:
    with engine.connect() as conn:
        row = conn.execute(text("""
            SELECT id, display_name, role, record_cid, created_at
            FROM parties WHERE id = :id
        """), {"id": party_id}).mappings().first()
    return dict(row) if row else None


def list_parties(engine, role: str) -> List[Dict[str, Any]]:
    with engine.connect() as conn:
        rows = conn.execute(text("""
            SELECT id, display_name, role, record_cid, created_at
            FROM parties WHERE role = :r AND is_active = :active
            ORDER BY id
        """), {"r": role, "active": True}).mappings().all()
    return [dict(r) for r in rows]
