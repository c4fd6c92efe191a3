"""
Consent registry – creates, resolves and revokes grants and access requests.

Each operation is one database transaction executed under a per
(holder, requester) lock, so the "one active grant" and "one pending
request" rules hold under concurrent callers. The database carries partial
unique indexes for the same rules across processes.
"""

import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from medvault.catalog import FieldCatalog
from medvault.config import APPROVAL_POLICY, RECENT_WINDOW_HOURS
from medvault.consent_store import ConsentStore
from medvault.errors import (
    AlreadyConnected, AlreadyResolved, AlreadyRevoked, ConsentError,
    DuplicateRequest, EmptyFieldSet, NoActiveConnection, NotFound, NotOwner,
    NotPending, StorageFailure, UnknownField,
)
from medvault.field_paths import parse
from medvault.models import (
    AccessRequest, ConsentGrant, Decision, GrantStatus, RequestStatus,
)

APPROVAL_POLICIES = {"replace", "union"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _PairLocks:
    """
    One lock per (holder_id, requester_id) pair. Entries live only while
    some caller still holds a reference to the lock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def get(self, holder_id: int, requester_id: int) -> threading.Lock:
        key = (holder_id, requester_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


def summarize_requests(requests: Iterable[AccessRequest], now: datetime,
                       window_hours: int = RECENT_WINDOW_HOURS) -> Dict[str, int]:
    """Count requests by status, plus those created within the recent window."""
    cutoff = now - timedelta(hours=window_hours)
    stats = {"total": 0, "pending": 0, "approved": 0, "denied": 0, "recent": 0}
    for req in requests:
        stats["total"] += 1
        stats[req.status.value] += 1
        if req.created_at > cutoff:
            stats["recent"] += 1
    return stats


class ConsentRegistry:
    """Sole owner of ConsentGrant and AccessRequest state."""

    def __init__(self, engine, catalog=None, store: Optional[ConsentStore] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 approval_policy: str = APPROVAL_POLICY):
        if approval_policy not in APPROVAL_POLICIES:
            raise ValueError(f"Unknown approval policy '{approval_policy}'.")
        self.engine = engine
        self.catalog = catalog if catalog is not None else FieldCatalog()
        self.store = store or ConsentStore()
        self.approval_policy = approval_policy
        self._clock = clock or _utcnow
        self._locks = _PairLocks()

    # ── Plumbing ─────────────────────────────────────────────────────

    @contextmanager
    def _transaction(self, on_conflict: Optional[Callable[[], ConsentError]] = None):
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as e:
            if on_conflict is not None:
                raise on_conflict() from e
            raise StorageFailure(f"Consent store integrity failure: {e}", cause=e) from e
        except SQLAlchemyError as e:
            raise StorageFailure(f"Consent store failure: {e}", cause=e) from e

    def _normalize_fields(self, requested_fields) -> List[str]:
        if isinstance(requested_fields, str):
            requested_fields = [requested_fields]
        unique: List[str] = []
        for f in requested_fields or []:
            if f not in unique:
                unique.append(f)
        if not unique:
            raise EmptyFieldSet("Requested fields must be a non-empty list.")
        for f in unique:
            parse(f)
        unknown = [f for f in unique if not self.catalog.is_recognized(f)]
        if unknown:
            raise UnknownField(
                f"Unrecognized field(s): {', '.join(unknown)}.",
                unknown_fields=unknown,
            )
        return unique

    def _lookup_request(self, request_id: int) -> AccessRequest:
        with self._transaction() as conn:
            req = self.store.get_request(conn, request_id)
        if req is None:
            raise NotFound(f"Request {request_id} not found.", request_id=request_id)
        return req

    # ── Grants ───────────────────────────────────────────────────────

    def initiate_connection(self, holder_id: int, requester_id: int) -> ConsentGrant:
        """Holder connects with a requester; no fields are shared yet."""
        def conflict():
            return AlreadyConnected(
                "Connection already exists with this requester.",
                holder_id=holder_id, requester_id=requester_id,
            )

        with self._locks.get(holder_id, requester_id):
            with self._transaction(on_conflict=conflict) as conn:
                if self.store.find_active_grant(conn, holder_id, requester_id):
                    raise conflict()
                return self.store.insert_grant(
                    conn, holder_id, requester_id, [], GrantStatus.ACTIVE, self._clock(),
                )

    def revoke(self, holder_id: int, requester_id: int) -> ConsentGrant:
        """Revoke the pair's latest grant and clear its approved fields."""
        with self._locks.get(holder_id, requester_id):
            with self._transaction() as conn:
                grant = self.store.find_latest_grant(conn, holder_id, requester_id)
                if grant is None:
                    raise NotFound(
                        "No grant found for this requester.",
                        holder_id=holder_id, requester_id=requester_id,
                    )
                if grant.status == GrantStatus.REVOKED:
                    raise AlreadyRevoked(
                        "Access for this requester is already revoked.",
                        grant_id=grant.id,
                    )
                return self.store.update_grant(
                    conn, grant.id, [], GrantStatus.REVOKED, self._clock(),
                )

    def get_approved_fields(self, holder_id: int, requester_id: int) -> FrozenSet[str]:
        """Fields of the pair's active grant; empty when there is none."""
        grant = self.get_grant(holder_id, requester_id)
        return grant.approved_fields if grant else frozenset()

    def get_grant(self, holder_id: int, requester_id: int) -> Optional[ConsentGrant]:
        with self._transaction() as conn:
            return self.store.find_active_grant(conn, holder_id, requester_id)

    def check_field_access(self, holder_id: int, requester_id: int, field: str) -> bool:
        grant = self.get_grant(holder_id, requester_id)
        return bool(grant and grant.allows(field))

    def grants_for_holder(self, holder_id: int) -> List[ConsentGrant]:
        with self._transaction() as conn:
            return self.store.grants_for_holder(conn, holder_id)

    def grants_for_requester(self, requester_id: int) -> List[ConsentGrant]:
        with self._transaction() as conn:
            return self.store.grants_for_requester(conn, requester_id)

    # ── Requests ─────────────────────────────────────────────────────

    def request_access(self, requester_id: int, holder_id: int, requested_fields) -> AccessRequest:
        """Requester asks the holder for a set of fields."""
        def conflict():
            return DuplicateRequest(
                "A request is already pending for this holder.",
                holder_id=holder_id, requester_id=requester_id,
            )

        with self._locks.get(holder_id, requester_id):
            with self._transaction(on_conflict=conflict) as conn:
                if not self.store.find_active_grant(conn, holder_id, requester_id):
                    raise NoActiveConnection(
                        "No connection exists with this holder. The holder must connect first.",
                        holder_id=holder_id, requester_id=requester_id,
                    )
                if self.store.find_pending_request(conn, holder_id, requester_id):
                    raise conflict()
                fields = self._normalize_fields(requested_fields)
                return self.store.insert_request(
                    conn, holder_id, requester_id, fields, self._clock(),
                )

    def cancel_request(self, requester_id: int, request_id: int) -> None:
        """Requester withdraws a pending request; the row is deleted."""
        req = self._lookup_request(request_id)
        if req.requester_id != requester_id:
            raise NotOwner("Request belongs to another requester.", request_id=request_id)

        with self._locks.get(req.holder_id, req.requester_id):
            with self._transaction() as conn:
                req = self.store.get_request(conn, request_id)
                if req is None:
                    raise NotFound(f"Request {request_id} not found.", request_id=request_id)
                if not req.is_pending:
                    raise NotPending(
                        "Can only cancel pending requests.",
                        request_id=request_id, status=req.status.value,
                    )
                self.store.delete_request(conn, request_id)

    def resolve_request(self, holder_id: int, request_id: int, decision) -> AccessRequest:
        """Holder approves or denies a pending request, exactly once."""
        decision = Decision.parse(decision)
        req = self._lookup_request(request_id)
        if req.holder_id != holder_id:
            raise NotOwner("Request belongs to another holder.", request_id=request_id)

        with self._locks.get(req.holder_id, req.requester_id):
            with self._transaction() as conn:
                req = self.store.get_request(conn, request_id)
                if req is None:
                    raise NotFound(f"Request {request_id} not found.", request_id=request_id)
                if not req.is_pending:
                    raise AlreadyResolved(
                        "Request has already been resolved.",
                        request_id=request_id, status=req.status.value,
                    )

                now = self._clock()
                if decision == Decision.DENY:
                    return self.store.update_request_status(conn, request_id, RequestStatus.DENIED, now)

                resolved = self.store.update_request_status(conn, request_id, RequestStatus.APPROVED, now)
                self._apply_approval(conn, resolved, now)
                return resolved

    def _apply_approval(self, conn, req: AccessRequest, now: datetime) -> ConsentGrant:
        grant = self.store.find_active_grant(conn, req.holder_id, req.requester_id)
        if grant is not None:
            fields = req.requested_fields
            if self.approval_policy == "union":
                fields = grant.approved_fields | req.requested_fields
            return self.store.update_grant(conn, grant.id, fields, GrantStatus.ACTIVE, now)

        latest = self.store.find_latest_grant(conn, req.holder_id, req.requester_id)
        if latest is not None and latest.status == GrantStatus.PENDING:
            return self.store.update_grant(conn, latest.id, req.requested_fields, GrantStatus.ACTIVE, now)
        return self.store.insert_grant(
            conn, req.holder_id, req.requester_id, req.requested_fields, GrantStatus.ACTIVE, now,
        )

    def get_request(self, request_id: int) -> AccessRequest:
        return self._lookup_request(request_id)

    def requests_for_holder(self, holder_id: int) -> List[AccessRequest]:
        with self._transaction() as conn:
            return self.store.requests_for_holder(conn, holder_id)

    def requests_for_requester(self, requester_id: int) -> List[AccessRequest]:
        with self._transaction() as conn:
            return self.store.requests_for_requester(conn, requester_id)

    # ── Views ────────────────────────────────────────────────────────

    def connection_status(self, holder_id: int, requester_id: int) -> str:
        """Pair status as a requester sees it: connected, pending or none."""
        with self._transaction() as conn:
            if self.store.find_active_grant(conn, holder_id, requester_id):
                return "connected"
            if self.store.find_pending_request(conn, holder_id, requester_id):
                return "pending"
        return "none"

    def request_stats(self, requests: Iterable[AccessRequest]) -> Dict[str, int]:
        return summarize_requests(requests, self._clock())
