"""
Unit tests for the consent registry – grants, requests and their invariants.
"""

import gc
import threading

import pytest
from sqlalchemy.exc import OperationalError

from medvault.catalog import FieldCatalog
from medvault.consent_store import ConsentStore
from medvault.errors import (
    AlreadyConnected, AlreadyResolved, AlreadyRevoked, DuplicateRequest,
    EmptyFieldSet, InvalidDecision, InvalidFieldPath, NoActiveConnection,
    NotFound, NotOwner, NotPending, StorageFailure, UnknownField,
)
from medvault.models import Decision, GrantStatus, RequestStatus
from medvault.registry import ConsentRegistry, summarize_requests

H, D = 1, 2
FIELDS = ["vitals.heartRate", "patientInfo.bloodType"]


# ── Helpers / Fakes ──────────────────────────────────────────────────

class FailingEngine:
    """Engine whose transactions always fail at the driver level."""
    def begin(self):
        raise OperationalError("BEGIN", {}, Exception("disk I/O error"))


class RecordingCatalog:
    """Catalog that accepts a fixed set and records each lookup."""
    def __init__(self, fields):
        self.fields = set(fields)
        self.calls = []

    def is_recognized(self, path):
        self.calls.append(path)
        return path in self.fields


def _approved(registry, fields=FIELDS):
    registry.initiate_connection(H, D)
    req = registry.request_access(D, H, fields)
    registry.resolve_request(H, req.id, Decision.APPROVE)
    return req


# ── Tests: initiate_connection ───────────────────────────────────────

def test_initiate_connection_creates_active_empty_grant(registry, clock):
    grant = registry.initiate_connection(H, D)
    assert grant.status == GrantStatus.ACTIVE
    assert grant.approved_fields == frozenset()
    assert grant.created_at == clock.now
    assert grant.contract_address.startswith("contract_")
    assert registry.get_approved_fields(H, D) == frozenset()


def test_initiate_connection_twice_fails(registry):
    registry.initiate_connection(H, D)
    with pytest.raises(AlreadyConnected):
        registry.initiate_connection(H, D)


def test_connections_are_per_pair(registry):
    registry.initiate_connection(H, D)
    registry.initiate_connection(H, 3)
    registry.initiate_connection(4, D)
    assert len(registry.grants_for_holder(H)) == 2
    assert len(registry.grants_for_requester(D)) == 2


# ── Tests: request_access ────────────────────────────────────────────

def test_request_access_requires_active_connection(registry):
    with pytest.raises(NoActiveConnection):
        registry.request_access(D, H, FIELDS)


def test_request_access_creates_pending_request(registry, clock):
    registry.initiate_connection(H, D)
    req = registry.request_access(D, H, FIELDS)
    assert req.status == RequestStatus.PENDING
    assert req.requested_fields == frozenset(FIELDS)
    assert (req.holder_id, req.requester_id) == (H, D)
    assert req.created_at == clock.now


def test_second_request_while_pending_is_duplicate_regardless_of_fields(registry):
    registry.initiate_connection(H, D)
    registry.request_access(D, H, FIELDS)
    with pytest.raises(DuplicateRequest):
        registry.request_access(D, H, ["vitals.heartRate"])
    with pytest.raises(DuplicateRequest):
        registry.request_access(D, H, [])
    with pytest.raises(DuplicateRequest):
        registry.request_access(D, H, ["not.a.field"])


def test_request_access_rejects_empty_field_set(registry):
    registry.initiate_connection(H, D)
    with pytest.raises(EmptyFieldSet):
        registry.request_access(D, H, [])
    with pytest.raises(EmptyFieldSet):
        registry.request_access(D, H, None)


def test_request_access_rejects_unknown_fields(registry):
    registry.initiate_connection(H, D)
    with pytest.raises(UnknownField) as e:
        registry.request_access(D, H, ["vitals.heartRate", "vitals.mood", "ssn"])
    assert e.value.details["unknown_fields"] == ["vitals.mood", "ssn"]
    assert registry.requests_for_requester(D) == []


def test_request_access_rejects_malformed_paths(registry):
    registry.initiate_connection(H, D)
    with pytest.raises(InvalidFieldPath):
        registry.request_access(D, H, ["vitals..heartRate"])


def test_request_access_uses_injected_catalog(engine, clock):
    catalog = RecordingCatalog({"custom.field"})
    reg = ConsentRegistry(engine, catalog=catalog, clock=clock)
    reg.initiate_connection(H, D)
    req = reg.request_access(D, H, ["custom.field", "custom.field"])
    assert req.requested_fields == frozenset({"custom.field"})
    assert catalog.calls == ["custom.field"]


def test_rejected_request_does_not_block_a_later_one(registry):
    registry.initiate_connection(H, D)
    with pytest.raises(UnknownField):
        registry.request_access(D, H, ["bogus"])
    assert registry.request_access(D, H, FIELDS).is_pending


# ── Tests: resolve_request ───────────────────────────────────────────

def test_approve_sets_exact_requested_fields(registry):
    _approved(registry)
    assert registry.get_approved_fields(H, D) == frozenset(FIELDS)
    assert registry.connection_status(H, D) == "connected"


def test_approve_replaces_previous_fields(registry):
    _approved(registry)
    req = registry.request_access(D, H, ["labResults.imaging"])
    registry.resolve_request(H, req.id, "approve")
    assert registry.get_approved_fields(H, D) == frozenset({"labResults.imaging"})


def test_union_policy_adds_to_previous_fields(engine, clock):
    reg = ConsentRegistry(engine, clock=clock, approval_policy="union")
    _approved(reg)
    req = reg.request_access(D, H, ["labResults.imaging"])
    reg.resolve_request(H, req.id, Decision.APPROVE)
    assert reg.get_approved_fields(H, D) == frozenset(FIELDS + ["labResults.imaging"])


def test_unknown_approval_policy_is_rejected(engine):
    with pytest.raises(ValueError):
        ConsentRegistry(engine, approval_policy="merge")


def test_deny_leaves_grant_untouched(registry, clock):
    _approved(registry)
    clock.advance(minutes=5)
    req = registry.request_access(D, H, ["labResults.imaging"])
    resolved = registry.resolve_request(H, req.id, Decision.DENY)
    assert resolved.status == RequestStatus.DENIED
    assert resolved.updated_at == clock.now
    assert registry.get_approved_fields(H, D) == frozenset(FIELDS)


def test_resolved_request_cannot_be_resolved_again(registry):
    req = _approved(registry)
    with pytest.raises(AlreadyResolved):
        registry.resolve_request(H, req.id, Decision.DENY)
    assert registry.get_request(req.id).status == RequestStatus.APPROVED


def test_resolve_checks_owner_and_existence(registry):
    registry.initiate_connection(H, D)
    req = registry.request_access(D, H, FIELDS)
    with pytest.raises(NotOwner):
        registry.resolve_request(99, req.id, Decision.APPROVE)
    with pytest.raises(NotFound):
        registry.resolve_request(H, 12345, Decision.APPROVE)
    assert registry.get_request(req.id).is_pending


def test_resolve_rejects_unknown_decision(registry):
    registry.initiate_connection(H, D)
    req = registry.request_access(D, H, FIELDS)
    with pytest.raises(InvalidDecision):
        registry.resolve_request(H, req.id, "maybe")


def test_approval_after_revoke_creates_new_grant(registry):
    registry.initiate_connection(H, D)
    req = registry.request_access(D, H, FIELDS)
    old = registry.revoke(H, D)
    registry.resolve_request(H, req.id, Decision.APPROVE)

    grants = registry.grants_for_holder(H)
    assert [g.status for g in grants] == [GrantStatus.ACTIVE, GrantStatus.REVOKED]
    assert grants[1].id == old.id
    assert registry.get_approved_fields(H, D) == frozenset(FIELDS)


def test_approval_activates_pending_grant(engine, registry, clock):
    store = ConsentStore()
    with engine.begin() as conn:
        store.insert_grant(conn, H, D, [], GrantStatus.PENDING, clock.now)
        pending = store.insert_request(conn, H, D, FIELDS, clock.now)
    registry.resolve_request(H, pending.id, Decision.APPROVE)

    grants = registry.grants_for_holder(H)
    assert len(grants) == 1
    assert grants[0].status == GrantStatus.ACTIVE
    assert grants[0].approved_fields == frozenset(FIELDS)


# ── Tests: cancel_request ────────────────────────────────────────────

def test_cancel_deletes_pending_request(registry):
    registry.initiate_connection(H, D)
    req = registry.request_access(D, H, FIELDS)
    registry.cancel_request(D, req.id)
    with pytest.raises(NotFound):
        registry.get_request(req.id)
    assert registry.request_access(D, H, FIELDS).is_pending


def test_cancel_checks_owner_existence_and_status(registry):
    req = _approved(registry)
    with pytest.raises(NotPending):
        registry.cancel_request(D, req.id)
    with pytest.raises(NotOwner):
        registry.cancel_request(77, req.id)
    with pytest.raises(NotFound):
        registry.cancel_request(D, 4242)


# ── Tests: revoke ────────────────────────────────────────────────────

def test_revoke_clears_fields_and_blocks_requests(registry):
    _approved(registry)
    grant = registry.revoke(H, D)
    assert grant.status == GrantStatus.REVOKED
    assert grant.approved_fields == frozenset()
    assert registry.get_approved_fields(H, D) == frozenset()
    assert registry.check_field_access(H, D, "vitals.heartRate") is False
    with pytest.raises(NoActiveConnection):
        registry.request_access(D, H, ["vitals.heartRate"])


def test_revoke_without_grant_is_not_found(registry):
    with pytest.raises(NotFound):
        registry.revoke(H, D)


def test_revoke_twice_is_already_revoked(registry):
    registry.initiate_connection(H, D)
    registry.revoke(H, D)
    with pytest.raises(AlreadyRevoked):
        registry.revoke(H, D)


def test_reconnect_after_revoke_creates_fresh_grant(registry):
    _approved(registry)
    registry.revoke(H, D)
    fresh = registry.initiate_connection(H, D)
    assert fresh.approved_fields == frozenset()
    statuses = [g.status for g in registry.grants_for_holder(H)]
    assert statuses == [GrantStatus.ACTIVE, GrantStatus.REVOKED]
    registry.revoke(H, D)
    assert registry.get_approved_fields(H, D) == frozenset()


# ── Tests: queries ───────────────────────────────────────────────────

def test_check_field_access(registry):
    _approved(registry)
    assert registry.check_field_access(H, D, "vitals.heartRate") is True
    assert registry.check_field_access(H, D, "vitals.temperature") is False
    assert registry.check_field_access(H, 3, "vitals.heartRate") is False


def test_connection_status(registry):
    assert registry.connection_status(H, D) == "none"
    registry.initiate_connection(H, D)
    assert registry.connection_status(H, D) == "connected"


def test_request_lists_are_newest_first(registry):
    registry.initiate_connection(H, D)
    first = registry.request_access(D, H, FIELDS)
    registry.resolve_request(H, first.id, Decision.DENY)
    second = registry.request_access(D, H, ["vitals.weight"])
    assert [r.id for r in registry.requests_for_holder(H)] == [second.id, first.id]
    assert [r.id for r in registry.requests_for_requester(D)] == [second.id, first.id]


def test_summarize_requests_counts_statuses_and_recent(registry, clock):
    registry.initiate_connection(H, D)
    old = registry.request_access(D, H, FIELDS)
    registry.resolve_request(H, old.id, Decision.DENY)
    clock.advance(days=2)
    new = registry.request_access(D, H, FIELDS)
    registry.resolve_request(H, new.id, Decision.APPROVE)
    registry.request_access(D, H, ["vitals.weight"])

    stats = registry.request_stats(registry.requests_for_holder(H))
    assert stats == {"total": 3, "pending": 1, "approved": 1, "denied": 1, "recent": 2}
    assert summarize_requests([], clock.now)["total"] == 0


# ── Tests: storage and concurrency ───────────────────────────────────

def test_storage_faults_surface_as_storage_failure():
    reg = ConsentRegistry(FailingEngine(), catalog=FieldCatalog())
    with pytest.raises(StorageFailure) as e:
        reg.initiate_connection(H, D)
    assert isinstance(e.value.cause, OperationalError)
    with pytest.raises(StorageFailure):
        reg.get_approved_fields(H, D)


def test_partial_unique_index_backs_single_active_grant(engine, clock):
    store = ConsentStore()
    with engine.begin() as conn:
        store.insert_grant(conn, H, D, [], GrantStatus.ACTIVE, clock.now)

    class BlindStore(ConsentStore):
        def find_active_grant(self, conn, holder_id, requester_id):
            return None

    reg = ConsentRegistry(engine, store=BlindStore(), clock=clock)
    with pytest.raises(AlreadyConnected):
        reg.initiate_connection(H, D)


def test_concurrent_requests_leave_one_pending(registry):
    registry.initiate_connection(H, D)
    outcomes = []
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        try:
            registry.request_access(D, H, FIELDS)
            outcomes.append("ok")
        except DuplicateRequest:
            outcomes.append("dup")

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 7
    pending = [r for r in registry.requests_for_holder(H) if r.is_pending]
    assert len(pending) == 1


def test_pair_locks_do_not_accumulate(registry):
    registry.initiate_connection(H, D)
    registry.initiate_connection(H, 3)
    registry.initiate_connection(4, D)
    gc.collect()
    assert len(registry._locks) == 0

    held = registry._locks.get(H, D)
    assert registry._locks.get(H, D) is held
    assert len(registry._locks) == 1
    del held
    gc.collect()
    assert len(registry._locks) == 0
