"""
Flask route handlers for the REST API.
"""

import sys
import traceback
from datetime import datetime, timedelta, timezone

from flask import request, jsonify

from medvault.catalog import sample_record
from medvault.config import HOLDER_ROLE, REQUESTER_ROLE, TOKEN_EXPIRY_HOURS
from medvault.database import health_check
from medvault.errors import ConsentError, NotFound, NotOwner, StorageFailure, http_status_for
from medvault.rbac import get_party, list_parties, load_access_context
from medvault.records import load_shared_record
from medvault.api.auth import (
    sessions,
    generate_token,
    role_required,
    token_required,
)


def _ok(data=None, message=None, status=200):
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return jsonify(body), status


def _bad_request(message, status=400):
    return jsonify({"success": False, "error": message}), status


def _json_object():
    """The request body if it is a JSON object, otherwise None."""
    if not request.is_json:
        return None
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _parse_id(raw):
    """Positive integer id from a JSON number or digit string, else None."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
    else:
        return None
    return value if value > 0 else None


def register_routes(app, engine, registry, record_store, catalog):
    """Register all API routes on the Flask *app*."""

    def current_ctx():
        return request.session_data["ctx"]

    def find_party(party_id, role):
        party = get_party(engine, party_id)
        if not party or party["role"] != role:
            raise NotFound(f"{role.capitalize()} {party_id} not found.", party_id=party_id)
        return party

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "MedVault Consent API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "auth": "/api/auth/login",
                "fields": "/api/fields",
                "patient": "/api/patient/...",
                "doctor": "/api/doctor/...",
                "logout": "/api/auth/logout",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {
            "database": health_check(engine),
            "catalog": bool(catalog.fields),
        }
        all_healthy = all(checks.values())
        return jsonify({
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
            "active_sessions": len(sessions),
        }), 200 if all_healthy else 503

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        if not request.is_json:
            return _bad_request("Content-Type must be application/json")
        data = _json_object()
        if data is None:
            return _bad_request("Request body must be a JSON object")

        api_key = str(data.get("api_key") or "").strip()
        if not api_key:
            return _bad_request("api_key is required")

        try:
            ctx = load_access_context(engine, api_key)
        except ValueError as e:
            return jsonify({"error": f"Authentication failed: {str(e)}"}), 401

        token = generate_token(ctx)
        now = datetime.now(timezone.utc)
        sessions[token] = {"ctx": ctx, "created_at": now, "last_activity": now}

        return jsonify({
            "success": True,
            "token": token,
            "user": {
                "id": ctx.party_id,
                "display_name": ctx.display_name,
                "role": ctx.role,
            },
            "expires_at": (now + timedelta(hours=TOKEN_EXPIRY_HOURS)).isoformat(),
        }), 200

    @app.route("/api/auth/logout", methods=["POST"])
    @token_required
    def logout():
        sessions.pop(request.token, None)
        return jsonify({"success": True, "message": "Logged out successfully"}), 200

    @app.route("/api/user/profile", methods=["GET"])
    @token_required
    def get_profile():
        session_data = request.session_data
        ctx = session_data["ctx"]
        party = get_party(engine, ctx.party_id) or {}
        return jsonify({
            "success": True,
            "user": {
                "id": ctx.party_id,
                "display_name": ctx.display_name,
                "role": ctx.role,
                "has_record": bool(party.get("record_cid")),
            },
            "session": {
                "created_at": session_data["created_at"].isoformat(),
                "last_activity": session_data["last_activity"].isoformat(),
            },
        }), 200

    @app.route("/api/fields", methods=["GET"])
    @token_required
    def get_fields():
        return _ok({"fields": catalog.fields, "categories": catalog.categories()})

    # ── Holder (patient) ─────────────────────────────────────────────

    @app.route("/api/patient/record", methods=["POST"])
    @token_required
    @role_required(HOLDER_ROLE)
    def upload_record():
        if not request.is_json:
            return _bad_request("Content-Type must be application/json")
        record = (_json_object() or {}).get("record")
        if not isinstance(record, dict):
            return _bad_request("record must be a JSON object")
        content_id = record_store.store(current_ctx().party_id, record)
        return _ok({"content_id": content_id}, "Record uploaded successfully", 201)

    @app.route("/api/patient/sample-record", methods=["POST"])
    @token_required
    @role_required(HOLDER_ROLE)
    def generate_sample_record():
        ctx = current_ctx()
        content_id = record_store.store(ctx.party_id, sample_record(ctx.display_name))
        return _ok({"content_id": content_id}, "Sample record generated", 201)

    @app.route("/api/patient/record", methods=["GET"])
    @token_required
    @role_required(HOLDER_ROLE)
    def get_own_record():
        ctx = current_ctx()
        party = get_party(engine, ctx.party_id) or {}
        if not party.get("record_cid"):
            return _bad_request("No record uploaded", 404)
        record = record_store.retrieve(ctx.party_id, party["record_cid"])
        return _ok({"content_id": party["record_cid"], "record": record})

    @app.route("/api/patient/doctors", methods=["GET"])
    @token_required
    @role_required(HOLDER_ROLE)
    def list_doctors():
        holder_id = current_ctx().party_id
        doctors = []
        for doc in list_parties(engine, REQUESTER_ROLE):
            grant = registry.get_grant(holder_id, doc["id"])
            doctors.append({
                "id": doc["id"],
                "name": doc["display_name"],
                "connected": grant is not None,
                "approved_fields": sorted(grant.approved_fields) if grant else [],
            })
        return _ok(doctors)

    @app.route("/api/patient/connections", methods=["POST"])
    @token_required
    @role_required(HOLDER_ROLE)
    def connect_doctor():
        raw_id = (_json_object() or {}).get("doctor_id")
        if raw_id in (None, ""):
            return _bad_request("doctor_id is required")
        doctor_id = _parse_id(raw_id)
        if doctor_id is None:
            return _bad_request("doctor_id must be an integer")
        doctor = find_party(doctor_id, REQUESTER_ROLE)
        grant = registry.initiate_connection(current_ctx().party_id, doctor["id"])
        return _ok(
            grant.to_dict(),
            "Connected. The doctor can now request access to specific fields.",
            201,
        )

    @app.route("/api/patient/connections", methods=["GET"])
    @token_required
    @role_required(HOLDER_ROLE)
    def list_holder_connections():
        grants = registry.grants_for_holder(current_ctx().party_id)
        return _ok([g.to_dict() for g in grants])

    @app.route("/api/patient/connections/<int:doctor_id>/revoke", methods=["POST"])
    @token_required
    @role_required(HOLDER_ROLE)
    def revoke_doctor(doctor_id):
        grant = registry.revoke(current_ctx().party_id, doctor_id)
        return _ok(grant.to_dict(), "Doctor access revoked successfully")

    @app.route("/api/patient/requests", methods=["GET"])
    @token_required
    @role_required(HOLDER_ROLE)
    def list_holder_requests():
        reqs = registry.requests_for_holder(current_ctx().party_id)
        out = []
        for r in reqs:
            item = r.to_dict()
            doctor = get_party(engine, r.requester_id)
            item["doctor_name"] = doctor["display_name"] if doctor else None
            out.append(item)
        return _ok(out)

    @app.route("/api/patient/requests/<int:request_id>/respond", methods=["POST"])
    @token_required
    @role_required(HOLDER_ROLE)
    def respond_to_request(request_id):
        action = (_json_object() or {}).get("action")
        resolved = registry.resolve_request(current_ctx().party_id, request_id, action)
        return _ok(resolved.to_dict(), f"Request {resolved.status.value} successfully")

    # ── Requester (doctor) ───────────────────────────────────────────

    @app.route("/api/doctor/patients", methods=["GET"])
    @token_required
    @role_required(REQUESTER_ROLE)
    def list_patients():
        requester_id = current_ctx().party_id
        patients = [
            {
                "id": p["id"],
                "name": p["display_name"],
                "connection_status": registry.connection_status(p["id"], requester_id),
                "has_record": True,
            }
            for p in list_parties(engine, HOLDER_ROLE)
            if p.get("record_cid")
        ]
        return _ok(patients)

    @app.route("/api/doctor/requests", methods=["POST"])
    @token_required
    @role_required(REQUESTER_ROLE)
    def request_access():
        if not request.is_json:
            return _bad_request("Content-Type must be application/json")
        data = _json_object()
        if data is None:
            return _bad_request("Request body must be a JSON object")
        raw_id = data.get("patient_id")
        if raw_id in (None, ""):
            return _bad_request("patient_id is required")
        patient_id = _parse_id(raw_id)
        if patient_id is None:
            return _bad_request("patient_id must be an integer")
        requested_fields = data.get("requested_fields")
        if requested_fields is not None and not isinstance(requested_fields, list):
            return _bad_request("requested_fields must be a list")

        patient = find_party(patient_id, HOLDER_ROLE)
        req = registry.request_access(current_ctx().party_id, patient["id"], requested_fields)
        return _ok(req.to_dict(), "Access request sent to patient", 201)

    @app.route("/api/doctor/requests", methods=["GET"])
    @token_required
    @role_required(REQUESTER_ROLE)
    def list_requester_requests():
        reqs = registry.requests_for_requester(current_ctx().party_id)
        return _ok([r.to_dict() for r in reqs])

    @app.route("/api/doctor/requests/<int:request_id>", methods=["DELETE"])
    @token_required
    @role_required(REQUESTER_ROLE)
    def cancel_request(request_id):
        registry.cancel_request(current_ctx().party_id, request_id)
        return _ok({"request_id": request_id}, "Request canceled successfully")

    @app.route("/api/doctor/connections", methods=["GET"])
    @token_required
    @role_required(REQUESTER_ROLE)
    def list_requester_connections():
        grants = registry.grants_for_requester(current_ctx().party_id)
        return _ok([g.to_dict() for g in grants])

    @app.route("/api/doctor/patients/<int:patient_id>/record", methods=["GET"])
    @token_required
    @role_required(REQUESTER_ROLE)
    def read_patient_record(patient_id):
        patient = find_party(patient_id, HOLDER_ROLE)
        requester_id = current_ctx().party_id
        grant, data = load_shared_record(
            registry, record_store, patient["id"], requester_id, patient.get("record_cid"),
        )
        return _ok({
            "patient_id": patient["id"],
            "approved_fields": sorted(grant.approved_fields),
            "medical_data": data,
        })

    # ── Shared ───────────────────────────────────────────────────────

    @app.route("/api/requests/stats", methods=["GET"])
    @token_required
    def request_stats():
        ctx = current_ctx()
        if ctx.role == HOLDER_ROLE:
            reqs = registry.requests_for_holder(ctx.party_id)
        else:
            reqs = registry.requests_for_requester(ctx.party_id)
        return _ok(registry.request_stats(reqs))

    @app.route("/api/requests/<int:request_id>/read", methods=["POST"])
    @token_required
    def mark_request_read(request_id):
        ctx = current_ctx()
        req = registry.get_request(request_id)
        if ctx.party_id not in (req.holder_id, req.requester_id):
            raise NotOwner("Request belongs to another party.", request_id=request_id)
        return _ok({"request_id": request_id, "read": True}, "Request marked as read")

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(ConsentError)
    def consent_error(e):
        return jsonify({"success": False, **e.to_dict()}), http_status_for(e)

    @app.errorhandler(StorageFailure)
    def storage_failure(e):
        print(f"[ERROR] Storage failure: {e}", file=sys.stderr)
        traceback.print_exception(type(e), e, e.__traceback__)
        return jsonify({"success": False, "error": e.code, "message": "Storage failure"}), 500

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"error": "Internal server error", "message": str(e)}), 500
