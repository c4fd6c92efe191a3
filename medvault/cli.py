"""
Interactive console for MedVault consent management.
Patients connect doctors and answer requests; doctors request and view fields.
"""

import json

from medvault.catalog import FieldCatalog, sample_record
from medvault.config import HOLDER_ROLE, REQUESTER_ROLE
from medvault.database import init_engine, init_schema
from medvault.errors import ConsentError, NotFound, StorageFailure
from medvault.models import Decision
from medvault.rbac import get_party, list_parties, load_access_context
from medvault.records import SqlRecordStore, read_shared_record
from medvault.registry import ConsentRegistry

HOLDER_HELP = """Commands:
  fields                 list recognized fields
  doctors                list doctors and what they can see
  connect <doctor_id>    connect with a doctor (no fields shared)
  requests               list access requests
  approve <request_id>   approve a pending request
  deny <request_id>      deny a pending request
  revoke <doctor_id>     revoke a doctor's access
  sample                 generate a sample medical record
  stats                  request statistics
  quit"""

REQUESTER_HELP = """Commands:
  fields                             list recognized fields
  patients                           list patients with records
  request <patient_id> <f1,f2,...>   request access to fields
  requests                           list sent requests
  cancel <request_id>                cancel a pending request
  view <patient_id>                  view approved fields of a patient's record
  stats                              request statistics
  quit"""


def _dump(data) -> str:
    return json.dumps(data, indent=2, default=str)


def _int_arg(args, usage: str) -> int:
    if not args or not args[0].isdigit():
        raise ValueError(f"Usage: {usage}")
    return int(args[0])


def run_command(line: str, ctx, engine, registry, record_store, catalog) -> str:
    """Execute one console command for *ctx* and return the text to print."""
    parts = line.split()
    if not parts:
        return ""
    cmd, args = parts[0].lower(), parts[1:]

    if cmd == "help":
        return HOLDER_HELP if ctx.role == HOLDER_ROLE else REQUESTER_HELP
    if cmd == "fields":
        return _dump(catalog.categories())
    if cmd == "stats":
        if ctx.role == HOLDER_ROLE:
            reqs = registry.requests_for_holder(ctx.party_id)
        else:
            reqs = registry.requests_for_requester(ctx.party_id)
        return _dump(registry.request_stats(reqs))

    if ctx.role == HOLDER_ROLE:
        if cmd == "doctors":
            rows = []
            for doc in list_parties(engine, REQUESTER_ROLE):
                fields = sorted(registry.get_approved_fields(ctx.party_id, doc["id"]))
                rows.append(f"{doc['id']:>4}  {doc['display_name']}  fields={fields}")
            return "\n".join(rows) or "(no doctors)"
        if cmd == "connect":
            doctor_id = _int_arg(args, "connect <doctor_id>")
            doctor = get_party(engine, doctor_id)
            if not doctor or doctor["role"] != REQUESTER_ROLE:
                raise NotFound(f"Doctor {doctor_id} not found.", party_id=doctor_id)
            grant = registry.initiate_connection(ctx.party_id, doctor["id"])
            return f"Connected (grant {grant.id}). No fields shared yet."
        if cmd == "requests":
            return _dump([r.to_dict() for r in registry.requests_for_holder(ctx.party_id)])
        if cmd in ("approve", "deny"):
            request_id = _int_arg(args, f"{cmd} <request_id>")
            resolved = registry.resolve_request(ctx.party_id, request_id, Decision(cmd))
            return f"Request {resolved.id} {resolved.status.value}."
        if cmd == "revoke":
            registry.revoke(ctx.party_id, _int_arg(args, "revoke <doctor_id>"))
            return "Access revoked."
        if cmd == "sample":
            cid = record_store.store(ctx.party_id, sample_record(ctx.display_name))
            return f"Sample record stored as {cid}."
    else:
        if cmd == "patients":
            rows = []
            for p in list_parties(engine, HOLDER_ROLE):
                if not p.get("record_cid"):
                    continue
                status = registry.connection_status(p["id"], ctx.party_id)
                rows.append(f"{p['id']:>4}  {p['display_name']}  [{status}]")
            return "\n".join(rows) or "(no patients with records)"
        if cmd == "request":
            if len(args) < 2:
                raise ValueError("Usage: request <patient_id> <f1,f2,...>")
            patient_id = _int_arg(args, "request <patient_id> <f1,f2,...>")
            fields = [f.strip() for f in args[1].split(",") if f.strip()]
            req = registry.request_access(ctx.party_id, patient_id, fields)
            return f"Request {req.id} sent ({', '.join(sorted(req.requested_fields))})."
        if cmd == "requests":
            return _dump([r.to_dict() for r in registry.requests_for_requester(ctx.party_id)])
        if cmd == "cancel":
            request_id = _int_arg(args, "cancel <request_id>")
            registry.cancel_request(ctx.party_id, request_id)
            return f"Request {request_id} canceled."
        if cmd == "view":
            patient_id = _int_arg(args, "view <patient_id>")
            patient = get_party(engine, patient_id) or {}
            data = read_shared_record(
                registry, record_store, patient_id, ctx.party_id, patient.get("record_cid"),
            )
            return _dump(data)

    raise ValueError(f"Unknown command '{cmd}'. Type 'help'.")


def main():
    print("=== MedVault: Consent Console ===\n")

    engine = init_engine()
    init_schema(engine)
    catalog = FieldCatalog()
    registry = ConsentRegistry(engine, catalog=catalog)
    record_store = SqlRecordStore(engine)

    # ── Login ────────────────────────────────────────────────────────
    try:
        api_key = input("Enter access key (or 'quit'): ").strip()
    except (EOFError, KeyboardInterrupt):
        print("\nExiting.")
        return

    if not api_key or api_key.lower() in {"quit", "exit"}:
        print("Goodbye.")
        return

    try:
        ctx = load_access_context(engine, api_key)
    except Exception as e:
        print("\n[ERROR] Login failed.")
        print("Details:", e)
        return

    print(f"\n[auth] Logged in as: {ctx.display_name} (role={ctx.role})")
    print(HOLDER_HELP if ctx.role == HOLDER_ROLE else REQUESTER_HELP)

    # ── REPL ─────────────────────────────────────────────────────────
    while True:
        try:
            line = input("\n> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            break

        if not line:
            continue
        if line.lower() in {"quit", "exit"}:
            print("Goodbye.")
            break

        try:
            print(run_command(line, ctx, engine, registry, record_store, catalog))
        except ConsentError as e:
            print(f"\n[DENIED] {e.code}: {e.message}")
        except StorageFailure as e:
            print("\n[DB ERROR] Storage failure while running the command.")
            print("Details:", e)
        except ValueError as e:
            print(f"\n[ERROR] {e}")


if __name__ == "__main__":
    main()
