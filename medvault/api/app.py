"""
Flask application factory and server entry-point.
"""

import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from medvault.catalog import FieldCatalog
from medvault.config import APPROVAL_POLICY, TOKEN_EXPIRY_HOURS
from medvault.database import init_engine, init_schema
from medvault.records import SqlRecordStore
from medvault.registry import ConsentRegistry
from medvault.api.routes import register_routes


def create_app(engine=None, catalog=None):
    """Build and return a fully configured Flask application."""
    app = Flask(__name__)
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    try:
        if engine is None:
            print("[init] Initializing database connection...")
            engine = init_engine()

        print("[init] Ensuring schema...")
        init_schema(engine)

        catalog = catalog or FieldCatalog()
        registry = ConsentRegistry(engine, catalog=catalog)
        record_store = SqlRecordStore(engine)

        print(f"[init] Approval policy: {APPROVAL_POLICY}")
        print("[init] ✓ API server ready")
    except Exception as e:
        print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, engine, registry, record_store, catalog)

    app.extensions["medvault"] = {
        "engine": engine,
        "registry": registry,
        "record_store": record_store,
        "catalog": catalog,
    }
    return app


KEY_ENDPOINTS = [
    ("POST", "/api/auth/login"),
    ("GET", "/api/fields"),
    ("POST", "/api/patient/connections"),
    ("POST", "/api/patient/requests/<id>/respond"),
    ("POST", "/api/doctor/requests"),
    ("GET", "/api/doctor/patients/<id>/record"),
    ("GET", "/health"),
]


def main():
    """Run the development server."""
    print("=" * 60)
    print("MedVault – Consent REST API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Listening on {host}:{port} (debug={debug})")
    print(f"[server] Tokens expire after {TOKEN_EXPIRY_HOURS} hours")
    print("\nKey endpoints:")
    for method, path in KEY_ENDPOINTS:
        print(f"  - {method:<4} http://{host}:{port}{path}")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
