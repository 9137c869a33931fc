"""Access rules for the two audiences of the service.

Everything under ``/tracker`` is the auditor surface. When
``OBSTRACKER_API_KEY`` is set, auditor writes need it in ``X-API-Key`` and
auditor reads need it too once ``OBSTRACKER_REQUIRE_AUTH_FOR_READS=true``.

The dashboard and client routes never take a key. They are scoped per
observation by the owner email match instead (see
``obstracker.rules.reconcile.client_access_allowed``).
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.openapi.utils import get_openapi

logger = logging.getLogger(__name__)

AUDITOR_PREFIX = "/tracker"
KEY_HEADER = "X-API-Key"
READ_METHODS = frozenset({"GET", "HEAD"})
EMAIL_SCOPED_NOTE = "No API key. Results are limited to the observation owner's email."


def auditor_key() -> Optional[str]:
    return os.getenv("OBSTRACKER_API_KEY", "").strip() or None


def tracker_reads_protected() -> bool:
    return os.getenv("OBSTRACKER_REQUIRE_AUTH_FOR_READS", "false").strip().lower() == "true"


def is_auditor_path(path: str) -> bool:
    return path == AUDITOR_PREFIX or path.startswith(AUDITOR_PREFIX + "/")


def auth_diagnostics() -> Dict[str, Any]:
    return {
        "auditor_key_configured": auditor_key() is not None,
        "tracker_reads_protected": tracker_reads_protected(),
        "client_access": "owner email match",
    }


def require_auditor(request: Request) -> None:
    expected = auditor_key()
    if expected is None:
        return
    if request.method in READ_METHODS and not tracker_reads_protected():
        return
    provided = request.headers.get(KEY_HEADER)
    if not provided or not secrets.compare_digest(provided, expected):
        logger.warning("Auditor key rejected (%s %s)", request.method, request.url.path)
        raise HTTPException(status_code=401, detail="Auditor API key required")


def install_openapi_access_notes(app: FastAPI) -> None:
    def openapi_with_access():
        if app.openapi_schema:
            return app.openapi_schema

        schema = get_openapi(title=app.title, version=app.version, description=app.description, routes=app.routes)
        schema.setdefault("components", {}).setdefault("securitySchemes", {})["AuditorKey"] = {
            "type": "apiKey",
            "in": "header",
            "name": KEY_HEADER,
        }
        for path, methods in (schema.get("paths") or {}).items():
            for operation in methods.values():
                if not isinstance(operation, dict):
                    continue
                if is_auditor_path(path):
                    operation["security"] = [{"AuditorKey": []}]
                elif path != "/health":
                    operation["security"] = []
                    note = operation.get("description")
                    operation["description"] = f"{note}\n\n{EMAIL_SCOPED_NOTE}" if note else EMAIL_SCOPED_NOTE

        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = openapi_with_access
