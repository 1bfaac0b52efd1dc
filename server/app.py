"""Flask backend for the co-parent expense ledger: report generation and downloads."""
from __future__ import annotations

import base64
import json
import logging
import os
import re
import sys
from io import BytesIO
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from werkzeug.utils import secure_filename

load_dotenv()

ROOT_DIR = Path(__file__).resolve().parent.parent
UPLOAD_DIR = ROOT_DIR / (os.getenv("UPLOAD_DIR") or "uploads")
SERVER_DIR = Path(__file__).resolve().parent
if str(SERVER_DIR) not in sys.path:
    sys.path.insert(0, str(SERVER_DIR))

from errors import InvalidFilterError, ReportGenerationError  # noqa: E402
from object_storage import (  # noqa: E402
    RECEIPTS_PREFIX,
    CloudinaryObjectStore,
    LocalObjectStore,
    ObjectNotFoundError,
    is_remote,
    user_namespace,
)
from records import ReportFilter  # noqa: E402
from report_source import AirtableReportSource, AirtableTables  # noqa: E402
from reporting import ReportOptions, build_preview, generate_report  # noqa: E402

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = 10 * 1024 * 1024  # 10 MB

allowed_origin = os.getenv("ALLOWED_ORIGIN", "*")
if allowed_origin == "*":
    CORS(app)
else:
    CORS(app, resources={r"/*": {"origins": [allowed_origin]}})

UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

AIRTABLE_API_KEY = os.getenv("AIRTABLE_API_KEY")
AIRTABLE_BASE_ID = os.getenv("AIRTABLE_BASE_ID")
AIRTABLE_URL = os.getenv("AIRTABLE_URL")
AIRTABLE_EXPENSES_TABLE = os.getenv("AIRTABLE_EXPENSES_TABLE", "Expenses")
AIRTABLE_CHILDREN_TABLE = os.getenv("AIRTABLE_CHILDREN_TABLE", "Children")
AIRTABLE_PARENTS_TABLE = os.getenv("AIRTABLE_PARENTS_TABLE", "Parents")
AIRTABLE_LAWYERS_TABLE = os.getenv("AIRTABLE_LAWYERS_TABLE", "Lawyers")
AIRTABLE_LEGAL_CASES_TABLE = os.getenv("AIRTABLE_LEGAL_CASES_TABLE", "Legal Cases")

STORAGE_PROVIDER = (os.getenv("STORAGE_PROVIDER") or "local").lower()
CLD_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLD_API_KEY = os.getenv("CLOUDINARY_API_KEY")
CLD_API_SECRET = os.getenv("CLOUDINARY_API_SECRET")
CLD_FOLDER = os.getenv("CLOUDINARY_FOLDER") or "coparent-ledger"

REPORT_TIMEOUT_SECONDS = float(os.getenv("REPORT_TIMEOUT_SECONDS", "120"))
REPORT_MAX_WORKERS = int(os.getenv("REPORT_MAX_WORKERS", "4"))
RECEIPT_MAX_DIMENSION = int(os.getenv("RECEIPT_MAX_DIMENSION", "1600"))
RECEIPT_JPEG_QUALITY = int(os.getenv("RECEIPT_JPEG_QUALITY", "85"))
CHART_DPI = int(os.getenv("CHART_DPI", "200"))
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()

REPORTS_PREFIX = "reports"
STATUS_BY_CODE = {
    "invalid_filter": 400,
    "invalid_payload": 400,
    "cancelled": 504,
    "timeout": 504,
    "data_source_unavailable": 502,
}


def _configure_cloudinary() -> bool:
    """Configure Cloudinary if requested by the environment."""
    if STORAGE_PROVIDER != "cloudinary":
        return False
    if not (CLD_CLOUD_NAME and CLD_API_KEY and CLD_API_SECRET):
        logger.warning("STORAGE_PROVIDER=cloudinary but Cloudinary credentials are incomplete; using local storage")
        return False
    import cloudinary

    cloudinary.config(
        cloud_name=CLD_CLOUD_NAME,
        api_key=CLD_API_KEY,
        api_secret=CLD_API_SECRET,
        secure=True,
    )
    return True


CLOUDINARY_ENABLED = _configure_cloudinary()


def _parse_airtable_base(url: str | None) -> str | None:
    """Extract the base ID (app...) from an Airtable UI URL."""
    if not url:
        return None
    base_match = re.search(r"(app[a-zA-Z0-9]+)", url)
    return base_match.group(1) if base_match else None


def get_report_source() -> AirtableReportSource:
    """Return the Airtable-backed report source configured from environment variables."""
    base_id = AIRTABLE_BASE_ID or _parse_airtable_base(AIRTABLE_URL)
    tables = AirtableTables(
        expenses=AIRTABLE_EXPENSES_TABLE,
        children=AIRTABLE_CHILDREN_TABLE,
        parents=AIRTABLE_PARENTS_TABLE,
        lawyers=AIRTABLE_LAWYERS_TABLE,
        legal_cases=AIRTABLE_LEGAL_CASES_TABLE,
    )
    return AirtableReportSource(AIRTABLE_API_KEY or "", base_id or "", tables)


def get_object_store():
    """Return the object store for receipts and generated reports."""
    if STORAGE_PROVIDER == "cloudinary" and CLOUDINARY_ENABLED:
        return CloudinaryObjectStore(CLD_FOLDER)
    return LocalObjectStore(UPLOAD_DIR)


def report_options() -> ReportOptions:
    return ReportOptions(
        timeout_seconds=REPORT_TIMEOUT_SECONDS,
        max_workers=REPORT_MAX_WORKERS,
        receipt_max_dimension=RECEIPT_MAX_DIMENSION,
        jpeg_quality=RECEIPT_JPEG_QUALITY,
        chart_dpi=CHART_DPI,
    )


def _b64url_decode(data: str) -> bytes:
    """Decode base64url strings from Cloudflare Access headers."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def _cf_email_from_request() -> str | None:
    """Extract user email from Cloudflare Access headers or cookies."""
    email = request.headers.get("Cf-Access-Authenticated-User-Email")
    if email:
        return email
    xf_user = request.headers.get("X-Forwarded-User")
    if xf_user and "@" in xf_user:
        return xf_user
    token = request.cookies.get("CF_Authorization") or request.headers.get("Cf-Access-Jwt-Assertion")
    if token and token.count(".") >= 2:
        try:
            payload_raw = _b64url_decode(token.split(".")[1])
            data = json.loads(payload_raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return None
        em = data.get("email") or data.get("sub") if isinstance(data, dict) else None
        if isinstance(em, str) and "@" in em:
            return em
    return None


def current_user_id() -> str | None:
    """Opaque id of the authenticated user, or None when the request is anonymous.

    Identity is taken from Cloudflare Access as-is: neither the headers nor the
    JWT signature are verified here. The app must only be reachable through
    Cloudflare Access (or a proxy that strips ``Cf-Access-*``,
    ``X-Forwarded-User`` and ``CF_Authorization`` from client requests);
    exposed directly, any caller can claim any user.
    """
    email = _cf_email_from_request()
    return email.strip().lower() if email and email.strip() else None


def _unauthenticated():
    return jsonify({"ok": False, "error": "Authentication required", "code": "unauthenticated"}), 401


def _forbidden():
    return jsonify({"ok": False, "error": "Access to another user's files is not allowed", "code": "forbidden"}), 403


def _error_response(exc: ReportGenerationError):
    status = STATUS_BY_CODE.get(exc.code, 500)
    if status >= 500:
        logger.error("Report generation failed (%s): %s", exc.code, exc, exc_info=exc)
    else:
        logger.info("Rejected report request (%s): %s", exc.code, exc)
    return jsonify({"ok": False, "error": str(exc), "code": exc.code}), status


def _filter_from_request(*, allow_body: bool = False) -> ReportFilter:
    """Build the report filter from the query string and, optionally, the JSON body."""
    values: dict[str, Any] = {}
    for key in ("start", "end", "categories", "children", "childIds", "statuses"):
        if key in request.args:
            values[key] = request.args.get(key)
    if allow_body:
        body = request.get_json(silent=True)
        if body is not None and not isinstance(body, dict):
            raise InvalidFilterError("Request body must be a JSON object")
        body = body or {}
        source = body.get("filter") if isinstance(body.get("filter"), dict) else body
        for key in ("start", "end", "categories", "children", "childIds", "statuses"):
            if source.get(key) not in (None, ""):
                values[key] = source.get(key)
    return ReportFilter.from_payload(values)


@app.route("/version")
def version() -> dict[str, str]:
    """Return the backend version."""
    return {"version": "2.0.0"}


@app.get("/healthz")
def healthz() -> dict[str, str]:
    """Liveness probe used by deployment platforms."""
    return {"status": "ok"}


@app.get("/api/whoami")
def whoami():
    """Return the identity forwarded by the SSO proxy."""
    user_id = current_user_id()
    return jsonify({"authenticated": bool(user_id), "email": user_id})


@app.get("/api/reports/preview")
def preview_report():
    """Return the aggregated numbers for a filter without rendering a document."""
    user_id = current_user_id()
    if not user_id:
        return _unauthenticated()
    try:
        report_filter = _filter_from_request()
        preview = build_preview(user_id, report_filter, get_report_source())
    except ReportGenerationError as exc:
        return _error_response(exc)
    return jsonify({"ok": True, **preview})


@app.post("/api/reports")
def create_report():
    """Generate the PDF report, store it under the user's namespace and return its summary."""
    user_id = current_user_id()
    if not user_id:
        return _unauthenticated()
    try:
        report_filter = _filter_from_request(allow_body=True)
        result = generate_report(
            user_id,
            report_filter,
            get_report_source(),
            get_object_store(),
            options=report_options(),
            on_progress=lambda pct, message: logger.debug("[%s] %d%% %s", user_id, pct, message),
        )
    except ReportGenerationError as exc:
        return _error_response(exc)

    namespace = user_namespace(user_id)
    stored_path = f"{REPORTS_PREFIX}/{namespace}/{result.filename}"
    try:
        get_object_store().store_object(result.pdf_bytes, stored_path, "application/pdf")
    except Exception as exc:  # pragma: no cover - depends on storage backend
        logger.error("Could not store report %s: %s", stored_path, exc, exc_info=True)
        return jsonify({"ok": False, "error": f"Could not store report: {exc}", "code": "storage_failed"}), 500

    return (
        jsonify(
            {
                "ok": True,
                "filename": result.filename,
                "download": f"/api/reports/{result.filename}",
                "summary": result.summary,
                "skippedCount": result.skipped_count,
                "warnings": result.warnings,
                "pageCount": result.page_count,
            }
        ),
        201,
    )


@app.get("/api/reports/<path:report_path>")
def download_report(report_path: str):
    """Serve a stored report; only its owner may download it."""
    user_id = current_user_id()
    if not user_id:
        return _unauthenticated()
    namespace = user_namespace(user_id)
    parts = [part for part in report_path.split("/") if part]
    if len(parts) == 2:
        owner, filename = parts
        if owner != namespace:
            logger.warning("User %s tried to read report of namespace %s", user_id, owner)
            return _forbidden()
    elif len(parts) == 1:
        filename = parts[0]
    else:
        return jsonify({"ok": False, "error": "Not found", "code": "not_found"}), 404

    safe_name = secure_filename(filename)
    if not safe_name or safe_name != filename or not safe_name.lower().endswith(".pdf"):
        return jsonify({"ok": False, "error": "Invalid report name", "code": "invalid_name"}), 400
    try:
        stored = get_object_store().load_object(f"{REPORTS_PREFIX}/{namespace}/{safe_name}")
    except ObjectNotFoundError:
        return jsonify({"ok": False, "error": "Not found", "code": "not_found"}), 404
    return send_file(BytesIO(stored.data), mimetype="application/pdf", as_attachment=True, download_name=safe_name)


@app.get("/api/object-storage/image")
def object_storage_image():
    """Stream a stored receipt belonging to the current user."""
    user_id = current_user_id()
    if not user_id:
        return _unauthenticated()
    path = (request.args.get("path") or "").strip()
    if not path or is_remote(path) or ".." in path.split("/"):
        return jsonify({"ok": False, "error": "Invalid path", "code": "invalid_path"}), 400
    prefix = f"{RECEIPTS_PREFIX}/{user_namespace(user_id)}/"
    if not path.lstrip("/").startswith(prefix):
        return _forbidden()
    try:
        stored = get_object_store().load_object(path)
    except ObjectNotFoundError:
        return jsonify({"ok": False, "error": "Not found", "code": "not_found"}), 404
    return send_file(BytesIO(stored.data), mimetype=stored.content_type or "application/octet-stream")


@app.errorhandler(404)
def handle_404(error):  # type: ignore[override]
    """Return JSON for missing API routes while preserving Flask defaults elsewhere."""
    if request.path.startswith("/api/"):
        return jsonify({"error": "Not found", "path": request.path}), 404
    return error


@app.errorhandler(405)
def handle_405(error):  # type: ignore[override]
    """Return JSON for invalid method calls on API routes."""
    if request.path.startswith("/api/"):
        return jsonify({"error": "Method not allowed", "path": request.path}), 405
    return error


def main() -> None:
    """Run the Flask development server."""
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", "3000"))
    app.run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_DEBUG") == "1")


if __name__ == "__main__":
    main()
