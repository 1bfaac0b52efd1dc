import logging
import os
import sys
from io import BytesIO
from pathlib import Path

from flask import Flask, request, jsonify, send_file
from flask_cors import CORS
from dotenv import load_dotenv

load_dotenv()

# Paths
ROOT_DIR = Path(__file__).resolve().parent.parent
UPLOAD_DIR = ROOT_DIR / (os.getenv("UPLOAD_DIR") or "uploads")
SERVER_DIR = Path(__file__).resolve().parent
if str(SERVER_DIR) not in sys.path:
    sys.path.insert(0, str(SERVER_DIR))

from errors import ReportGenerationError  # noqa: E402
from object_storage import LocalObjectStore, ScopedObjectStore, receipts_prefix  # noqa: E402
from report_source import InMemoryReportSource  # noqa: E402
from reporting import ReportOptions, generate_report  # noqa: E402

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024  # 25 MB, records are posted inline

# CORS
allowed_origin = os.getenv("ALLOWED_ORIGIN", "*")
if allowed_origin == "*":
    CORS(app)
else:
    CORS(app, resources={r"/*": {"origins": [allowed_origin]}})

# Local storage only
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

REPORT_TIMEOUT_SECONDS = float(os.getenv("REPORT_TIMEOUT_SECONDS", "120"))
REPORT_MAX_WORKERS = int(os.getenv("REPORT_MAX_WORKERS", "4"))
RECEIPT_MAX_DIMENSION = int(os.getenv("RECEIPT_MAX_DIMENSION", "1600"))
RECEIPT_JPEG_QUALITY = int(os.getenv("RECEIPT_JPEG_QUALITY", "85"))
CHART_DPI = int(os.getenv("CHART_DPI", "200"))
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()

ERROR_STATUS = {
    "invalid_filter": 400,
    "invalid_payload": 400,
    "cancelled": 504,
    "timeout": 504,
    "data_source_unavailable": 502,
}


def _options():
    return ReportOptions(
        timeout_seconds=REPORT_TIMEOUT_SECONDS,
        max_workers=REPORT_MAX_WORKERS,
        receipt_max_dimension=RECEIPT_MAX_DIMENSION,
        jpeg_quality=RECEIPT_JPEG_QUALITY,
        chart_dpi=CHART_DPI,
    )


def _local_user():
    # Lite mode runs on the user's machine; the proxy header is honoured when present.
    return (request.headers.get("Cf-Access-Authenticated-User-Email") or "local").strip().lower()


@app.get("/healthz")
def healthz():
    return {"status": "ok"}

@app.get("/version")
def version():
    return {"version": "2.0.0-lite"}


@app.post("/api/reports.pdf")
def report_pdf():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"ok": False, "error": "Request body must be a JSON object", "code": "invalid_payload"}), 400
    try:
        source = InMemoryReportSource.from_payload(body)
        user_id = _local_user()
        # Receipt paths come from the request body; only the caller's own local receipts are readable.
        store = ScopedObjectStore(LocalObjectStore(UPLOAD_DIR), receipts_prefix(user_id))
        result = generate_report(
            user_id,
            body.get("filter") or {},
            source,
            store,
            options=_options(),
        )
    except ReportGenerationError as exc:
        status = ERROR_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.error("Lite report failed (%s): %s", exc.code, exc, exc_info=exc)
        return jsonify({"ok": False, "error": str(exc), "code": exc.code}), status

    response = send_file(
        BytesIO(result.pdf_bytes),
        mimetype="application/pdf",
        as_attachment=False,
        download_name=result.filename,
    )
    response.headers["X-Report-Skipped"] = str(result.skipped_count)
    response.headers["X-Report-Warnings"] = str(len(result.warnings))
    response.headers["X-Report-Total"] = result.summary["totalAmount"]
    return response


def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", "3000"))
    app.run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_DEBUG") == "1")


if __name__ == "__main__":
    main()
