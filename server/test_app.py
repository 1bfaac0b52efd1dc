import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent))

from PIL import Image

import app as backend
import app_lite
from object_storage import LocalObjectStore, user_namespace
from report_source import InMemoryReportSource
from test_aggregation import SCENARIO, expense

ANA = {"Cf-Access-Authenticated-User-Email": "Ana@Example.com"}
BRUNO = {"Cf-Access-Authenticated-User-Email": "bruno@example.com"}
PERIOD = {"start": "2024-01-01", "end": "2024-02-28"}


class BackendTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        patches = [
            mock.patch.object(backend, "get_report_source", lambda: InMemoryReportSource(expenses=SCENARIO)),
            mock.patch.object(backend, "get_object_store", lambda: LocalObjectStore(self.root)),
            mock.patch.object(backend, "CHART_DPI", 40),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = backend.app.test_client()

    def tearDown(self):
        self.tmp.cleanup()

    def create_report(self, headers=ANA):
        return self.client.post("/api/reports", json={"filter": PERIOD}, headers=headers)

    def test_health_and_version(self):
        self.assertEqual(self.client.get("/healthz").get_json(), {"status": "ok"})
        self.assertEqual(self.client.get("/version").get_json(), {"version": "2.0.0"})

    def test_whoami(self):
        self.assertEqual(self.client.get("/api/whoami", headers=ANA).get_json(),
                         {"authenticated": True, "email": "ana@example.com"})
        self.assertFalse(self.client.get("/api/whoami").get_json()["authenticated"])

    def test_access_header_wins_over_forwarded_user(self):
        headers = dict(ANA, **{"X-Forwarded-User": "bruno@example.com"})
        self.assertEqual(self.client.get("/api/whoami", headers=headers).get_json()["email"], "ana@example.com")
        forwarded = self.client.get("/api/whoami", headers={"X-Forwarded-User": "bruno@example.com"})
        self.assertEqual(forwarded.get_json()["email"], "bruno@example.com")

    def test_anonymous_requests_are_rejected(self):
        self.assertEqual(self.client.post("/api/reports", json={"filter": PERIOD}).status_code, 401)
        self.assertEqual(self.client.get("/api/reports/x.pdf").status_code, 401)
        self.assertEqual(self.client.get("/api/reports/preview").status_code, 401)

    def test_create_and_download_report(self):
        response = self.create_report()
        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["summary"]["totalAmount"], "350.00")
        self.assertEqual(body["skippedCount"], 0)
        self.assertGreater(body["pageCount"], 0)
        # No receipt files exist in the temporary store.
        self.assertIn("receipt e1-r0: missing", body["warnings"])

        namespace = backend.user_namespace("ana@example.com")
        self.assertTrue((self.root / "reports" / namespace / body["filename"]).exists())

        download = self.client.get(body["download"], headers=ANA)
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.mimetype, "application/pdf")
        self.assertTrue(download.data.startswith(b"%PDF"))

        explicit = self.client.get(f"/api/reports/{namespace}/{body['filename']}", headers=ANA)
        self.assertEqual(explicit.status_code, 200)

    def test_reports_are_private_to_their_owner(self):
        body = self.create_report().get_json()
        namespace = backend.user_namespace("ana@example.com")
        foreign = self.client.get(f"/api/reports/{namespace}/{body['filename']}", headers=BRUNO)
        self.assertEqual(foreign.status_code, 403)
        by_name = self.client.get(body["download"], headers=BRUNO)
        self.assertEqual(by_name.status_code, 404)

    def test_invalid_report_name(self):
        response = self.client.get("/api/reports/notes.txt", headers=ANA)
        self.assertEqual(response.status_code, 400)

    def test_invalid_filter(self):
        response = self.client.post("/api/reports", json={"start": "2024-03-01", "end": "2024-01-01"}, headers=ANA)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["code"], "invalid_filter")

    def test_non_object_body_is_invalid(self):
        response = self.client.post("/api/reports", json=["2024-01-01"], headers=ANA)
        self.assertEqual(response.status_code, 400)

    def test_data_source_failure_maps_to_bad_gateway(self):
        class Down(InMemoryReportSource):
            def fetch_filtered_expenses(self, user_id, report_filter):
                raise RuntimeError("airtable down")

        with mock.patch.object(backend, "get_report_source", lambda: Down()):
            response = self.create_report()
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.get_json()["code"], "data_source_unavailable")

    def test_preview(self):
        response = self.client.get("/api/reports/preview", query_string=PERIOD, headers=ANA)
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["totalAmount"], "350.00")
        self.assertEqual(body["compliance"], "INSUFICIENTE")

    def test_receipt_images_are_scoped_to_the_user(self):
        namespace = backend.user_namespace("ana@example.com")
        folder = self.root / "receipts" / namespace
        folder.mkdir(parents=True)
        (folder / "r.png").write_bytes(b"\x89PNG\r\n\x1a\nfake")

        own = self.client.get("/api/object-storage/image", query_string={"path": f"receipts/{namespace}/r.png"},
                              headers=ANA)
        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.mimetype, "image/png")

        foreign = self.client.get("/api/object-storage/image", query_string={"path": f"receipts/{namespace}/r.png"},
                                  headers=BRUNO)
        self.assertEqual(foreign.status_code, 403)

        traversal = self.client.get("/api/object-storage/image",
                                    query_string={"path": f"receipts/{namespace}/../x.png"}, headers=ANA)
        self.assertEqual(traversal.status_code, 400)

        missing = self.client.get("/api/object-storage/image",
                                  query_string={"path": f"receipts/{namespace}/none.png"}, headers=ANA)
        self.assertEqual(missing.status_code, 404)

    def test_json_errors_for_api_routes(self):
        not_found = self.client.get("/api/nope")
        self.assertEqual(not_found.status_code, 404)
        self.assertEqual(not_found.get_json()["path"], "/api/nope")
        not_allowed = self.client.get("/api/reports")
        self.assertEqual(not_allowed.status_code, 405)
        self.assertEqual(not_allowed.get_json()["error"], "Method not allowed")


class LiteTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        for patcher in (mock.patch.object(app_lite, "UPLOAD_DIR", Path(self.tmp.name)),
                        mock.patch.object(app_lite, "CHART_DPI", 40)):
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = app_lite.app.test_client()

    def tearDown(self):
        self.tmp.cleanup()

    def test_health_and_version(self):
        self.assertEqual(self.client.get("/healthz").get_json(), {"status": "ok"})
        self.assertEqual(self.client.get("/version").get_json(), {"version": "2.0.0-lite"})

    def test_posted_records_render_inline_pdf(self):
        response = self.client.post("/api/reports.pdf", json={"filter": PERIOD, "expenses": SCENARIO})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "application/pdf")
        self.assertTrue(response.data.startswith(b"%PDF"))
        self.assertEqual(response.headers["X-Report-Total"], "350.00")
        self.assertEqual(response.headers["X-Report-Skipped"], "0")

    def test_bad_bodies_are_rejected(self):
        self.assertEqual(self.client.post("/api/reports.pdf", json=[1, 2]).status_code, 400)
        response = self.client.post("/api/reports.pdf", json={"filter": PERIOD, "expenses": "nope"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["code"], "invalid_payload")
        response = self.client.post("/api/reports.pdf", json={"filter": {"start": "2024-02-01", "end": "2024-01-01"}})
        self.assertEqual(response.status_code, 400)

    def post_receipt(self, path):
        record = expense("e1", "2024-01-05", "100.00", "educação", "pago", receipts=1)
        record["receipts"][0]["filePath"] = path
        return self.client.post("/api/reports.pdf", json={"filter": PERIOD, "expenses": [record]}, headers=ANA)

    def receipt_warnings(self, path):
        response = self.post_receipt(path)
        self.assertEqual(response.status_code, 200)
        warnings = int(response.headers["X-Report-Warnings"])
        # Chart warnings depend on the plotting backend; subtract those of the same report without a receipt.
        baseline = self.client.post("/api/reports.pdf", json={"filter": PERIOD, "expenses": [
            expense("e1", "2024-01-05", "100.00", "educação", "pago")]}, headers=ANA)
        return warnings - int(baseline.headers["X-Report-Warnings"])

    def test_receipts_are_read_from_the_callers_folder_only(self):
        own = f"receipts/{user_namespace('ana@example.com')}/r.jpg"
        foreign = f"receipts/{user_namespace('bruno@example.com')}/r.jpg"
        for path in (own, foreign):
            target = Path(self.tmp.name) / path
            target.parent.mkdir(parents=True)
            Image.new("RGB", (60, 80), (120, 120, 120)).save(target, format="JPEG")

        self.assertEqual(self.receipt_warnings(own), 0)
        self.assertEqual(self.receipt_warnings(foreign), 1)

    def test_remote_receipt_urls_are_not_fetched(self):
        with mock.patch("object_storage.fetch_url") as fetch:
            self.assertEqual(self.receipt_warnings("http://169.254.169.254/latest/meta-data/"), 1)
        fetch.assert_not_called()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
