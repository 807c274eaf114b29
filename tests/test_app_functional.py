import io
import re
import stat
import tempfile
import unittest
from pathlib import Path

from hermes import app as app_module
from hermes.auth import new_credential
from hermes.config import HermesConfig
from hermes.errors import InvalidInput, NotFound, StorageError, Unauthenticated
from hermes.storage import UploadStore


class HermesAppTestCase(unittest.TestCase):
    config_overrides: dict = {}

    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name)
        self.uploads_dir = self.root / "uploads"
        self.config = HermesConfig(
            domain_name="share.example.org",
            db_path=self.root / "data" / "hermes.db",
            uploaded_files_dir=self.uploads_dir,
            secret_key="test-secret",
            **self.config_overrides,
        )
        self.app = self._create_app()
        self.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
        self.services = self.app.extensions["hermes"]
        self.services.users.add_user("alice", *new_credential("correct horse"))
        self.client = self.app.test_client()

    def tearDown(self):
        self.services.db.close()
        self.storage_dir.cleanup()

    def _create_app(self):
        return app_module.create_app(self.config)

    def _login(self, username="alice", password="correct horse"):
        return self.client.post("/login", data={"username": username, "password": password})

    def _upload_file(self, data, filename, title=None):
        form = {"uploadedFile": (io.BytesIO(data), filename)}
        if title is not None:
            form["title"] = title
        return self.client.post("/files", data=form, content_type="multipart/form-data")

    def _stored_files(self):
        return sorted(path.name for path in self.uploads_dir.iterdir())


class LocalShareFlowTests(HermesAppTestCase):
    def test_index_lists_nothing_initially(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"Nothing has been uploaded yet.", response.data)
        self.assertEqual(response.headers["X-Frame-Options"], "DENY")

    def test_unauthenticated_text_upload_is_rejected(self):
        response = self.client.post("/text", data={"input": "hello"})
        self.assertEqual(response.status_code, Unauthenticated.status_code)
        self.assertIn(b"You must be logged in", response.data)
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(self.services.uploads.store.count(), 0)

    def test_unauthenticated_file_upload_is_rejected(self):
        response = self._upload_file(b"data", "a.bin")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self._stored_files(), [])

    def test_upload_forms_redirect_to_login(self):
        for path in ("/text", "/files"):
            with self.subTest(path=path):
                response = self.client.get(path)
                self.assertEqual(response.status_code, 303)
                self.assertTrue(response.headers["Location"].endswith("/login"))

    def test_text_upload_flow(self):
        self.assertEqual(self._login().status_code, 303)

        response = self.client.post("/text", data={"input": "hello world"})
        self.assertEqual(response.status_code, 200)

        record = self.services.uploads.store.latest()[0]
        self.assertRegex(record.file_path, r"^[A-Za-z]{8}\.txt$")
        self.assertEqual(record.title, record.file_path)
        self.assertEqual(record.uploader, "alice")
        path = self.uploads_dir / record.file_path
        self.assertEqual(path.read_bytes(), b"hello world")
        self.assertEqual(stat.S_IMODE(path.stat().st_mode), 0o600)

        link = f"http://share.example.org/t/{record.id}"
        self.assertIn(link.encode(), response.data)

        page = self.client.get(f"/t/{record.id}")
        self.assertEqual(page.status_code, 200)
        self.assertIn(b"hello world", page.data)

    def test_text_title_is_used_when_given(self):
        self._login()
        self.client.post("/text", data={"input": "body", "title": "Shopping list"})
        record = self.services.uploads.store.latest()[0]
        self.assertEqual(record.title, "Shopping list")

    def test_text_page_escapes_content(self):
        self._login()
        self.client.post("/text", data={"input": "<script>alert(1)</script>"})
        record = self.services.uploads.store.latest()[0]
        page = self.client.get(f"/t/{record.id}")
        self.assertIn(b"&lt;script&gt;", page.data)
        self.assertNotIn(b"<script>alert", page.data)

    def test_missing_or_empty_text_is_bad_request(self):
        self._login()
        for form in ({}, {"input": ""}):
            with self.subTest(form=form):
                response = self.client.post("/text", data=form)
                self.assertEqual(response.status_code, 400)
        self.assertEqual(self._stored_files(), [])

    def test_file_upload_flow(self):
        self._login()
        payload = b"\x89PNG\r\n\x1a\nnot really a png"
        response = self._upload_file(payload, "cat.png", title="A cat")
        self.assertEqual(response.status_code, 200)

        record = self.services.uploads.store.latest()[0]
        self.assertEqual(record.file_path, "cat.png")
        self.assertEqual(record.title, "A cat")
        self.assertIn(f"http://share.example.org/u/{record.id}".encode(), response.data)

        page = self.client.get(f"/u/{record.id}")
        self.assertEqual(page.status_code, 200)
        self.assertIn(b"image/png", page.data)
        self.assertIn(f"/dl/{record.id}".encode(), page.data)

        raw = self.client.get(f"/dl/{record.id}")
        self.assertEqual(raw.status_code, 200)
        self.assertEqual(raw.data, payload)
        self.assertEqual(raw.mimetype, "image/png")
        self.assertIn("Last-Modified", raw.headers)
        raw.close()

    def test_file_upload_discards_directory_prefix(self):
        self._login()
        response = self._upload_file(b"payload", "../../evil.png")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._stored_files(), ["evil.png"])
        self.assertFalse((self.root / "evil.png").exists())

    def test_dot_dot_filename_is_rejected(self):
        self._login()
        response = self._upload_file(b"payload", "..")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(self.services.uploads.store.count(), 0)

    def test_missing_file_field_is_bad_request(self):
        self._login()
        response = self.client.post(
            "/files", data={"title": "nothing"}, content_type="multipart/form-data"
        )
        self.assertEqual(response.status_code, 400)

    def test_duplicate_file_name_gets_suffix(self):
        self._login()
        self._upload_file(b"first", "notes.bin")
        self._upload_file(b"second", "notes.bin")

        newest, older = self.services.uploads.store.latest(2)
        self.assertEqual(older.file_path, "notes.bin")
        self.assertEqual(newest.file_path, "notes-1.bin")
        self.assertEqual((self.uploads_dir / "notes.bin").read_bytes(), b"first")
        self.assertEqual((self.uploads_dir / "notes-1.bin").read_bytes(), b"second")

    def test_index_lists_latest_uploads(self):
        self._login()
        self.client.post("/text", data={"input": "one", "title": "First paste"})
        response = self.client.get("/")
        self.assertIn(b"First paste", response.data)
        self.assertIn(b"1 uploads in total.", response.data)

    def test_unknown_ids_are_not_found(self):
        too_large = "99999999999999999999"
        for path in (
            "/t/999",
            "/u/999",
            "/dl/999",
            f"/t/{too_large}",
            f"/u/{too_large}",
            f"/dl/{too_large}",
            "/t/",
            "/nothing-here",
        ):
            with self.subTest(path=path):
                response = self.client.get(path)
                self.assertEqual(response.status_code, NotFound.status_code)
        self.assertIn(b"File not found", self.client.get("/t/999").data)

    def test_malformed_ids_are_bad_request(self):
        for path in ("/t/abc", "/u/-1", "/dl/1.5"):
            with self.subTest(path=path):
                self.assertEqual(self.client.get(path).status_code, InvalidInput.status_code)

    def test_deleted_backing_file_is_not_found(self):
        self._login()
        self._upload_file(b"soon gone", "gone.bin")
        self.client.post("/text", data={"input": "also gone"})
        binary, text = sorted(self.services.uploads.store.latest(), key=lambda r: r.id)
        for record in (binary, text):
            (self.uploads_dir / record.file_path).unlink()

        self.assertEqual(self.client.get(f"/dl/{binary.id}").status_code, 404)
        self.assertEqual(self.client.get(f"/u/{binary.id}").status_code, 404)
        self.assertEqual(self.client.get(f"/t/{text.id}").status_code, 404)

    def test_raw_download_honours_range_and_conditional_requests(self):
        self._login()
        self._upload_file(b"0123456789", "digits.bin")
        record = self.services.uploads.store.latest()[0]

        partial = self.client.get(f"/dl/{record.id}", headers={"Range": "bytes=0-4"})
        self.assertEqual(partial.status_code, 206)
        self.assertEqual(partial.data, b"01234")
        last_modified = partial.headers["Last-Modified"]
        partial.close()

        cached = self.client.get(
            f"/dl/{record.id}", headers={"If-Modified-Since": last_modified}
        )
        self.assertEqual(cached.status_code, 304)
        cached.close()

    def test_bad_login_shows_generic_message(self):
        wrong_password = self._login(password="nope")
        unknown_user = self._login(username="mallory")
        for response in (wrong_password, unknown_user):
            self.assertEqual(response.status_code, 200)
            self.assertIn(b"Invalid username or password.", response.data)
        self.assertEqual(self.client.post("/text", data={"input": "x"}).status_code, 401)

    def test_login_missing_fields_is_bad_request(self):
        response = self.client.post("/login", data={"username": "alice"})
        self.assertEqual(response.status_code, 400)

    def test_logged_in_user_is_redirected_from_login(self):
        self._login()
        response = self.client.get("/login")
        self.assertEqual(response.status_code, 303)

    def test_logout_requires_post(self):
        self.assertEqual(self.client.get("/logout").status_code, 405)

    def test_request_id_is_echoed(self):
        response = self.client.get("/", headers={"X-Request-ID": "abc123"})
        self.assertEqual(response.headers["X-Request-ID"], "abc123")

    def test_health_check(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "healthy")
        self.assertEqual(payload["checks"]["database"], "ok")
        self.assertEqual(payload["checks"]["uploads_writable"], "ok")

    def test_add_user_command(self):
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["add-user", "carol"], input="s3cret\ns3cret\n")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("User carol saved.", result.output)
        self.services.verifier.verify("carol", "s3cret")


class UploadSizeLimitTests(HermesAppTestCase):
    config_overrides = {"max_upload_bytes": 1024}

    def test_oversized_upload_is_rejected(self):
        self._login()
        response = self._upload_file(b"x" * 4096, "big.bin")
        self.assertEqual(response.status_code, 413)
        self.assertEqual(self._stored_files(), [])


class AnonymousUploadTests(HermesAppTestCase):
    config_overrides = {"allow_anonymous_uploads": True}

    def test_anonymous_text_upload(self):
        response = self.client.post("/text", data={"input": "anonymous paste"})
        self.assertEqual(response.status_code, 200)
        record = self.services.uploads.store.latest()[0]
        self.assertEqual(record.uploader, "")

    def test_anonymous_upload_form_is_served(self):
        self.assertEqual(self.client.get("/text").status_code, 200)


class FailingUploadStore(UploadStore):
    def insert(self, title, uploader, file_path):
        raise StorageError("insert uploaded file", OSError("disk on fire"))

    def latest(self, limit=10):
        return []

    def count(self):
        return 0


class StorageFailureTests(HermesAppTestCase):
    def _create_app(self):
        return app_module.create_app(self.config, upload_store=FailingUploadStore())

    def test_failed_insert_is_opaque_server_error(self):
        self._login()
        response = self.client.post("/text", data={"input": "lost"})
        self.assertEqual(response.status_code, StorageError.status_code)
        self.assertNotIn(b"disk on fire", response.data)
        # The bytes were written before the insert failed; no record points at them.
        self.assertEqual(len(self._stored_files()), 1)
        self.assertTrue(re.match(r"^[A-Za-z]{8}\.txt$", self._stored_files()[0]))


if __name__ == "__main__":
    unittest.main()
