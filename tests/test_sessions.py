import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from hermes import app as app_module
from hermes.auth import new_credential
from hermes.config import HermesConfig
from hermes.sessions import SessionStore
from hermes.storage import Database, init_db


class SessionStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.tmp.name) / "hermes.db")
        init_db(self.db)
        self.store = SessionStore(self.db)

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_save_then_load(self):
        token = self.store.new_token()
        self.store.save(token, {"user": "alice"}, time.time() + 60)
        self.assertEqual(self.store.load(token), {"user": "alice"})

    def test_tokens_are_unique(self):
        self.assertNotEqual(self.store.new_token(), self.store.new_token())

    def test_unknown_token(self):
        self.assertIsNone(self.store.load("nope"))

    def test_expired_session_is_dropped_on_load(self):
        self.store.save("old", {"user": "alice"}, time.time() - 1)
        self.assertIsNone(self.store.load("old"))
        self.assertEqual(self.store.purge_expired(), 0)

    def test_purge_expired(self):
        self.store.save("old", {}, time.time() - 10)
        self.store.save("older", {}, time.time() - 20)
        self.store.save("fresh", {"a": 1}, time.time() + 60)
        self.assertEqual(self.store.purge_expired(), 2)
        self.assertEqual(self.store.load("fresh"), {"a": 1})

    def test_delete(self):
        self.store.save("gone", {"a": 1}, time.time() + 60)
        self.store.delete("gone")
        self.assertIsNone(self.store.load("gone"))


class SessionCookieTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.config = HermesConfig(
            db_path=root / "data" / "hermes.db",
            uploaded_files_dir=root / "uploads",
            secret_key="test-secret",
        )
        self.app = app_module.create_app(self.config)
        self.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
        self.services = self.app.extensions["hermes"]
        self.services.users.add_user("alice", *new_credential("correct horse"))
        self.client = self.app.test_client()

    def tearDown(self):
        self.services.db.close()
        self.tmp.cleanup()

    def _session_rows(self):
        with self.services.db.transaction() as conn:
            return conn.execute("SELECT token, expires_at FROM sessions").fetchall()

    def _login(self):
        return self.client.post(
            "/login", data={"username": "alice", "password": "correct horse"}
        )

    def test_login_sets_long_lived_cookie(self):
        response = self._login()
        self.assertEqual(response.status_code, 303)

        cookie = self.client.get_cookie("id")
        self.assertIsNotNone(cookie)
        self.assertTrue(cookie.http_only)
        self.assertGreater(
            cookie.expires, datetime.now(timezone.utc) + timedelta(days=364)
        )
        self.assertEqual(len(self._session_rows()), 1)

    def test_cookie_carries_only_the_token(self):
        self._login()
        value = self.client.get_cookie("id").value
        self.assertNotIn("alice", value)
        token = self._session_rows()[0]["token"]
        self.assertTrue(value.startswith(token))

    def test_login_rotates_token(self):
        self.client.get("/login")
        before = self.client.get_cookie("id")
        self.assertIsNotNone(before)

        self._login()
        after = self.client.get_cookie("id")
        self.assertNotEqual(before.value, after.value)
        self.assertEqual(len(self._session_rows()), 1)

    def test_tampered_cookie_is_anonymous(self):
        self._login()
        value = self.client.get_cookie("id").value
        self.client.set_cookie("id", value + "x")
        response = self.client.post("/text", data={"input": "hi"})
        self.assertEqual(response.status_code, 401)

    def test_expired_session_is_anonymous(self):
        self._login()
        with self.services.db.transaction() as conn:
            conn.execute("UPDATE sessions SET expires_at = 0")
        response = self.client.post("/text", data={"input": "hi"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self._session_rows(), [])

    def test_logout_destroys_server_side_session(self):
        self._login()
        response = self.client.post("/logout")
        self.assertEqual(response.status_code, 303)
        self.assertEqual(self._session_rows(), [])
        self.assertIsNone(self.client.get_cookie("id"))
        self.assertEqual(self.client.post("/text", data={"input": "hi"}).status_code, 401)

    def test_anonymous_page_view_sets_no_cookie(self):
        self.client.get("/")
        self.assertIsNone(self.client.get_cookie("id"))


class SessionCleanupSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def _app(self, minutes):
        config = HermesConfig(
            db_path=self.root / "hermes.db",
            uploaded_files_dir=self.root / "uploads",
            secret_key="test-secret",
            session_cleanup_interval_minutes=minutes,
        )
        app = app_module.create_app(config)
        self.addCleanup(app.extensions["hermes"].db.close)
        return app

    def test_disabled_interval_schedules_nothing(self):
        app = self._app(0)
        self.assertIsNone(app_module.start_session_cleanup(app))

    def test_purge_job_is_scheduled(self):
        app = self._app(15)
        scheduler = app_module.start_session_cleanup(app)
        self.addCleanup(scheduler.shutdown, wait=False)
        job = scheduler.get_job("purge_expired_sessions")
        self.assertIsNotNone(job)
        self.assertIs(app.extensions["hermes"].scheduler, scheduler)

        app.config.update(TESTING=True)
        payload = app.test_client().get("/health").get_json()
        self.assertEqual(payload["checks"]["session_purge"], "scheduled")


if __name__ == "__main__":
    unittest.main()
