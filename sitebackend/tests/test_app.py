import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from sitebackend.app import create_app
from sitebackend.config import Settings
from sitebackend.identity import InMemoryIdentityProvider
from sitebackend.records import InMemoryRecordStore

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class BackendApiTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.identity = InMemoryIdentityProvider()
        self.store = InMemoryRecordStore()
        settings = Settings(
            uploads_dir=self._tmp.name,
            use_in_memory_backends=True,
            redis_url=None,
            database_url=None,
        )
        self.client = TestClient(
            create_app(settings, store=self.store, identity=self.identity)
        )

    def tearDown(self):
        self._tmp.cleanup()

    def files(self):
        return sorted(
            "/uploads/" + p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*")
            if p.is_file()
        )


class UserApiTests(BackendApiTestCase):
    def create_ana(self):
        response = self.client.post(
            "/bb/v1/users", json={"uid": "u1", "name": "Ana", "email": "a@x.com"}
        )
        self.assertEqual(response.status_code, 201)
        return response.json()["data"]

    def test_create_and_fetch_user(self):
        self.create_ana()
        response = self.client.get("/bb/v1/users/u1")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        user = payload["data"]
        self.assertEqual(user["name"], "Ana")
        self.assertEqual(user["email"], "a@x.com")
        self.assertEqual(user["role"], "user")
        self.assertIsNone(user["profileImage"])
        self.assertIsNone(user["coverPhoto"])

    def test_create_rejects_bad_payloads(self):
        response = self.client.post("/bb/v1/users", json={"uid": "u1", "name": "Ana"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["kind"], "validation_error")

        response = self.client.post(
            "/bb/v1/users", json={"uid": "u1", "name": "Ana", "email": "nope"}
        )
        self.assertEqual(response.status_code, 400)

        self.create_ana()
        response = self.client.post(
            "/bb/v1/users", json={"uid": "u1", "name": "Ana", "email": "a@x.com"}
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["message"], "User already exists")

    def test_multipart_patch_uploads_profile_image(self):
        before = self.create_ana()
        response = self.client.patch(
            "/bb/v1/users/u1",
            files={"profileImage": ("me.png", PNG, "image/png")},
        )
        self.assertEqual(response.status_code, 200)
        user = response.json()["data"]
        self.assertEqual(user["name"], "Ana")
        self.assertEqual(user["email"], "a@x.com")
        self.assertGreater(user["updatedAt"], before["updatedAt"])
        self.assertEqual(self.files(), [user["profileImage"]])

        self.assertTrue(user["profileImage"].startswith("/uploads/users/profile/"))
        served = self.client.get(user["profileImage"])
        self.assertEqual(served.status_code, 200)
        self.assertEqual(served.content, PNG)

    def test_multipart_patch_with_text_fields(self):
        self.create_ana()
        response = self.client.put(
            "/bb/v1/users/u1",
            data={"name": "Ana B", "age": "31", "privacySettings": '{"age": "private"}'},
            files={"coverPhoto": ("c.jpg", PNG, "image/jpeg")},
        )
        self.assertEqual(response.status_code, 200)
        user = response.json()["data"]
        self.assertEqual(user["name"], "Ana B")
        self.assertEqual(user["age"], 31)
        self.assertEqual(user["privacySettings"]["age"], "private")
        self.assertIsNotNone(user["coverPhoto"])

    def test_json_patch_ignores_unknown_fields(self):
        self.create_ana()
        response = self.client.patch(
            "/bb/v1/users/u1", json={"name": "Ana B", "isAdmin": True}
        )
        self.assertEqual(response.status_code, 200)
        self.assertNotIn("isAdmin", response.json()["data"])

    def test_patch_invalid_email(self):
        self.create_ana()
        response = self.client.patch(
            "/bb/v1/users/u1",
            data={"email": "not-an-email"},
            files={"profileImage": ("me.png", PNG, "image/png")},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["field"], "email")
        self.assertEqual(self.files(), [])
        self.assertEqual(self.client.get("/bb/v1/users/u1").json()["data"]["email"], "a@x.com")

    def test_patch_missing_user_keeps_no_upload(self):
        response = self.client.patch(
            "/bb/v1/users/ghost",
            files={"profileImage": ("me.png", PNG, "image/png")},
        )
        self.assertEqual(response.status_code, 404)
        payload = response.json()
        self.assertFalse(payload["success"])
        self.assertEqual(payload["error"]["kind"], "not_found")
        self.assertEqual(self.files(), [])

    def test_non_image_upload_rejected(self):
        self.create_ana()
        response = self.client.patch(
            "/bb/v1/users/u1",
            files={"profileImage": ("cv.pdf", b"%PDF-1.4", "application/pdf")},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.files(), [])

    def test_last_login_and_privacy(self):
        self.create_ana()
        response = self.client.patch("/bb/v1/users/u1/last-login")
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.json()["data"]["lastLogin"])

        response = self.client.patch(
            "/bb/v1/users/u1/privacy", json={"privacySettings": {"email": "private"}}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["privacySettings"]["email"], "private")

        response = self.client.patch("/bb/v1/users/ghost/last-login")
        self.assertEqual(response.status_code, 404)

    def test_delete_user_removes_files_and_identity(self):
        self.create_ana()
        self.client.patch(
            "/bb/v1/users/u1",
            files={
                "profileImage": ("me.png", PNG, "image/png"),
                "coverPhoto": ("c.png", PNG, "image/png"),
            },
        )
        self.assertEqual(len(self.files()), 2)

        response = self.client.delete("/bb/v1/users/u1")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.files(), [])
        self.assertEqual(self.identity.deleted, ["u1"])
        self.assertEqual(self.client.get("/bb/v1/users/u1").status_code, 404)
        self.assertEqual(self.client.delete("/bb/v1/users/u1").status_code, 404)

    def test_delete_user_when_identity_provider_fails(self):
        self.create_ana()
        self.identity.fail_with = RuntimeError("firebase down")
        response = self.client.delete("/bb/v1/users/u1")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        self.assertIn("could not be removed", payload["message"])
        self.assertEqual(self.client.get("/bb/v1/users/u1").status_code, 404)

    def test_list_users(self):
        self.create_ana()
        response = self.client.get("/bb/v1/users")
        self.assertEqual(response.json()["count"], 1)


class LogoApiTests(BackendApiTestCase):
    def upload(self, name):
        return self.client.post(
            "/bb/v1/logos", files={"logo": (name, PNG, "image/png")}
        )

    def test_logo_lifecycle(self):
        empty = self.client.get("/bb/v1/logos").json()
        self.assertTrue(empty["success"])
        self.assertIsNone(empty["data"])
        self.assertEqual(empty["message"], "No logo found")

        first = self.upload("a.png")
        self.assertEqual(first.status_code, 201)
        second = self.upload("b.png")
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["message"], "Logo replaced successfully")
        url = second.json()["data"]["url"]
        self.assertEqual(self.files(), [url])

        stats = self.client.get("/bb/v1/logos/stats").json()["data"]
        self.assertEqual(stats, {"hasLogo": True, "totalLogos": 1})

        self.assertEqual(self.client.delete("/bb/v1/logos").status_code, 200)
        self.assertEqual(self.files(), [])
        self.assertEqual(self.client.delete("/bb/v1/logos").status_code, 404)

    def test_logo_requires_file(self):
        response = self.client.post("/bb/v1/logos", data={"name": "x"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "No logo file uploaded")


class SiteSettingsApiTests(BackendApiTestCase):
    def test_defaults_when_empty(self):
        data = self.client.get("/bb/v1/site-settings").json()["data"]
        self.assertEqual(data["site_name"], "Backbencher Coder")
        self.assertFalse(data["maintenance_mode"])
        status = self.client.get("/bb/v1/site-settings/maintenance-status").json()
        self.assertFalse(status["data"]["maintenance_mode"])

    def test_put_then_patch_status(self):
        response = self.client.put(
            "/bb/v1/site-settings",
            json={
                "site_name": "Coder",
                "site_description": "Learn",
                "site_url": "https://coder.example.com",
                "contact_email": "hi@coder.example.com",
            },
        )
        self.assertEqual(response.status_code, 200)
        response = self.client.patch(
            "/bb/v1/site-settings/status", json={"maintenance_mode": True}
        )
        data = response.json()["data"]
        self.assertTrue(data["maintenance_mode"])
        self.assertEqual(data["site_name"], "Coder")
        self.assertTrue(data["allow_registrations"])

        seo = self.client.get("/bb/v1/seo").json()["data"]
        self.assertEqual(seo["site_url"], "https://coder.example.com")
        self.assertNotIn("maintenance_mode", seo)

    def test_invalid_contact_email_leaves_settings_unchanged(self):
        self.client.patch("/bb/v1/site-settings", json={"site_name": "Coder"})
        response = self.client.patch(
            "/bb/v1/site-settings", json={"contact_email": "not-an-email"}
        )
        self.assertEqual(response.status_code, 400)
        data = self.client.get("/bb/v1/site-settings").json()["data"]
        self.assertEqual(data["contact_email"], "info@backbenchercoder.com")
        self.assertEqual(data["site_name"], "Coder")

    def test_reset(self):
        self.client.patch("/bb/v1/site-settings", json={"site_name": "Coder"})
        data = self.client.post("/bb/v1/site-settings/reset").json()["data"]
        self.assertEqual(data["site_name"], "Backbencher Coder")


class SubscriberApiTests(BackendApiTestCase):
    def test_subscribe_toggle_and_stats(self):
        response = self.client.post("/bb/v1/subscribers", json={"email": "a@x.com"})
        self.assertEqual(response.status_code, 201)
        subscriber_id = response.json()["data"]["id"]

        duplicate = self.client.post("/bb/v1/subscribers", json={"email": "a@x.com"})
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["message"], "Email already subscribed")

        toggled = self.client.patch(f"/bb/v1/subscribers/{subscriber_id}/toggle")
        self.assertEqual(toggled.json()["message"], "Subscription deactivated successfully")

        stats = self.client.get("/bb/v1/subscribers/stats/summary").json()["data"]
        self.assertEqual(stats, {"total": 1, "active": 0, "inactive": 1, "recent": 1})

        listing = self.client.get("/bb/v1/subscribers").json()
        self.assertEqual(listing["count"], 1)

        self.assertEqual(
            self.client.delete(f"/bb/v1/subscribers/{subscriber_id}").status_code, 200
        )
        self.assertEqual(
            self.client.get(f"/bb/v1/subscribers/{subscriber_id}").status_code, 404
        )

    def test_invalid_email(self):
        response = self.client.post("/bb/v1/subscribers", json={"email": "bad"})
        self.assertEqual(response.status_code, 400)


class SystemApiTests(BackendApiTestCase):
    def test_health_and_unknown_route(self):
        self.assertEqual(self.client.get("/health").status_code, 200)
        self.assertTrue(self.client.get("/").json()["success"])
        missing = self.client.get("/bb/v1/nothing-here")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["message"], "Route not found")


if __name__ == "__main__":
    unittest.main()
