import os
import re
import tempfile
import unittest
from pathlib import Path

from sitebackend.attachments import AttachmentStore, Upload
from sitebackend.errors import IOFailure

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class AttachmentStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = AttachmentStore(self.root)

    def tearDown(self):
        self._tmp.cleanup()

    def test_stage_writes_file_under_slot_dir(self):
        ref = self.store.stage("users/profile", "u1", "profile", Upload("me.PNG", PNG, "image/png"))
        self.assertRegex(ref, r"^/users/profile/u1-profile-\d+-[0-9a-f]{12}\.png$")
        path = self.root / ref.lstrip("/")
        self.assertEqual(path.read_bytes(), PNG)
        self.assertTrue(self.store.exists(ref))

    def test_stage_never_reuses_a_filename(self):
        upload = Upload("logo.png", PNG, "image/png")
        refs = {self.store.stage("logos", "default", "logo", upload) for _ in range(20)}
        self.assertEqual(len(refs), 20)

    def test_stage_drops_unsafe_extension(self):
        ref = self.store.stage("logos", "default", "logo", Upload("x.p/ng", PNG))
        self.assertTrue(re.search(r"-[0-9a-f]{12}$", ref))

    def test_stage_rejects_unsafe_key(self):
        with self.assertRaises(IOFailure):
            self.store.stage("logos", "../evil", "logo", Upload("a.png", PNG))
        with self.assertRaises(IOFailure):
            self.store.stage("../outside", "u1", "logo", Upload("a.png", PNG))

    def test_release_is_idempotent(self):
        ref = self.store.stage("logos", "default", "logo", Upload("a.png", PNG))
        self.assertTrue(self.store.release(ref))
        self.assertFalse(self.store.release(ref))
        self.assertFalse(self.store.release("/logos/never-existed.png"))
        self.assertFalse(self.store.release(None))
        self.assertFalse(self.store.exists(ref))

    def test_release_refuses_paths_outside_root(self):
        outside = tempfile.NamedTemporaryFile(delete=False)
        outside.close()
        self.addCleanup(os.unlink, outside.name)
        with self.assertRaises(IOFailure):
            self.store.release(f"/../{os.path.basename(outside.name)}")
        self.assertTrue(os.path.exists(outside.name))

    def test_release_removes_symlink_not_target(self):
        target = tempfile.NamedTemporaryFile(delete=False)
        target.close()
        self.addCleanup(os.unlink, target.name)
        (self.root / "logos").mkdir()
        link = self.root / "logos" / "link.png"
        link.symlink_to(target.name)
        self.assertTrue(self.store.release("/logos/link.png"))
        self.assertFalse(link.is_symlink())
        self.assertTrue(os.path.exists(target.name))

    def test_prefixed_references_match_served_urls(self):
        store = AttachmentStore(self.root, "/uploads/")
        ref = store.stage("logos", "default", "logo", Upload("a.png", PNG, "image/png"))
        self.assertTrue(ref.startswith("/uploads/logos/default-logo-"))
        self.assertEqual(store.resolve(ref), (self.root / ref[len("/uploads/"):]).resolve())
        self.assertTrue(store.exists(ref))
        self.assertTrue(store.release(ref))
        self.assertFalse(store.exists(ref))


class StagingBatchTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = AttachmentStore(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_leaving_without_commit_releases_staged_files(self):
        with self.assertRaises(RuntimeError):
            with self.store.staging() as batch:
                ref = batch.stage("logos", "default", "logo", Upload("a.png", PNG))
                self.assertTrue(self.store.exists(ref))
                raise RuntimeError("write failed")
        self.assertFalse(self.store.exists(ref))

    def test_commit_keeps_staged_and_releases_superseded(self):
        old = self.store.stage("logos", "default", "logo", Upload("a.png", PNG))
        with self.store.staging() as batch:
            new = batch.stage("logos", "default", "logo", Upload("b.png", PNG))
            batch.commit([old, None])
        self.assertTrue(self.store.exists(new))
        self.assertFalse(self.store.exists(old))


if __name__ == "__main__":
    unittest.main()
