import os
import shutil
import tempfile
from unittest import mock

from django.test import TestCase

from armada_director.config import DirectorConfig
from armada_director.errors import ReleaseInUse, ReleaseNotFound, ReleaseVersionConflict, StemcellInUse, ValidationError
from armada_director.models import Release, ReleaseVersion, Stemcell
from armada_director.releases import (
    LocalArtifactStore,
    ReleaseManager,
    S3ArtifactStore,
    build_artifact_store,
    next_dev_version,
)

from .support import DirectorFixtureMixin

RELEASE_MANIFEST = {
    "name": "appcloud",
    "version": "1",
    "commit_hash": "abc123",
    "jobs": [{"name": "web", "version": "1", "fingerprint": "j1"}],
    "packages": [{"name": "nginx", "version": "1", "fingerprint": "p1"}],
}


def _manifest(**overrides):
    manifest = dict(RELEASE_MANIFEST)
    manifest.update(overrides)
    return manifest


class ReleaseUploadTests(DirectorFixtureMixin, TestCase):
    def test_upload_release(self):
        task = self.run_task(self.director.upload_release(RELEASE_MANIFEST))
        self.assertEqual(task.state, "done", task.result)
        self.assertEqual(task.result, "/releases/appcloud/1")
        version = ReleaseVersion.objects.get(release__name="appcloud")
        self.assertEqual(version.commit_hash, "abc123")
        self.assertEqual(version.job_names, ["web"])
        self.assertEqual(self.director.list_releases()[0]["release_versions"][0]["currently_deployed"], False)

    def test_same_release_twice_is_a_noop(self):
        self.run_task(self.director.upload_release(RELEASE_MANIFEST))
        task = self.run_task(self.director.upload_release(RELEASE_MANIFEST))
        self.assertEqual(task.state, "done", task.result)
        self.assertEqual(ReleaseVersion.objects.count(), 1)

    def test_changed_contents_for_existing_version_conflict(self):
        self.run_task(self.director.upload_release(RELEASE_MANIFEST))
        changed = _manifest(packages=[{"name": "nginx", "version": "2", "fingerprint": "p2"}])
        with self.assertRaises(ReleaseVersionConflict):
            self.director.upload_release(changed)

    def test_rebase_creates_dev_version(self):
        self.run_task(self.director.upload_release(RELEASE_MANIFEST))
        changed = _manifest(jobs=[{"name": "web", "version": "2", "fingerprint": "j2"}])
        task = self.run_task(self.director.upload_release(changed, rebase=True))
        self.assertEqual(task.result, "/releases/appcloud/1+dev.1")

        task = self.run_task(self.director.upload_release(changed, rebase=True))
        self.assertEqual(task.result, "/releases/appcloud/1+dev.1")
        self.assertEqual(sorted(ReleaseVersion.objects.values_list("version", flat=True)), ["1", "1+dev.1"])

    def test_next_dev_version_counts_up(self):
        release = Release.objects.create(name="appcloud")
        for version in ("2", "2+dev.1", "2+dev.3"):
            ReleaseVersion.objects.create(release=release, version=version, fingerprint=version)
        self.assertEqual(next_dev_version(release, "2"), "2+dev.4")
        self.assertEqual(next_dev_version(release, "2+dev.1"), "2+dev.4")
        self.assertEqual(next_dev_version(release, "3"), "3+dev.1")

    def test_invalid_release_manifest(self):
        with self.assertRaises(ValidationError):
            self.director.upload_release({"name": "appcloud"})
        with self.assertRaises(ValidationError):
            self.director.upload_release("name: [unclosed")


class ReleaseDeletionTests(DirectorFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.seed_artifacts()

    def test_release_in_use_needs_force(self):
        self.deploy()
        with self.assertRaises(ReleaseInUse):
            self.director.delete_release("appcloud")
        task = self.run_task(self.director.delete_release("appcloud", force=True))
        self.assertEqual(task.state, "done", task.result)
        self.assertFalse(Release.objects.exists())

    def test_delete_single_version(self):
        release = Release.objects.get(name="appcloud")
        ReleaseVersion.objects.create(release=release, version="2", fingerprint="f2")
        task = self.run_task(self.director.delete_release("appcloud", version="2"))
        self.assertEqual(task.state, "done", task.result)
        self.assertEqual(list(release.versions.values_list("version", flat=True)), ["1"])

    def test_unknown_release(self):
        with self.assertRaises(ReleaseNotFound):
            self.director.delete_release("nope")
        with self.assertRaises(ReleaseNotFound):
            self.director.delete_release("appcloud", version="9")


class StemcellTests(DirectorFixtureMixin, TestCase):
    def test_upload_stemcell_is_idempotent(self):
        task = self.run_task(self.director.upload_stemcell("centos", "7", cloud_properties={"disk": 2048}))
        self.assertEqual(task.state, "done", task.result)
        stemcell = Stemcell.objects.get(name="centos")
        self.assertEqual(stemcell.infrastructure, "dummy")
        self.assertIn(stemcell.cid, self.cloud.stemcells)

        self.run_task(self.director.upload_stemcell("centos", "7"))
        self.assertEqual(Stemcell.objects.count(), 1)
        self.assertEqual(len([call for call in self.cloud.calls if call[0] == "create_stemcell"]), 1)

    def test_upload_stemcell_validates_infrastructure(self):
        with self.assertRaises(ValidationError):
            self.director.upload_stemcell("centos", "7", infrastructure="mainframe")

    def test_stemcell_in_use_needs_force(self):
        self.seed_artifacts()
        self.deploy()
        with self.assertRaises(StemcellInUse):
            self.director.delete_stemcell("ubuntu", "1")
        task = self.run_task(self.director.delete_stemcell("ubuntu", "1", force=True))
        self.assertEqual(task.state, "done", task.result)
        self.assertFalse(Stemcell.objects.exists())
        self.assertIn(("delete_stemcell", "stemcell-ubuntu-1"), self.cloud.calls)


class ArtifactStoreTests(TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, True)
        self.store = LocalArtifactStore(os.path.join(self.root, "artifacts"))

    def test_store_fetch_delete(self):
        source = os.path.join(self.root, "release.tgz")
        with open(source, "wb") as handle:
            handle.write(b"tarball")
        ref = self.store.store(source)
        self.assertTrue(ref.endswith("-release.tgz"))
        with open(self.store.fetch(ref), "rb") as handle:
            self.assertEqual(handle.read(), b"tarball")
        self.store.delete(ref)
        with self.assertRaises(ValidationError):
            self.store.fetch(ref)

    def test_release_artifact_is_stored_on_upload(self):
        source = os.path.join(self.root, "release.tgz")
        with open(source, "wb") as handle:
            handle.write(b"tarball")
        manager = ReleaseManager(DirectorConfig.from_settings({"async_jobs_mode": "manual"}), self.store)
        version = manager.create_release(RELEASE_MANIFEST, artifact_path=source)
        self.assertTrue(os.path.exists(self.store.fetch(version.artifact_ref)))

    @mock.patch("armada_director.releases.boto3.client")
    def test_s3_root_selects_s3_store(self, client_factory):
        config = DirectorConfig.from_settings(
            {"async_jobs_mode": "manual", "artifact_root": "s3://armada-artifacts/releases"}
        )
        store = build_artifact_store(config)
        self.assertIsInstance(store, S3ArtifactStore)
        self.assertEqual((store.bucket, store.prefix), ("armada-artifacts", "releases"))
        store.delete("abc-release.tgz")
        client_factory.return_value.delete_object.assert_called_once_with(
            Bucket="armada-artifacts", Key="releases/abc-release.tgz"
        )
