import io
import logging
import os
import re
import shutil
import tarfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from django.core.management import call_command
from django.db import transaction

from .config import DirectorConfig
from .errors import (
    CloudError,
    ReleaseInUse,
    ReleaseNotFound,
    ReleaseVersionConflict,
    StemcellInUse,
    StemcellNotFound,
    ValidationError,
)
from .models import Release, ReleaseVersion, Stemcell
from .reconciler import canonical_hash

logger = logging.getLogger(__name__)

DEV_SUFFIX = re.compile(r"\+dev\.(\d+)$")


def _safe_name(name: str) -> str:
    value = re.sub(r"[^a-zA-Z0-9._-]+", "-", (name or "artifact").strip())
    return value or "artifact"


class ArtifactStore(Protocol):
    def fetch(self, ref: str) -> str:
        ...

    def store(self, path: str) -> str:
        ...

    def delete(self, ref: str) -> None:
        ...


class LocalArtifactStore:
    provider_type = "local"

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    def fetch(self, ref: str) -> str:
        path = self.base_path / ref
        if not path.exists():
            raise ValidationError(f"Artifact '{ref}' not found")
        return str(path)

    def store(self, path: str) -> str:
        source = Path(path)
        if not source.exists():
            raise ValidationError(f"Cannot read artifact '{path}'")
        ref = f"{uuid.uuid4().hex}-{_safe_name(source.name)}"
        self.base_path.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, self.base_path / ref)
        return ref

    def delete(self, ref: str) -> None:
        path = self.base_path / ref
        if path.exists():
            path.unlink()


class S3ArtifactStore:
    """Artifacts as S3 objects; ``fetch`` downloads into a local cache directory."""

    provider_type = "s3"

    def __init__(self, bucket: str, prefix: str = "", cache_dir: str = "/tmp/armada/artifact-cache",
                 region: Optional[str] = None):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.cache_dir = Path(cache_dir)
        region = region or os.environ.get("AWS_DEFAULT_REGION") or os.environ.get("AWS_REGION")
        self.client = boto3.client("s3", region_name=region) if region else boto3.client("s3")

    def _key(self, ref: str) -> str:
        return f"{self.prefix}/{ref}" if self.prefix else ref

    def fetch(self, ref: str) -> str:
        target = self.cache_dir / ref
        if target.exists():
            return str(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(self.bucket, self._key(ref), str(target))
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in {"404", "NoSuchKey"}:
                raise ValidationError(f"Artifact '{ref}' not found")
            raise CloudError(f"Fetching artifact '{ref}' failed: {exc}")
        except BotoCoreError as exc:
            raise CloudError(f"Fetching artifact '{ref}' failed: {exc}")
        return str(target)

    def store(self, path: str) -> str:
        ref = f"{uuid.uuid4().hex}-{_safe_name(Path(path).name)}"
        try:
            self.client.upload_file(path, self.bucket, self._key(ref))
        except (ClientError, BotoCoreError) as exc:
            raise CloudError(f"Storing artifact '{path}' failed: {exc}")
        return ref

    def delete(self, ref: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(ref))
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Deleting artifact %s failed: %s", ref, exc)


def build_artifact_store(config: DirectorConfig) -> ArtifactStore:
    """``s3://bucket/prefix`` selects S3; any other value is a local directory."""
    root = config.artifact_root or ""
    if root.startswith("s3://"):
        bucket, _, prefix = root[len("s3://"):].partition("/")
        return S3ArtifactStore(bucket, prefix)
    return LocalArtifactStore(root)


def load_release_manifest(raw) -> Dict[str, Any]:
    if isinstance(raw, dict):
        manifest = raw
    else:
        try:
            manifest = yaml.safe_load(raw or "") or {}
        except yaml.YAMLError as exc:
            raise ValidationError(f"Invalid release manifest: {exc}")
    if not isinstance(manifest, dict):
        raise ValidationError("Release manifest must be a mapping")
    for key in ("name", "version"):
        if not manifest.get(key):
            raise ValidationError(f"Release manifest is missing '{key}'")
    return manifest


def release_fingerprint(manifest: Dict[str, Any]) -> str:
    return canonical_hash({"jobs": manifest.get("jobs") or [], "packages": manifest.get("packages") or []})


def next_dev_version(release: Release, version: str) -> str:
    base = DEV_SUFFIX.sub("", str(version))
    latest = 0
    for existing in release.versions.filter(version__startswith=f"{base}+dev."):
        match = DEV_SUFFIX.search(existing.version)
        if match:
            latest = max(latest, int(match.group(1)))
    return f"{base}+dev.{latest + 1}"


class ReleaseManager:
    def __init__(self, config: DirectorConfig, store: Optional[ArtifactStore] = None,
                 log: Optional[logging.Logger] = None):
        self.config = config
        self.store = store or build_artifact_store(config)
        self.log = log or logger

    @transaction.atomic
    def create_release(self, manifest, artifact_ref: str = "", artifact_path: str = "",
                       rebase: bool = False) -> ReleaseVersion:
        manifest = load_release_manifest(manifest)
        fingerprint = release_fingerprint(manifest)
        release, _ = Release.objects.get_or_create(name=manifest["name"])
        version = str(manifest["version"])
        if rebase:
            same = release.versions.filter(fingerprint=fingerprint).order_by("-id").first()
            if same is not None:
                self.log.info("Rebase without job or package changes, keeping %s/%s", release.name, same.version)
                return same
            version = next_dev_version(release, version)
        else:
            existing = release.versions.filter(version=version).first()
            if existing is not None:
                if existing.fingerprint != fingerprint:
                    raise ReleaseVersionConflict(
                        f"Release '{release.name}' version '{version}' already exists with different contents"
                    )
                self.log.info("Release %s/%s already uploaded", release.name, version)
                return existing
        if artifact_path:
            artifact_ref = self.store.store(artifact_path)
        created = ReleaseVersion.objects.create(
            release=release,
            version=version,
            commit_hash=manifest.get("commit_hash") or "unknown",
            uncommitted_changes=bool(manifest.get("uncommitted_changes")),
            jobs_json=list(manifest.get("jobs") or []),
            packages_json=list(manifest.get("packages") or []),
            fingerprint=fingerprint,
            artifact_ref=artifact_ref or "",
        )
        self.log.info("Created release %s/%s", release.name, version)
        return created

    def versions_for_deletion(self, name: str, version: Optional[str] = None,
                              force: bool = False) -> List[ReleaseVersion]:
        release = Release.objects.filter(name=name).first()
        if release is None:
            raise ReleaseNotFound(f"Release '{name}' doesn't exist")
        versions = release.versions.all()
        if version:
            versions = versions.filter(version=str(version))
            if not versions.exists():
                raise ReleaseNotFound(f"Release version '{name}/{version}' doesn't exist")
        versions = list(versions)
        if not force:
            for item in versions:
                names = list(item.deployments.values_list("name", flat=True))
                if names:
                    raise ReleaseInUse(
                        f"Release version '{name}/{item.version}' is still in use by: {', '.join(sorted(names))}"
                    )
        return versions

    def delete_release(self, name: str, version: Optional[str] = None, force: bool = False) -> int:
        versions = self.versions_for_deletion(name, version, force)
        for item in versions:
            if item.artifact_ref:
                self.store.delete(item.artifact_ref)
            item.delete()
        release = Release.objects.filter(name=name).first()
        if release is not None and not release.versions.exists():
            release.delete()
        self.log.info("Deleted %s version(s) of release %s", len(versions), name)
        return len(versions)

    def create_stemcell(self, cloud, name: str, version: str, artifact_ref: str = "",
                        cloud_properties: Optional[Dict[str, Any]] = None, infrastructure: str = "") -> Stemcell:
        existing = Stemcell.objects.filter(name=name, version=str(version)).first()
        if existing is not None:
            self.log.info("Stemcell %s/%s already uploaded", name, version)
            return existing
        image_path = self.store.fetch(artifact_ref) if artifact_ref else ""
        cid = cloud.create_stemcell(image_path, dict(cloud_properties or {}))
        stemcell = Stemcell.objects.create(
            name=name, version=str(version), cid=cid, infrastructure=infrastructure or cloud.provider_type
        )
        self.log.info("Created stemcell %s/%s as %s", name, version, cid)
        return stemcell

    def stemcell_for_deletion(self, name: str, version: str, force: bool = False) -> Stemcell:
        stemcell = Stemcell.objects.filter(name=name, version=str(version)).first()
        if stemcell is None:
            raise StemcellNotFound(f"Stemcell '{name}/{version}' doesn't exist")
        names = list(stemcell.deployments.values_list("name", flat=True))
        if names and not force:
            raise StemcellInUse(f"Stemcell '{name}/{version}' is still in use by: {', '.join(sorted(names))}")
        return stemcell

    def delete_stemcell(self, cloud, name: str, version: str, force: bool = False) -> None:
        stemcell = self.stemcell_for_deletion(name, version, force)
        cloud.delete_stemcell(stemcell.cid)
        stemcell.delete()
        self.log.info("Deleted stemcell %s/%s", name, version)


def write_backup(path: str) -> str:
    """Dump the director tables into a gzipped tarball holding ``director.json``."""
    buffer = io.StringIO()
    call_command("dumpdata", "armada_director", stdout=buffer)
    payload = buffer.getvalue().encode("utf-8")
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as archive:
        info = tarfile.TarInfo("director.json")
        info.size = len(payload)
        info.mtime = int(datetime.now(timezone.utc).timestamp())
        archive.addfile(info, io.BytesIO(payload))
    return path
