"""Service facade over the director engine.

Every inbound operation goes through ``Director``: requests are validated
synchronously (raising ``ValidationError`` subclasses) and then handed to the
task manager, which returns the queued ``Task`` immediately.
"""
import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional

from .agents import AgentClientFactory
from .cloud import CloudProviderRegistry, infrastructure_for
from .config import DirectorConfig
from .errors import (
    BackupNotFound,
    DeploymentNotFound,
    InstanceInvalidIndex,
    InstanceNotFound,
    PropertyAlreadyExists,
    PropertyNotFound,
    ReleaseNotFound,
    ReleaseVersionConflict,
    ValidationError,
)
from .handlers.deploy import cloud_kind, resolve_release_versions, resolve_stemcells
from .models import (
    Deployment,
    DeploymentProblem,
    DeploymentProperty,
    Instance,
    Release,
    Snapshot,
    Stemcell,
    Task,
    Vm,
)
from .reconciler import JOB_STATES, load_manifest
from .releases import ReleaseManager, build_artifact_store, load_release_manifest, release_fingerprint
from .resurrector import Resurrector, problem_payload
from .snapshots import snapshots_for_deletion
from .tasks import TaskManager

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class Director:
    def __init__(self, config: DirectorConfig, clouds: Optional[CloudProviderRegistry] = None,
                 agents: Optional[AgentClientFactory] = None, tasks: Optional[TaskManager] = None,
                 artifacts=None):
        self.config = config
        self.clouds = clouds or CloudProviderRegistry(config.cloud, request_timeout=config.cpi_timeout)
        self.agents = agents or AgentClientFactory(self.clouds, timeout=config.agent_timeout)
        self.artifacts = artifacts or build_artifact_store(config)
        self.tasks = tasks or TaskManager(config, director=self)
        if self.tasks.director is None:
            self.tasks.director = self

    # Lookups

    def get_deployment(self, name: str) -> Deployment:
        deployment = Deployment.objects.filter(name=name).first()
        if deployment is None:
            raise DeploymentNotFound(f"Deployment '{name}' doesn't exist")
        return deployment

    def get_instance(self, deployment_name: str, job: str, index) -> Instance:
        deployment = self.get_deployment(deployment_name)
        try:
            index = int(index)
        except (TypeError, ValueError):
            raise InstanceInvalidIndex(f"Invalid instance index '{index}'")
        if index < 0:
            raise InstanceInvalidIndex(f"Invalid instance index '{index}'")
        instance = Instance.objects.filter(deployment=deployment, job=job, index=index).select_related("vm").first()
        if instance is None:
            raise InstanceNotFound(f"Instance '{job}/{index}' doesn't exist in deployment '{deployment_name}'")
        return instance

    # Deployments

    def deploy(self, manifest, user=None, recreate: bool = False) -> Task:
        parsed = load_manifest(manifest)
        name = str(parsed.get("name") or "").strip()
        if not name:
            raise ValidationError("Manifest has no deployment name")
        kind = cloud_kind(parsed, Deployment.objects.filter(name=name).first(), self.config.default_infrastructure)
        resolve_release_versions(parsed)
        resolve_stemcells(parsed, kind)
        return self.tasks.submit(
            "update_deployment",
            f"create deployment {name}",
            {"manifest": manifest, "recreate": bool(recreate)},
            user=user,
            deployment_name=name,
        )

    def change_job_state(self, deployment_name: str, state: str, job: Optional[str] = None, index=None,
                         user=None) -> Task:
        deployment = self.get_deployment(deployment_name)
        if state not in JOB_STATES:
            raise ValidationError(f"Unknown job state '{state}'")
        if index is not None and not job:
            raise ValidationError("An instance index needs a job name")
        if job:
            jobs = {item.get("name"): item for item in load_manifest(deployment.manifest).get("jobs") or []}
            if job not in jobs:
                raise ValidationError(f"Job '{job}' is not part of deployment '{deployment_name}'")
            if index is not None:
                try:
                    index = int(index)
                except (TypeError, ValueError):
                    raise InstanceInvalidIndex(f"Invalid instance index '{index}'")
                if not 0 <= index < int(jobs[job].get("instances") or 0):
                    raise InstanceNotFound(f"Instance '{job}/{index}' doesn't exist in deployment '{deployment_name}'")
        target = "/".join(str(part) for part in (job, index) if part is not None) or "all jobs"
        return self.tasks.submit(
            "change_job_state",
            f"{state} {target} of {deployment_name}",
            {"state": state, "job": job, "index": index},
            user=user,
            deployment_name=deployment_name,
        )

    def delete_deployment(self, name: str, force: bool = False, user=None) -> Task:
        self.get_deployment(name)
        return self.tasks.submit(
            "delete_deployment", f"delete deployment {name}", {"force": bool(force)}, user=user, deployment_name=name
        )

    def set_resurrection(self, deployment_name: str, job: str, index, paused: bool) -> Instance:
        instance = self.get_instance(deployment_name, job, index)
        instance.resurrection_paused = bool(paused)
        instance.save(update_fields=["resurrection_paused", "updated_at"])
        return instance

    def fetch_logs(self, deployment_name: str, job: str, index, log_type: str = "job",
                   filters: Optional[List[str]] = None, user=None) -> Task:
        instance = self.get_instance(deployment_name, job, index)
        if log_type not in {"job", "agent"}:
            raise ValidationError(f"Unknown log type '{log_type}'")
        return self.tasks.submit(
            "fetch_logs",
            f"fetch logs of {job}/{instance.index} in {deployment_name}",
            {"job": job, "index": instance.index, "type": log_type, "filters": list(filters or []) or None},
            user=user,
            deployment_name=deployment_name,
        )

    # Deployment properties

    def _get_property(self, deployment_name: str, name: str) -> DeploymentProperty:
        prop = DeploymentProperty.objects.filter(deployment=self.get_deployment(deployment_name), name=name).first()
        if prop is None:
            raise PropertyNotFound(f"Property '{name}' not found for deployment '{deployment_name}'")
        return prop

    def list_properties(self, deployment_name: str) -> List[Dict[str, str]]:
        deployment = self.get_deployment(deployment_name)
        return [{"name": prop.name, "value": prop.value} for prop in deployment.properties.order_by("name")]

    def get_property(self, deployment_name: str, name: str) -> Dict[str, str]:
        prop = self._get_property(deployment_name, name)
        return {"name": prop.name, "value": prop.value}

    def create_property(self, deployment_name: str, name: str, value: str) -> DeploymentProperty:
        deployment = self.get_deployment(deployment_name)
        if not name:
            raise ValidationError("Property needs a name")
        prop, created = DeploymentProperty.objects.get_or_create(
            deployment=deployment, name=name, defaults={"value": value}
        )
        if not created:
            raise PropertyAlreadyExists(f"Property '{name}' already exists for deployment '{deployment_name}'")
        return prop

    def update_property(self, deployment_name: str, name: str, value: str) -> DeploymentProperty:
        prop = self._get_property(deployment_name, name)
        prop.value = value
        prop.save(update_fields=["value"])
        return prop

    def delete_property(self, deployment_name: str, name: str) -> None:
        self._get_property(deployment_name, name).delete()

    # Snapshots

    def take_snapshot(self, deployment_name: str, job: Optional[str] = None, index=None, clean: bool = False,
                      user=None) -> Task:
        if job is not None and index is not None:
            self.get_instance(deployment_name, job, index)
        else:
            self.get_deployment(deployment_name)
        target = "/".join(str(part) for part in (job, index) if part is not None) or "all instances"
        return self.tasks.submit(
            "snapshot",
            f"snapshot {target} of {deployment_name}",
            {"job": job, "index": index, "clean": bool(clean)},
            user=user,
            deployment_name=deployment_name,
        )

    def delete_snapshots(self, deployment_name: str, snapshot_cids: Optional[Iterable[str]] = None,
                         user=None) -> Task:
        deployment = self.get_deployment(deployment_name)
        cids = list(snapshot_cids or [])
        snapshots_for_deletion(deployment, cids)
        return self.tasks.submit(
            "delete_snapshot",
            f"delete snapshot(s) of {deployment_name}",
            {"snapshot_cids": cids},
            user=user,
            deployment_name=deployment_name,
        )

    def list_snapshots(self, deployment_name: str, job: Optional[str] = None, index=None) -> List[Dict[str, Any]]:
        deployment = self.get_deployment(deployment_name)
        snapshots = Snapshot.objects.filter(persistent_disk__instance__deployment=deployment).select_related(
            "persistent_disk__instance"
        )
        if job:
            snapshots = snapshots.filter(persistent_disk__instance__job=job)
            if index is not None:
                snapshots = snapshots.filter(persistent_disk__instance__index=int(index))
        return [
            {
                "job": snapshot.persistent_disk.instance.job,
                "index": snapshot.persistent_disk.instance.index,
                "snapshot_cid": snapshot.snapshot_cid,
                "created_at": snapshot.created_at.isoformat(),
                "clean": snapshot.clean,
            }
            for snapshot in snapshots
        ]

    # Problems

    def _resurrector(self) -> Resurrector:
        return Resurrector(self.config, lambda kind: self.clouds.get_provider(kind), self.agents)

    def scan(self, deployment_name: str, jobs=None, user=None) -> Task:
        self.get_deployment(deployment_name)
        return self.tasks.submit(
            "scan", f"scan cloudcheck of {deployment_name}", {"jobs": jobs}, user=user, deployment_name=deployment_name
        )

    def scan_and_fix(self, deployment_name: str, jobs=None, user=None) -> Task:
        self.get_deployment(deployment_name)
        return self.tasks.submit(
            "scan_and_fix", f"scan and fix {deployment_name}", {"jobs": jobs}, user=user,
            deployment_name=deployment_name,
        )

    def resolve_problems(self, deployment_name: str, resolutions: Dict[Any, Optional[str]], user=None) -> Task:
        deployment = self.get_deployment(deployment_name)
        resolutions = dict(resolutions or {})
        if resolutions.get("solution") == "default":
            payload: Dict[str, Any] = {"solution": "default"}
        else:
            chosen = self._resurrector().validate_resolutions(deployment, resolutions)
            payload = {str(problem_id): resolution for problem_id, resolution in chosen.items()}
        return self.tasks.submit(
            "resolve_problems",
            f"apply resolutions to {deployment_name}",
            {"resolutions": payload},
            user=user,
            deployment_name=deployment_name,
        )

    def list_problems(self, deployment_name: str) -> List[Dict[str, Any]]:
        deployment = self.get_deployment(deployment_name)
        problems = DeploymentProblem.objects.filter(deployment=deployment, state="open").order_by("id")
        return [problem_payload(problem) for problem in problems]

    # Releases and stemcells

    def upload_release(self, manifest, artifact_ref: str = "", artifact_path: str = "", rebase: bool = False,
                       user=None) -> Task:
        parsed = load_release_manifest(manifest)
        if not rebase:
            existing = Release.objects.filter(name=parsed["name"]).first()
            current = existing.versions.filter(version=str(parsed["version"])).first() if existing else None
            if current is not None and current.fingerprint != release_fingerprint(parsed):
                raise ReleaseVersionConflict(
                    f"Release '{parsed['name']}' version '{parsed['version']}' already exists with different contents"
                )
        return self.tasks.submit(
            "create_release",
            f"create release {parsed['name']}/{parsed['version']}",
            {"manifest": parsed, "artifact_ref": artifact_ref, "artifact_path": artifact_path, "rebase": bool(rebase)},
            user=user,
        )

    def delete_release(self, name: str, version: Optional[str] = None, force: bool = False, user=None) -> Task:
        ReleaseManager(self.config, self.artifacts).versions_for_deletion(name, version, force)
        label = f"{name}/{version}" if version else name
        return self.tasks.submit(
            "delete_release", f"delete release {label}", {"name": name, "version": version, "force": bool(force)},
            user=user,
        )

    def upload_stemcell(self, name: str, version: str, artifact_ref: str = "",
                        cloud_properties: Optional[Dict[str, Any]] = None, infrastructure: str = "",
                        user=None) -> Task:
        if not name or not version:
            raise ValidationError("Stemcell needs a name and a version")
        infrastructure = infrastructure or self.config.default_infrastructure
        try:
            infrastructure_for(infrastructure)
        except ValueError as exc:
            raise ValidationError(str(exc))
        return self.tasks.submit(
            "create_stemcell",
            f"create stemcell {name}/{version}",
            {
                "name": name,
                "version": str(version),
                "artifact_ref": artifact_ref,
                "cloud_properties": cloud_properties or {},
                "infrastructure": infrastructure,
            },
            user=user,
        )

    def delete_stemcell(self, name: str, version: str, force: bool = False, user=None) -> Task:
        ReleaseManager(self.config, self.artifacts).stemcell_for_deletion(name, version, force)
        return self.tasks.submit(
            "delete_stemcell", f"delete stemcell {name}/{version}",
            {"name": name, "version": str(version), "force": bool(force)}, user=user,
        )

    def backup(self, user=None) -> Task:
        return self.tasks.submit("backup", "create backup", {"path": self.config.backup_path}, user=user)

    def backup_file(self) -> str:
        if not os.path.isfile(self.config.backup_path):
            raise BackupNotFound("No backup has been created")
        return self.config.backup_path

    def release_info(self, name: str) -> Dict[str, Any]:
        release = Release.objects.filter(name=name).first()
        if release is None:
            raise ReleaseNotFound(f"Release '{name}' doesn't exist")
        return {"name": release.name, "versions": [version.version for version in release.versions.all()]}

    # Tasks

    def cancel_task(self, task_id) -> Task:
        return self.tasks.cancel(task_id)

    def task_status(self, task_id) -> Dict[str, Any]:
        return self.tasks.status(task_id)

    def task_output(self, task_id, log_type: Optional[str] = None, start=None, end=None, suffix=None):
        return self.tasks.output(task_id, log_type, start=start, end=end, suffix=suffix)

    def list_tasks(self, states=None, limit=None, deployment=None) -> List[Task]:
        return self.tasks.list(states=states, limit=limit, deployment=deployment)

    # Listings

    def list_deployments(self) -> List[Dict[str, Any]]:
        rows = []
        for deployment in Deployment.objects.order_by("name").prefetch_related("release_versions__release",
                                                                               "stemcells"):
            rows.append(
                {
                    "name": deployment.name,
                    "releases": [
                        {"name": version.release.name, "version": version.version}
                        for version in deployment.release_versions.all()
                    ],
                    "stemcells": [
                        {"name": stemcell.name, "version": stemcell.version} for stemcell in deployment.stemcells.all()
                    ],
                }
            )
        return rows

    def list_releases(self) -> List[Dict[str, Any]]:
        rows = []
        for release in Release.objects.order_by("name").prefetch_related("versions__deployments"):
            rows.append(
                {
                    "name": release.name,
                    "release_versions": [
                        {
                            "version": version.version,
                            "commit_hash": version.commit_hash,
                            "uncommitted_changes": version.uncommitted_changes,
                            "currently_deployed": bool(version.deployments.all()),
                            "job_names": version.job_names,
                        }
                        for version in release.versions.all()
                    ],
                }
            )
        return rows

    def list_stemcells(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": stemcell.name,
                "version": stemcell.version,
                "cid": stemcell.cid,
                "deployments": [deployment.name for deployment in stemcell.deployments.all()],
            }
            for stemcell in Stemcell.objects.order_by("name", "version").prefetch_related("deployments")
        ]

    def list_vms(self, deployment_name: str) -> List[Dict[str, Any]]:
        deployment = self.get_deployment(deployment_name)
        rows = []
        for vm in Vm.objects.filter(deployment=deployment).select_related("instance").order_by("id"):
            instance = getattr(vm, "instance", None)
            rows.append(
                {
                    "agent_id": vm.agent_id,
                    "cid": vm.cid,
                    "job": instance.job if instance else None,
                    "index": instance.index if instance else None,
                }
            )
        return rows

    def instance_payload(self, deployment_name: str, job: str, index) -> Dict[str, Any]:
        instance = self.get_instance(deployment_name, job, index)
        return {
            "deployment": deployment_name,
            "job": instance.job,
            "index": instance.index,
            "state": instance.state,
            "resurrection_paused": instance.resurrection_paused,
            "disks": [disk.disk_cid for disk in instance.persistent_disks.filter(active=True)],
        }

    def info(self, user=None) -> Dict[str, Any]:
        return {
            "name": self.config.name,
            "uuid": self.config.uuid,
            "version": VERSION,
            "user": user.username if user is not None and getattr(user, "is_authenticated", False) else None,
            "cpi": self.config.default_infrastructure,
            "features": {
                "dns": {"status": self.config.dns_enabled, "extras": {"domain_name": self.config.dns_domain_name}},
                "snapshots": {"status": self.config.snapshots_enabled},
            },
        }


_director: Optional[Director] = None
_director_lock = threading.Lock()


def get_director() -> Director:
    global _director
    with _director_lock:
        if _director is None:
            _director = Director(DirectorConfig.from_settings())
        return _director


def reset_director(director: Optional[Director] = None) -> None:
    global _director
    with _director_lock:
        _director = director
