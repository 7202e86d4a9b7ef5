from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..cloud import infrastructure_for
from ..errors import (
    DeploymentFailed,
    InfrastructureMismatch,
    ReleaseNotFound,
    StemcellNotFound,
    ValidationError,
)
from ..executor import PlanExecutor
from ..fleet import FleetRecorder, observe
from ..models import Deployment, ReleaseVersion, Stemcell
from ..reconciler import DeploymentPlanner, load_manifest
from .base import TaskHandler


def manifest_text(raw) -> str:
    if isinstance(raw, dict):
        return yaml.safe_dump(raw, sort_keys=False)
    return raw or ""


def resolve_release_versions(manifest: Dict[str, Any]) -> List[ReleaseVersion]:
    versions = []
    for entry in manifest.get("releases") or []:
        name, version = entry.get("name"), str(entry.get("version"))
        found = ReleaseVersion.objects.filter(release__name=name, version=version).first()
        if found is None:
            raise ReleaseNotFound(f"Release version '{name}/{version}' doesn't exist")
        versions.append(found)
    return versions


def resolve_stemcells(manifest: Dict[str, Any], kind: str) -> Dict[Tuple[str, str], Stemcell]:
    stemcells: Dict[Tuple[str, str], Stemcell] = {}
    for pool in manifest.get("resource_pools") or []:
        spec = pool.get("stemcell") or {}
        key = (spec.get("name"), str(spec.get("version")))
        if key in stemcells:
            continue
        stemcell = Stemcell.objects.filter(name=key[0], version=key[1]).first()
        if stemcell is None:
            raise StemcellNotFound(f"Stemcell '{key[0]}/{key[1]}' doesn't exist")
        if stemcell.infrastructure and stemcell.infrastructure != kind:
            raise InfrastructureMismatch(
                f"Stemcell '{key[0]}/{key[1]}' was uploaded for {stemcell.infrastructure}, deployment uses {kind}"
            )
        stemcells[key] = stemcell
    return stemcells


def cloud_kind(manifest: Dict[str, Any], existing: Optional[Deployment], default: str) -> str:
    requested = str(manifest.get("cloud_provider") or "").strip()
    current = existing.cloud_provider if existing is not None else ""
    if current and requested and requested != current:
        raise InfrastructureMismatch(f"Deployment '{existing.name}' runs on {current}, manifest asks for {requested}")
    kind = requested or current or default
    try:
        infrastructure_for(kind)
    except ValueError as exc:
        raise ValidationError(str(exc))
    return kind


def deploy_manifest(handler: TaskHandler, raw_manifest, job_states: Optional[Dict[str, Any]] = None,
                    recreate: bool = False) -> str:
    """Reconcile one deployment towards ``raw_manifest`` under its lock.

    Planning runs before anything is persisted, so allocation and lookup
    errors leave the database untouched.
    """
    context = handler.context
    manifest = load_manifest(raw_manifest)
    name = str(manifest.get("name") or handler.deployment_name)
    if not name:
        raise ValidationError("Manifest has no deployment name")
    with context.lock(name):
        existing = Deployment.objects.filter(name=name).first()
        kind = cloud_kind(manifest, existing, handler.config.default_infrastructure)
        release_versions = resolve_release_versions(manifest)
        stemcells = resolve_stemcells(manifest, kind)
        observed = observe(name)
        plan = DeploymentPlanner(handler.config).plan(name, manifest, observed, job_states=job_states,
                                                      recreate=recreate)
        handler.log.info("Deployment %s: %s step(s) in %s batch(es)", name, len(plan.steps), len(plan.batches))
        for action in plan.actions:
            handler.log.debug("Planned %s", action.describe())
        context.token.checkpoint()

        deployment, _ = Deployment.objects.get_or_create(name=name, defaults={"cloud_provider": kind})
        if not deployment.cloud_provider:
            deployment.cloud_provider = kind
            deployment.save(update_fields=["cloud_provider", "updated_at"])
        executor = PlanExecutor(
            context.cloud(kind),
            handler.director.agents,
            FleetRecorder(deployment),
            observed,
            context.log,
            {key: stemcell.cid for key, stemcell in stemcells.items()},
            kind,
            agent_timeout=handler.config.agent_timeout,
        )
        report = executor.execute(plan, context.token)
        handler.log.info("Deployment %s finished:\n%s", name, report.summary())
        if not report.ok:
            raise DeploymentFailed(f"Deployment '{name}' failed:\n{report.summary()}", report=report)

        deployment.manifest = manifest_text(raw_manifest)
        deployment.save(update_fields=["manifest", "updated_at"])
        deployment.release_versions.set(release_versions)
        deployment.stemcells.set(stemcells.values())
    return f"/deployments/{name}"


class UpdateDeploymentHandler(TaskHandler):
    task_type = "update_deployment"
    locks_deployment = True

    def perform(self) -> str:
        return deploy_manifest(self, self.params.get("manifest"), recreate=bool(self.params.get("recreate")))
