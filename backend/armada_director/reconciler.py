"""Deployment planning: desired manifest + observed fleet -> ordered action plan.

The planner is pure with respect to the cloud: it reads an ``ObservedState``
snapshot, allocates pool slots and addresses, and emits per-instance steps
grouped into batches. Running the same manifest against a converged fleet
yields an empty plan.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .allocator import CurrentBinding, DesiredInstance, InstanceBinding, ResourceAllocator
from .config import DirectorConfig
from .errors import ValidationError
from .fleet import ObservedInstance, ObservedState

logger = logging.getLogger(__name__)

ACTION_KINDS = (
    "create_vm",
    "delete_vm",
    "attach_disk",
    "detach_disk",
    "migrate_disk",
    "update_job_state",
    "update_dns_record",
)
JOB_STATES = ("started", "stopped", "detached", "restart", "recreate")


@dataclass
class Action:
    kind: str
    job: str
    index: int
    params: Dict[str, Any] = field(default_factory=dict)
    batch: int = 0

    def describe(self) -> str:
        return f"{self.kind} {self.job}/{self.index}"


@dataclass
class Step:
    job: str
    index: int
    actions: List[Action] = field(default_factory=list)
    deletion: bool = False
    canary: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.job, self.index)


@dataclass
class DeploymentPlan:
    deployment: str
    batches: List[List[Step]] = field(default_factory=list)
    manifest: Dict[str, Any] = field(default_factory=dict)
    update_watch_time: int = 30000

    @property
    def steps(self) -> List[Step]:
        return [step for batch in self.batches for step in batch]

    @property
    def actions(self) -> List[Action]:
        return [action for step in self.steps for action in step.actions]

    def is_empty(self) -> bool:
        return not self.actions


def canonical_hash(value: Any) -> str:
    payload = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def load_manifest(manifest) -> Dict[str, Any]:
    if isinstance(manifest, dict):
        return manifest
    try:
        loaded = yaml.safe_load(manifest or "") or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Manifest is not valid YAML: {exc}")
    if not isinstance(loaded, dict):
        raise ValidationError("Manifest must be a mapping")
    return loaded


def _watch_time(value, default: int) -> int:
    if value is None:
        return default
    text = str(value)
    if "-" in text:
        text = text.split("-", 1)[1]
    try:
        return int(text.strip())
    except ValueError:
        return default


def job_templates(manifest: Dict[str, Any], job: Dict[str, Any]) -> List[Dict[str, str]]:
    releases = manifest.get("releases") or []
    default_release = releases[0]["name"] if len(releases) == 1 else None
    templates = job.get("templates")
    if templates is None and job.get("template"):
        templates = job["template"] if isinstance(job["template"], list) else [job["template"]]
    result = []
    for template in templates or []:
        if isinstance(template, str):
            result.append({"name": template, "release": job.get("release") or default_release})
        else:
            result.append({"name": template["name"], "release": template.get("release") or default_release})
    return result


def desired_disk(manifest: Dict[str, Any], job: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    pool_name = job.get("persistent_disk_pool")
    if pool_name:
        for pool in manifest.get("disk_pools") or []:
            if pool.get("name") == pool_name:
                return int(pool.get("disk_size") or 0), dict(pool.get("cloud_properties") or {})
        raise ValidationError(f"Job '{job['name']}' references unknown disk pool '{pool_name}'")
    return int(job.get("persistent_disk") or 0), {}


def dns_records(deployment: str, job: str, index: int, binding: InstanceBinding, domain: str) -> List[str]:
    records = []
    for network, settings in sorted(binding.networks.items()):
        if settings.get("ip"):
            name = f"{index}.{job}.{network}.{deployment}.{domain}".replace("_", "-")
            records.append(f"{name} {settings['ip']}")
    return records


class DeploymentPlanner:
    def __init__(self, config: DirectorConfig):
        self.config = config

    def plan(self, deployment_name: str, desired_manifest, observed_state: ObservedState,
             job_states: Optional[Dict[str, Any]] = None, recreate: bool = False) -> DeploymentPlan:
        manifest = load_manifest(desired_manifest)
        job_states = job_states or {}
        update = manifest.get("update") or {}
        plan = DeploymentPlan(
            deployment=deployment_name,
            manifest=manifest,
            update_watch_time=_watch_time(update.get("update_watch_time"), self.config.update_watch_time),
        )
        allocator = ResourceAllocator(manifest, observed_state.reservations)
        jobs = manifest.get("jobs") or []
        self._check_jobs(jobs)

        desired_keys = set()
        ordered = []
        for job in jobs:
            for index in range(int(job.get("instances") or 0)):
                desired_keys.add((job["name"], index))
                ordered.append((job, index))

        # Existing instances are allocated first so they keep their pool slot and addresses.
        bindings: Dict[Tuple[str, int], InstanceBinding] = {}
        for keep_existing in (True, False):
            for job, index in ordered:
                observed = observed_state.get(job["name"], index)
                if (observed is not None) != keep_existing:
                    continue
                bindings[(job["name"], index)] = allocator.allocate(
                    DesiredInstance(
                        deployment=deployment_name,
                        job=job["name"],
                        index=index,
                        resource_pool=job.get("resource_pool", ""),
                        networks=list(job.get("networks") or []),
                        cloud_properties=job.get("cloud_properties"),
                    ),
                    CurrentBinding(observed.resource_pool, observed.ip_addresses) if observed else None,
                )

        for job in jobs:
            steps = []
            for index in range(int(job.get("instances") or 0)):
                observed = observed_state.get(job["name"], index)
                state = self._desired_state(job_states, job["name"], index, observed)
                step = self._plan_instance(
                    deployment_name, manifest, job, index, bindings[(job["name"], index)], observed, state, recreate
                )
                if step.actions:
                    steps.append(step)
            update_spec = dict(update)
            update_spec.update(job.get("update") or {})
            canaries = int(update_spec.get("canaries", self.config.canaries) or 0)
            max_in_flight = max(1, int(update_spec.get("max_in_flight", self.config.max_in_flight) or 1))
            self._batch(plan, steps, canaries, max_in_flight)

        deletions = [
            self._plan_deletion(observed)
            for key, observed in sorted(observed_state.instances.items())
            if key not in desired_keys
        ]
        max_in_flight = max(1, int(update.get("max_in_flight", self.config.max_in_flight) or 1))
        self._batch(plan, deletions, 0, max_in_flight)
        logger.info(
            "Planned %s actions in %s batches for deployment %s",
            len(plan.actions),
            len(plan.batches),
            deployment_name,
        )
        return plan

    def _check_jobs(self, jobs: List[Dict[str, Any]]) -> None:
        seen = set()
        for job in jobs:
            name = job.get("name")
            if not name:
                raise ValidationError("Every job needs a name")
            if name in seen:
                raise ValidationError(f"Duplicate job name '{name}'")
            seen.add(name)

    def _desired_state(self, job_states: Dict[str, Any], job: str, index: int,
                       observed: Optional[ObservedInstance]) -> str:
        entry = job_states.get(job) or {}
        instances = entry.get("instances") or {}
        state = instances.get(index, instances.get(str(index))) or entry.get("state")
        if state is None:
            return observed.state if observed is not None else "started"
        if state not in JOB_STATES:
            raise ValidationError(f"Unknown job state '{state}'")
        return state

    def _batch(self, plan: DeploymentPlan, steps: List[Step], canaries: int, max_in_flight: int) -> None:
        remaining = list(steps)
        canary_steps, remaining = remaining[:canaries], remaining[canaries:]
        # Canaries go first but never more than max_in_flight at a time.
        while canary_steps:
            batch, canary_steps = canary_steps[:max_in_flight], canary_steps[max_in_flight:]
            for step in batch:
                step.canary = True
            self._append_batch(plan, batch)
        while remaining:
            batch, remaining = remaining[:max_in_flight], remaining[max_in_flight:]
            self._append_batch(plan, batch)

    def _append_batch(self, plan: DeploymentPlan, batch: List[Step]) -> None:
        number = len(plan.batches)
        for step in batch:
            for action in step.actions:
                action.batch = number
        plan.batches.append(batch)

    def _plan_instance(self, deployment_name: str, manifest: Dict[str, Any], job: Dict[str, Any], index: int,
                       binding: InstanceBinding, observed: Optional[ObservedInstance], state: str,
                       recreate: bool) -> Step:
        name = job["name"]
        step = Step(job=name, index=index)

        def add(kind: str, **params) -> None:
            step.actions.append(Action(kind=kind, job=name, index=index, params=params))

        templates = job_templates(manifest, job)
        release_names = {template["release"] for template in templates}
        releases = sorted(
            ({"name": r["name"], "version": str(r.get("version"))} for r in manifest.get("releases") or []
             if r["name"] in release_names),
            key=lambda r: r["name"],
        )
        properties = dict(manifest.get("properties") or {})
        properties.update(job.get("properties") or {})
        vm_hash = canonical_hash(
            {
                "resource_pool": binding.resource_pool,
                "stemcell": binding.stemcell,
                "cloud_properties": binding.cloud_properties,
                "networks": binding.networks,
            }
        )
        job_hash = canonical_hash({"job": name, "templates": templates, "releases": releases, "properties": properties})
        disk_size, disk_props = desired_disk(manifest, job)
        apply_spec = {
            "deployment": deployment_name,
            "job": {"name": name, "templates": templates},
            "index": index,
            "networks": binding.networks,
            "resource_pool": binding.resource_pool,
            "properties": properties,
            "persistent_disk": disk_size,
            "releases": releases,
            "configuration_hash": job_hash,
        }
        running_state = "stopped" if state == "stopped" else "started"
        vm_params = {
            "stemcell": binding.stemcell,
            "cloud_properties": binding.cloud_properties,
            "networks": binding.networks,
            "resource_pool": binding.resource_pool,
            "vm_config_hash": vm_hash,
            "env": next(
                (dict(pool.get("env") or {}) for pool in manifest.get("resource_pools") or []
                 if pool.get("name") == binding.resource_pool),
                {},
            ),
        }
        records = (
            dns_records(deployment_name, name, index, binding, self.config.dns_domain_name)
            if self.config.dns_enabled
            else []
        )

        def add_job_state(target: str, wait: bool = True, restart: bool = False) -> None:
            add("update_job_state", state=target, job_config_hash=job_hash, spec=apply_spec,
                wait_healthy=wait and target == "started", restart=restart)

        def add_dns() -> None:
            if self.config.dns_enabled and (observed is None or observed.dns_records != records):
                add("update_dns_record", records=records, remove=False)

        disk_changed = self._disk_changed(observed, disk_size, disk_props)

        if state == "detached":
            if observed is not None and observed.vm_cid:
                add("update_job_state", state="stopped", job_config_hash="", spec=None, wait_healthy=False,
                    restart=False)
                if observed.disk is not None:
                    add("detach_disk", disk_cid=observed.disk.disk_cid, delete=False, vm_cid=observed.vm_cid)
                add("delete_vm", vm_cid=observed.vm_cid, delete_instance=False, detached=True)
            elif observed is None or observed.state != "detached":
                add("update_job_state", state="detached", job_config_hash="", spec=None, wait_healthy=False,
                    restart=False)
            return step

        if observed is None:
            add("create_vm", replace=False, **vm_params)
            add("attach_disk", size=disk_size, cloud_properties=disk_props, disk_cid=None)
            add_job_state(running_state)
            add_dns()
            return step

        if not observed.vm_cid:
            add("create_vm", replace=False, **vm_params)
            existing = observed.disk.disk_cid if observed.disk else None
            add("attach_disk", size=disk_size if existing is None else observed.disk.size,
                cloud_properties=disk_props, disk_cid=existing)
            if existing is not None and disk_changed:
                add("migrate_disk", disk_cid=existing, size=disk_size, cloud_properties=disk_props, changed=True)
            add_job_state(running_state)
            add_dns()
            return step

        if recreate or state == "recreate" or observed.vm_config_hash != vm_hash:
            add("create_vm", replace=True, old_vm_cid=observed.vm_cid, **vm_params)
            if observed.disk is not None or disk_size > 0:
                add(
                    "migrate_disk",
                    disk_cid=observed.disk.disk_cid if observed.disk else None,
                    size=disk_size,
                    cloud_properties=disk_props,
                    changed=disk_changed,
                    from_vm_cid=observed.vm_cid,
                    from_agent_id=observed.agent_id,
                )
            add_job_state("started" if state == "recreate" else running_state)
            add("delete_vm", vm_cid=observed.vm_cid, delete_instance=False, detached=False)
            add_dns()
            return step

        if disk_changed:
            add(
                "migrate_disk",
                disk_cid=observed.disk.disk_cid if observed.disk else None,
                size=disk_size,
                cloud_properties=disk_props,
                changed=True,
            )
            add_job_state(running_state)
            return step

        restart = state == "restart"
        if restart or observed.job_config_hash != job_hash or observed.state != running_state:
            add_job_state("started" if restart else running_state, restart=restart)
        add_dns()
        return step

    def _disk_changed(self, observed: Optional[ObservedInstance], size: int, cloud_properties: Dict[str, Any]) -> bool:
        if observed is None:
            return size > 0
        if observed.disk is None:
            return size > 0
        return observed.disk.size != size or (observed.disk.cloud_properties or {}) != (cloud_properties or {})

    def _plan_deletion(self, observed: ObservedInstance) -> Step:
        step = Step(job=observed.job, index=observed.index, deletion=True)

        def add(kind: str, **params) -> None:
            step.actions.append(Action(kind=kind, job=observed.job, index=observed.index, params=params))

        if observed.vm_cid:
            add("update_job_state", state="stopped", job_config_hash="", spec=None, wait_healthy=False, restart=False)
        disks = ([observed.disk] if observed.disk else []) + list(observed.inactive_disks)
        for disk in disks:
            add("detach_disk", disk_cid=disk.disk_cid, delete=True, vm_cid=observed.vm_cid if disk.active else None)
        if self.config.dns_enabled and observed.dns_records:
            add("update_dns_record", records=[], remove=True)
        add("delete_vm", vm_cid=observed.vm_cid, delete_instance=True, detached=False)
        return step
