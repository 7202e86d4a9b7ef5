"""Problem detection and repair for deployed instances.

``scan`` only reads the fleet and records ``DeploymentProblem`` rows. Repairs
run later inside a ``resolve_problems`` or ``scan_and_fix`` task that holds the
deployment lock; problems are marked resolved once that task is done.
"""
import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from django.utils import timezone

from .agents import persistent_disk_percent
from .config import RESOLUTION_OPTIONS, DirectorConfig
from .errors import (
    AgentError,
    CloudError,
    CrossDeploymentError,
    InvalidResolution,
    ProblemNotFound,
    ValidationError,
    VMNotFound,
)
from .models import Deployment, DeploymentProblem, Instance, PersistentDisk, Stemcell, Vm
from .reconciler import load_manifest

logger = logging.getLogger(__name__)

DESCRIPTIONS = {
    "missing_vm": "VM with cloud ID '{vm_cid}' missing.",
    "unresponsive_agent": "{job}/{index} ({vm_cid}) is not responding",
    "disk_detached": "Disk '{disk_cid}' ({job}/{index}) is not attached to its VM",
    "out_of_disk": "{job}/{index} persistent disk is {percent}% full",
    "inactive_disk": "Disk '{disk_cid}' ({job}/{index}) is inactive",
}


def describe(problem: DeploymentProblem) -> str:
    template = DESCRIPTIONS.get(problem.type, problem.type)
    try:
        return template.format(**(problem.data_json or {}))
    except KeyError:
        return template


def problem_payload(problem: DeploymentProblem) -> Dict[str, Any]:
    return {
        "id": problem.id,
        "type": problem.type,
        "description": describe(problem),
        "resolutions": [{"name": name, "plan": name.replace("_", " ")} for name in RESOLUTION_OPTIONS[problem.type]],
        "data": problem.data_json or {},
    }


def _job_filter(jobs) -> Optional[Dict[str, Optional[List[int]]]]:
    """Normalize ``["web"]`` / ``{"web": [0, 1]}`` / ``{"web": None}`` job filters."""
    if not jobs:
        return None
    if isinstance(jobs, dict):
        return {job: [int(i) for i in indexes] if indexes else None for job, indexes in jobs.items()}
    return {job: None for job in jobs}


def _selected(instance: Instance, jobs) -> bool:
    if jobs is None:
        return True
    if instance.job not in jobs:
        return False
    indexes = jobs[instance.job]
    return indexes is None or instance.index in indexes


class Resurrector:
    def __init__(self, config: DirectorConfig, clouds, agents, log: Optional[logging.Logger] = None):
        self.config = config
        self.clouds = clouds
        self.agents = agents
        self.log = log or logger

    def _cloud(self, deployment: Deployment):
        return self.clouds(deployment.cloud_provider or self.config.default_infrastructure)

    def _agent(self, deployment: Deployment, vm: Vm):
        return self.agents.for_vm(deployment.cloud_provider or self.config.default_infrastructure, vm.agent_id,
                                  vm.env_json or {})

    # Detection

    def scan(self, deployment: Deployment, jobs=None) -> List[DeploymentProblem]:
        jobs = _job_filter(jobs)
        cloud = self._cloud(deployment)
        found: List[DeploymentProblem] = []
        instances = Instance.objects.filter(deployment=deployment).select_related("vm").order_by("job", "index")
        for instance in instances:
            if not _selected(instance, jobs):
                continue
            base = {"job": instance.job, "index": instance.index}
            for disk in instance.persistent_disks.filter(active=False):
                found.append(self._open(deployment, "inactive_disk", "disk", disk.id,
                                        dict(base, disk_cid=disk.disk_cid)))
            vm = instance.vm
            if vm is None:
                continue
            data = dict(base, vm_cid=vm.cid, agent_id=vm.agent_id)
            if not cloud.has_vm(vm.cid):
                found.append(self._open(deployment, "missing_vm", "vm", vm.id, data))
                continue
            try:
                agent = self._agent(deployment, vm)
                state = agent.get_state()
                mounted = agent.list_disk()
            except AgentError as exc:
                self.log.info("Agent %s of %s/%s did not answer: %s", vm.agent_id, instance.job, instance.index, exc)
                found.append(self._open(deployment, "unresponsive_agent", "vm", vm.id, data))
                continue
            disk = instance.active_disk
            if disk is not None and disk.disk_cid not in mounted:
                found.append(self._open(deployment, "disk_detached", "disk", disk.id,
                                        dict(data, disk_cid=disk.disk_cid)))
            percent = persistent_disk_percent(state)
            if disk is not None and percent >= self.config.out_of_disk_threshold:
                found.append(self._open(deployment, "out_of_disk", "instance", instance.id,
                                        dict(data, disk_cid=disk.disk_cid, percent=percent)))
        self.log.info("Scan of %s found %s problem(s)", deployment.name, len(found))
        return found

    def _open(self, deployment: Deployment, problem_type: str, resource_type: str, resource_id: int,
              data: Dict[str, Any]) -> DeploymentProblem:
        problem = DeploymentProblem.objects.filter(
            deployment=deployment, type=problem_type, resource_type=resource_type, resource_id=resource_id, state="open"
        ).first()
        if problem is not None:
            problem.counter += 1
            problem.last_seen_at = timezone.now()
            problem.data_json = data
            problem.save(update_fields=["counter", "last_seen_at", "data_json"])
            return problem
        return DeploymentProblem.objects.create(
            deployment=deployment, type=problem_type, resource_type=resource_type, resource_id=resource_id,
            data_json=data,
        )

    # Resolution selection

    def validate_resolutions(self, deployment: Deployment, resolutions: Dict[Any, Optional[str]]) -> Dict[int, str]:
        """Check an explicit ``{problem_id: resolution}`` map; ``None`` picks the default."""
        chosen: Dict[int, str] = {}
        for raw_id, resolution in (resolutions or {}).items():
            try:
                problem_id = int(raw_id)
            except (TypeError, ValueError):
                raise ProblemNotFound(f"Problem '{raw_id}' not found")
            problem = DeploymentProblem.objects.filter(id=problem_id).first()
            if problem is None:
                raise ProblemNotFound(f"Problem '{problem_id}' not found")
            if problem.deployment_id != deployment.id:
                raise CrossDeploymentError(f"Problem '{problem_id}' is not a part of deployment '{deployment.name}'")
            if problem.state != "open":
                raise ValidationError(f"Problem '{problem_id}' is already resolved")
            resolution = resolution or self.config.default_resolution(problem.type)
            if resolution not in RESOLUTION_OPTIONS.get(problem.type, ()):
                raise InvalidResolution(f"Invalid resolution '{resolution}' for problem '{problem.type}'")
            chosen[problem_id] = resolution
        return chosen

    def default_resolutions(self, deployment: Deployment, problems: Optional[Iterable[DeploymentProblem]] = None,
                            skip_paused: bool = False) -> Dict[int, str]:
        if problems is None:
            problems = DeploymentProblem.objects.filter(deployment=deployment, state="open")
        chosen = {}
        for problem in problems:
            if skip_paused:
                instance = self._instance_of(problem)
                if instance is not None and instance.resurrection_paused:
                    self.log.info("Skipping problem %s on %s/%s: resurrection paused", problem.id, instance.job,
                                  instance.index)
                    continue
            chosen[problem.id] = self.config.default_resolution(problem.type)
        return chosen

    def _instance_of(self, problem: DeploymentProblem) -> Optional[Instance]:
        if problem.resource_type == "instance":
            return Instance.objects.filter(id=problem.resource_id).first()
        if problem.resource_type == "vm":
            return Instance.objects.filter(vm_id=problem.resource_id).first()
        disk = PersistentDisk.objects.filter(id=problem.resource_id).select_related("instance").first()
        return disk.instance if disk else None

    # Repairs

    def apply_resolutions(self, deployment: Deployment, resolutions: Dict[int, str]) -> List[str]:
        """Run each resolution; returns the error messages of the ones that failed."""
        errors = []
        for problem_id, resolution in sorted(resolutions.items()):
            problem = DeploymentProblem.objects.filter(id=problem_id, deployment=deployment).first()
            if problem is None or problem.state != "open":
                continue
            self.log.info("Applying '%s' to problem %s (%s)", resolution, problem.id, problem.type)
            try:
                getattr(self, f"_resolve_{resolution}")(deployment, problem)
            except (CloudError, AgentError, ValidationError) as exc:
                self.log.error("Resolving problem %s with %s failed: %s", problem.id, resolution, exc)
                errors.append(f"Problem {problem.id} ({problem.type}): {exc}")
        return errors

    def _resolve_ignore(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        return None

    def _vm_of(self, problem: DeploymentProblem) -> Optional[Vm]:
        instance = self._instance_of(problem)
        if problem.resource_type == "vm":
            return Vm.objects.filter(id=problem.resource_id).first()
        return instance.vm if instance else None

    def _resolve_reboot_vm(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        vm = self._vm_of(problem)
        if vm is None:
            raise ValidationError(f"Problem {problem.id} has no VM to reboot")
        self._cloud(deployment).reboot_vm(vm.cid)
        self._wait_for_agent(deployment, vm)

    def _resolve_delete_vm(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        vm = self._vm_of(problem)
        if vm is None:
            return
        instance = self._instance_of(problem)
        disk = instance.active_disk if instance else None
        cloud = self._cloud(deployment)
        if disk is not None:
            try:
                cloud.detach_disk(vm.cid, disk.disk_cid)
            except VMNotFound:
                pass
        try:
            cloud.delete_vm(vm.cid)
        except VMNotFound:
            self.log.info("VM %s already gone", vm.cid)
        vm.delete()

    def _resolve_delete_vm_reference(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        vm = self._vm_of(problem)
        if vm is not None:
            vm.delete()

    def _resolve_recreate_vm(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        instance = self._instance_of(problem)
        if instance is None:
            raise ValidationError(f"Problem {problem.id} has no instance to recreate")
        old_vm = instance.vm
        spec = dict((old_vm.apply_spec_json if old_vm else None) or {})
        cloud = self._cloud(deployment)
        if old_vm is not None:
            disk = instance.active_disk
            if cloud.has_vm(old_vm.cid):
                if disk is not None:
                    cloud.detach_disk(old_vm.cid, disk.disk_cid)
                try:
                    cloud.delete_vm(old_vm.cid)
                except VMNotFound:
                    self.log.info("VM %s already gone", old_vm.cid)
            old_vm.delete()
        manifest = load_manifest(deployment.manifest or {})
        pool = next(
            (p for p in manifest.get("resource_pools") or [] if p.get("name") == instance.resource_pool), None
        )
        if pool is None:
            raise ValidationError(f"Resource pool '{instance.resource_pool}' is not in the deployment manifest")
        stemcell_spec = pool.get("stemcell") or {}
        stemcell = Stemcell.objects.filter(
            name=stemcell_spec.get("name"), version=str(stemcell_spec.get("version"))
        ).first()
        if stemcell is None:
            raise ValidationError(f"Stemcell {stemcell_spec.get('name')}/{stemcell_spec.get('version')} is missing")
        networks = spec.get("networks") or {
            name: {"ip": ip, "type": "manual"} for name, ip in (instance.ip_addresses_json or {}).items()
        }
        disk = instance.active_disk
        agent_id = str(uuid.uuid4())
        env = dict(pool.get("env") or {})
        if (deployment.cloud_provider or self.config.default_infrastructure) != "dummy":
            address = next((net.get("ip") for net in networks.values() if net.get("ip")), None)
            if address:
                env.setdefault("mbus", f"https://{address}:6868")
        vm_cid = cloud.create_vm(agent_id, stemcell.cid, dict(pool.get("cloud_properties") or {}), networks,
                                 [disk.disk_cid] if disk else None, env)
        vm = Vm.objects.create(deployment=deployment, cid=vm_cid, agent_id=agent_id, env_json=env,
                               apply_spec_json=spec or None)
        instance.vm = vm
        instance.save(update_fields=["vm", "updated_at"])
        agent = self._wait_for_agent(deployment, vm)
        if disk is not None:
            cloud.attach_disk(vm_cid, disk.disk_cid)
            agent.mount_disk(disk.disk_cid)
        if spec:
            agent.apply(spec)
        if instance.state == "started":
            agent.start()

    def _resolve_reattach_disk(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        disk = PersistentDisk.objects.filter(id=problem.resource_id).select_related("instance__vm").first()
        if disk is None or disk.instance.vm is None:
            raise ValidationError(f"Problem {problem.id} has no disk and VM to reattach")
        vm = disk.instance.vm
        self._cloud(deployment).attach_disk(vm.cid, disk.disk_cid)
        self._agent(deployment, vm).mount_disk(disk.disk_cid)

    def _resolve_activate_disk(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        disk = PersistentDisk.objects.filter(id=problem.resource_id).select_related("instance").first()
        if disk is None:
            raise ValidationError(f"Disk of problem {problem.id} no longer exists")
        if disk.instance.persistent_disks.filter(active=True).exclude(id=disk.id).exists():
            raise ValidationError(f"{disk.instance} already has an active persistent disk")
        disk.active = True
        disk.save(update_fields=["active"])

    def _resolve_delete_disk(self, deployment: Deployment, problem: DeploymentProblem) -> None:
        disk = PersistentDisk.objects.filter(id=problem.resource_id).first()
        if disk is None:
            return
        cloud = self._cloud(deployment)
        for snapshot in disk.snapshots.all():
            cloud.delete_snapshot(snapshot.snapshot_cid)
        cloud.delete_disk(disk.disk_cid)
        disk.delete()

    def _wait_for_agent(self, deployment: Deployment, vm: Vm):
        agent = self._agent(deployment, vm)
        deadline = time.monotonic() + self.config.agent_timeout
        while True:
            try:
                agent.ping()
                return agent
            except AgentError:
                if time.monotonic() >= deadline:
                    raise
                time.sleep(1)


def mark_resolved(resolutions: Dict[int, str], task_id: int) -> int:
    now = timezone.now()
    count = 0
    for problem_id, resolution in resolutions.items():
        count += DeploymentProblem.objects.filter(id=problem_id, state="open").update(
            state="resolved", resolution=resolution, resolution_task_id=task_id, resolved_at=now
        )
    return count
