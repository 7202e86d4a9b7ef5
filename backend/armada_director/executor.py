import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import AgentError, CloudError, TaskCancelled, VMNotFound
from .fleet import FleetRecorder, ObservedState, StepEvent
from .reconciler import Action, DeploymentPlan, Step

logger = logging.getLogger(__name__)

AGENT_PORT = 6868


@dataclass
class InstanceResult:
    job: str
    index: int
    status: str = "not_attempted"
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"job": self.job, "index": self.index, "status": self.status, "error": self.error}


@dataclass
class PlanReport:
    deployment: str
    results: List[InstanceResult] = field(default_factory=list)

    def _with(self, status: str) -> List[InstanceResult]:
        return [result for result in self.results if result.status == status]

    @property
    def succeeded(self) -> List[InstanceResult]:
        return self._with("succeeded")

    @property
    def failed(self) -> List[InstanceResult]:
        return self._with("failed")

    @property
    def not_attempted(self) -> List[InstanceResult]:
        return self._with("not_attempted")

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_attempted

    def summary(self) -> str:
        lines = [f"{r.job}/{r.index}: {r.status}" + (f" ({r.error})" if r.error else "") for r in self.results]
        return "\n".join(lines)


@dataclass
class StepState:
    vm_cid: Optional[str] = None
    agent_id: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
    old_vm_cid: Optional[str] = None
    old_agent_id: Optional[str] = None
    old_env: Dict[str, Any] = field(default_factory=dict)
    new_disk_cid: Optional[str] = None


class PlanExecutor:
    """Runs a plan batch by batch.

    Steps of one batch run concurrently, one thread per step, and perform only
    cloud and agent calls. Their recorded events are written to the database
    afterwards on the calling thread, in batch order. The first failing batch
    stops the plan; nothing already done is rolled back.
    """

    def __init__(self, cloud, agents, recorder: FleetRecorder, observed: ObservedState, log,
                 stemcells: Dict[Tuple[str, str], str], cloud_provider: str, agent_timeout: float = 30.0):
        self.cloud = cloud
        self.agents = agents
        self.recorder = recorder
        self.observed = observed
        self.log = log
        self.stemcells = stemcells
        self.cloud_provider = cloud_provider
        self.agent_timeout = agent_timeout

    def execute(self, plan: DeploymentPlan, token=None) -> PlanReport:
        report = PlanReport(deployment=plan.deployment)
        results: Dict[Tuple[str, int], InstanceResult] = {}
        for step in plan.steps:
            result = InstanceResult(job=step.job, index=step.index)
            results[step.key] = result
            report.results.append(result)
        total = len(plan.batches)
        for number, batch in enumerate(plan.batches, start=1):
            if token is not None:
                try:
                    token.checkpoint()
                except TaskCancelled as exc:
                    self.recorder.mark_updated()
                    raise TaskCancelled(
                        f"Task cancelled before batch {number}/{total} of {plan.deployment}:\n{report.summary()}"
                    ) from exc
            stage = "Deleting unneeded instances" if batch[0].deletion else "Updating job"
            label = ", ".join(f"{step.job}/{step.index}" for step in batch)
            self.log.event(stage, label, index=number, total=total, state="started")
            self.log.debug.info("Batch %s/%s: %s", number, total, label)
            with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="armada-step") as pool:
                futures = [(step, pool.submit(self._run_step, step, plan)) for step in batch]
                outcomes = [(step, future.result()) for step, future in futures]
            failed = False
            for step, (events, error) in outcomes:
                self.recorder.apply(step.job, step.index, events)
                result = results[step.key]
                if error is None:
                    result.status = "succeeded"
                else:
                    result.status = "failed"
                    result.error = error
                    failed = True
            self.log.event(stage, label, index=number, total=total, state="failed" if failed else "finished")
            if failed:
                self.log.debug.error("Batch %s failed, halting deployment %s", number, plan.deployment)
                break
        self.recorder.mark_updated()
        return report

    def _run_step(self, step: Step, plan: DeploymentPlan):
        observed = self.observed.get(step.job, step.index)
        state = StepState()
        if observed is not None:
            state.vm_cid = observed.vm_cid
            state.agent_id = observed.agent_id
            state.env = dict(observed.vm_env or {})
        events: List[StepEvent] = []
        try:
            for action in step.actions:
                self.log.debug.info("Running %s", action.describe())
                getattr(self, f"_do_{action.kind}")(action, step, state, events, plan)
        except Exception as exc:
            self.log.debug.exception("%s/%s failed: %s", step.job, step.index, exc)
            return events, str(exc)
        return events, None

    def _agent(self, agent_id: Optional[str], env: Dict[str, Any]):
        return self.agents.for_vm(self.cloud_provider, agent_id, env)

    def _wait_for_agent(self, agent_id: str, env: Dict[str, Any]):
        agent = self._agent(agent_id, env)
        deadline = time.monotonic() + self.agent_timeout
        while True:
            try:
                agent.ping()
                return agent
            except AgentError:
                if time.monotonic() >= deadline:
                    raise
                time.sleep(1)

    def _needs_new_disk(self, step: Step) -> Optional[Action]:
        for action in step.actions:
            params = action.params
            if action.kind == "attach_disk" and not params.get("disk_cid") and params.get("size", 0) > 0:
                return action
            if action.kind == "migrate_disk" and params.get("size", 0) > 0 and (
                params.get("changed") or not params.get("disk_cid")
            ):
                return action
        return None

    def _ensure_new_disk(self, disk_action: Action, state: StepState, events, vm_locality: Optional[str]) -> str:
        if state.new_disk_cid is None:
            size = int(disk_action.params["size"])
            props = disk_action.params.get("cloud_properties") or {}
            state.new_disk_cid = self.cloud.create_disk(size, props, vm_locality)
            events.append(StepEvent("disk_created", {"disk_cid": state.new_disk_cid, "size": size,
                                                     "cloud_properties": props}))
        return state.new_disk_cid

    def _do_create_vm(self, action: Action, step: Step, state: StepState, events, plan) -> None:
        params = action.params
        disk_action = self._needs_new_disk(step)
        if disk_action is not None:
            self._ensure_new_disk(disk_action, state, events, None)
        stemcell = params.get("stemcell") or {}
        stemcell_cid = self.stemcells.get((stemcell.get("name"), str(stemcell.get("version"))))
        if not stemcell_cid:
            raise CloudError(f"Stemcell {stemcell.get('name')}/{stemcell.get('version')} is not uploaded")
        agent_id = str(uuid.uuid4())
        networks = params.get("networks") or {}
        env = dict(params.get("env") or {})
        if self.cloud_provider != "dummy":
            address = next((net["ip"] for net in networks.values() if net.get("ip")), None)
            if address:
                env.setdefault("mbus", f"https://{address}:{AGENT_PORT}")
        locality = [state.new_disk_cid] if state.new_disk_cid else None
        if locality is None and params.get("replace") is False and step.actions:
            existing = next((a.params.get("disk_cid") for a in step.actions if a.kind == "attach_disk"), None)
            locality = [existing] if existing else None
        vm_cid = self.cloud.create_vm(agent_id, stemcell_cid, params.get("cloud_properties") or {}, networks,
                                      locality, env)
        events.append(
            StepEvent(
                "vm_created",
                {
                    "vm_cid": vm_cid,
                    "agent_id": agent_id,
                    "env": env,
                    "resource_pool": params.get("resource_pool", ""),
                    "vm_config_hash": params.get("vm_config_hash", ""),
                    "ip_addresses": {name: net["ip"] for name, net in networks.items() if net.get("ip")},
                },
            )
        )
        if params.get("replace"):
            state.old_vm_cid, state.old_agent_id, state.old_env = state.vm_cid, state.agent_id, state.env
        state.vm_cid, state.agent_id, state.env = vm_cid, agent_id, env
        self._wait_for_agent(agent_id, env)

    def _do_attach_disk(self, action: Action, step: Step, state: StepState, events, plan) -> None:
        disk_cid = action.params.get("disk_cid") or state.new_disk_cid
        if not disk_cid:
            return
        self.cloud.attach_disk(state.vm_cid, disk_cid)
        self._agent(state.agent_id, state.env).mount_disk(disk_cid)
        events.append(StepEvent("disk_activated", {"disk_cid": disk_cid}))

    def _do_migrate_disk(self, action: Action, step: Step, state: StepState, events, plan) -> None:
        params = action.params
        old_disk = params.get("disk_cid")
        new_disk = None
        if (params.get("changed") or not old_disk) and params.get("size", 0) > 0:
            new_disk = self._ensure_new_disk(action, state, events, state.vm_cid)
        agent = self._agent(state.agent_id, state.env)
        if old_disk and state.old_vm_cid:
            old_agent = self._agent(state.old_agent_id, state.old_env)
            old_agent.stop()
            old_agent.unmount_disk(old_disk)
            self.cloud.detach_disk(state.old_vm_cid, old_disk)
            self.cloud.attach_disk(state.vm_cid, old_disk)
            agent.mount_disk(old_disk)
        if new_disk:
            self.cloud.attach_disk(state.vm_cid, new_disk)
            agent.mount_disk(new_disk)
            if old_disk:
                agent.migrate_disk(old_disk, new_disk)
            events.append(StepEvent("disk_activated", {"disk_cid": new_disk}))
        if old_disk and (new_disk or params.get("size", 0) == 0):
            agent.unmount_disk(old_disk)
            self.cloud.detach_disk(state.vm_cid, old_disk)
            events.append(StepEvent("disk_deactivated", {"disk_cid": old_disk}))
            self.cloud.delete_disk(old_disk)
            events.append(StepEvent("disk_deleted", {"disk_cid": old_disk}))

    def _do_update_job_state(self, action: Action, step: Step, state: StepState, events, plan) -> None:
        params = action.params
        target = params.get("state")
        if state.vm_cid is None:
            events.append(StepEvent("state_applied", {"state": target}))
            return
        agent = self._agent(state.agent_id, state.env)
        spec = params.get("spec")
        if params.get("restart") or target == "stopped":
            agent.stop()
        if spec is not None:
            agent.apply(spec)
        if target == "started":
            agent.start()
            if params.get("wait_healthy"):
                self._wait_running(agent, step, plan.update_watch_time)
        events.append(
            StepEvent(
                "state_applied",
                {"state": target, "job_config_hash": params.get("job_config_hash") or "", "apply_spec": spec},
            )
        )

    def _wait_running(self, agent, step: Step, watch_time_ms: int) -> None:
        deadline = time.monotonic() + watch_time_ms / 1000.0
        while True:
            job_state = agent.get_state().get("job_state")
            if job_state == "running":
                return
            if time.monotonic() >= deadline:
                raise AgentError(f"{step.job}/{step.index} is not running after update (state: {job_state})")
            time.sleep(min(1.0, watch_time_ms / 1000.0))

    def _do_detach_disk(self, action: Action, step: Step, state: StepState, events, plan) -> None:
        params = action.params
        disk_cid = params["disk_cid"]
        vm_cid = params.get("vm_cid") or None
        if vm_cid:
            self._agent(state.agent_id, state.env).unmount_disk(disk_cid)
            self.cloud.detach_disk(vm_cid, disk_cid)
        if params.get("delete"):
            self.cloud.delete_disk(disk_cid)
            events.append(StepEvent("disk_deleted", {"disk_cid": disk_cid}))

    def _do_delete_vm(self, action: Action, step: Step, state: StepState, events, plan) -> None:
        params = action.params
        vm_cid = params.get("vm_cid")
        if vm_cid:
            if vm_cid == state.old_vm_cid and state.old_agent_id:
                try:
                    self._agent(state.old_agent_id, state.old_env).stop()
                except AgentError as exc:
                    self.log.debug.warning("Could not stop replaced VM %s: %s", vm_cid, exc)
            try:
                self.cloud.delete_vm(vm_cid)
            except VMNotFound:
                self.log.debug.warning("VM %s was already gone", vm_cid)
            events.append(StepEvent("vm_deleted", {"vm_cid": vm_cid}))
            if vm_cid == state.vm_cid:
                state.vm_cid = None
        if params.get("detached"):
            events.append(StepEvent("state_applied", {"state": "detached"}))
        if params.get("delete_instance"):
            events.append(StepEvent("instance_deleted", {}))

    def _do_update_dns_record(self, action: Action, step: Step, state: StepState, events, plan) -> None:
        records = [] if action.params.get("remove") else list(action.params.get("records") or [])
        events.append(StepEvent("dns_updated", {"records": records}))
