from ..errors import DeploymentFailed, ValidationError
from ..executor import PlanExecutor
from ..fleet import FleetRecorder, observe
from ..models import DeploymentProblem, IpReservation, Snapshot
from ..reconciler import DeploymentPlanner, load_manifest
from ..snapshots import SnapshotManager
from .base import TaskHandler
from .deploy import deploy_manifest


def job_state_overrides(job, index, state):
    if not job:
        return None
    if index is None:
        return {job: {"state": state}}
    return {job: {"instances": {int(index): state}}}


class ChangeJobStateHandler(TaskHandler):
    """Redeploys the stored manifest with a state override for one job or instance."""

    task_type = "change_job_state"
    locks_deployment = True

    def perform(self) -> str:
        deployment = self.get_deployment()
        if not deployment.manifest:
            raise ValidationError(f"Deployment '{deployment.name}' has no manifest to redeploy")
        job = self.params.get("job")
        index = self.params.get("index")
        state = self.params["state"]
        overrides = job_state_overrides(job, index, state)
        if overrides is None:
            # Every job in the manifest gets the requested state.
            manifest = load_manifest(deployment.manifest)
            overrides = {item["name"]: {"state": state} for item in manifest.get("jobs") or []}
        self.log.info("Changing %s of %s to %s", job or "all jobs", deployment.name, state)
        return deploy_manifest(self, deployment.manifest, job_states=overrides)


class DeleteDeploymentHandler(TaskHandler):
    task_type = "delete_deployment"
    locks_deployment = True

    def perform(self) -> str:
        force = bool(self.params.get("force"))
        name = self.deployment_name
        with self.context.lock(name):
            deployment = self.get_deployment(name)
            cloud = self.cloud_for(deployment)
            snapshots = Snapshot.objects.filter(persistent_disk__instance__deployment=deployment).select_related(
                "persistent_disk__instance"
            )
            failed = [r for r in SnapshotManager(cloud, self.config, self.log).delete_snapshots(snapshots) if not r.ok]
            if failed and not force:
                raise DeploymentFailed(
                    "Could not delete snapshots:\n" + "\n".join(result.describe() for result in failed)
                )

            observed = observe(name)
            plan = DeploymentPlanner(self.config).plan(name, {"name": name, "jobs": []}, observed)
            executor = PlanExecutor(
                cloud,
                self.director.agents,
                FleetRecorder(deployment),
                observed,
                self.context.log,
                {},
                deployment.cloud_provider or self.config.default_infrastructure,
                agent_timeout=self.config.agent_timeout,
            )
            report = executor.execute(plan, self.context.token)
            if not report.ok:
                if not force:
                    raise DeploymentFailed(f"Deleting '{name}' failed:\n{report.summary()}", report=report)
                self.log.warning("Ignoring failures while force deleting %s:\n%s", name, report.summary())

            IpReservation.objects.filter(instance__deployment=deployment).delete()
            DeploymentProblem.objects.filter(deployment=deployment).delete()
            deployment.delete()
        self.log.info("Deleted deployment %s", name)
        return f"/deployments/{name}"
