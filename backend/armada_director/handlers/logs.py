import shutil
from pathlib import Path

from ..errors import InstanceNotFound, ValidationError
from ..models import Instance
from .base import TaskHandler


class FetchLogsHandler(TaskHandler):
    """Asks one instance's agent for a log bundle; the result is its artifact reference."""

    task_type = "fetch_logs"

    def perform(self) -> str:
        deployment = self.get_deployment()
        job, index = self.params["job"], int(self.params["index"])
        instance = Instance.objects.filter(deployment=deployment, job=job, index=index).select_related("vm").first()
        if instance is None:
            raise InstanceNotFound(f"Instance '{job}/{index}' doesn't exist in deployment '{deployment.name}'")
        if instance.vm is None:
            raise ValidationError(f"Instance '{job}/{index}' has no VM to fetch logs from")
        log_type = self.params.get("type") or "job"
        agent = self.director.agents.for_vm(
            deployment.cloud_provider or self.config.default_infrastructure, instance.vm.agent_id, instance.vm.env_json
        )
        bundle = agent.fetch_logs(log_type, self.params.get("filters"))
        if bundle.get("blobstore_id"):
            ref = bundle["blobstore_id"]
        else:
            path = Path(bundle["path"])
            try:
                ref = self.director.artifacts.store(str(path))
            finally:
                shutil.rmtree(path.parent, ignore_errors=True)
        self.log.info("Fetched %s logs of %s/%s: %s", log_type, job, index, ref)
        return ref
