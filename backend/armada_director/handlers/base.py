import logging
from typing import Any, Dict, Optional

from ..errors import DeploymentNotFound
from ..models import Deployment
from ..tasks import TaskContext


class TaskHandler:
    """One task type's work, run on a worker with the task's context."""

    task_type = ""
    # Tasks of this type hold their deployment's lock while they run.
    locks_deployment = False

    def __init__(self, context: TaskContext):
        self.context = context

    @property
    def params(self) -> Dict[str, Any]:
        return self.context.params

    @property
    def config(self):
        return self.context.config

    @property
    def director(self):
        return self.context.director

    @property
    def log(self) -> logging.Logger:
        return self.context.log.debug

    @property
    def deployment_name(self) -> str:
        return self.context.task.deployment_name or str(self.params.get("deployment") or "")

    def get_deployment(self, name: Optional[str] = None) -> Deployment:
        name = name or self.deployment_name
        deployment = Deployment.objects.filter(name=name).first()
        if deployment is None:
            raise DeploymentNotFound(f"Deployment '{name}' doesn't exist")
        return deployment

    def cloud_for(self, deployment: Optional[Deployment] = None):
        kind = deployment.cloud_provider if deployment is not None and deployment.cloud_provider else None
        return self.context.cloud(kind)

    def perform(self) -> str:
        raise NotImplementedError
