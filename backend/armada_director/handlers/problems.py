from typing import Dict

from ..errors import DirectorError
from ..models import DeploymentProblem
from ..resurrector import Resurrector, mark_resolved
from .base import TaskHandler


class ProblemHandler(TaskHandler):
    def __init__(self, context):
        super().__init__(context)
        self.resolutions: Dict[int, str] = {}

    def resurrector(self) -> Resurrector:
        return Resurrector(self.config, self.context.cloud, self.director.agents, log=self.log)

    def resolve(self, resurrector: Resurrector, deployment, resolutions: Dict[int, str]) -> str:
        self.resolutions = {}
        errors = resurrector.apply_resolutions(deployment, resolutions)
        if errors:
            raise DirectorError("Some problems could not be resolved:\n" + "\n".join(errors))
        self.resolutions = resolutions
        return f"{len(resolutions)} resolved"

    def on_done(self) -> None:
        if self.resolutions:
            mark_resolved(self.resolutions, self.context.task.id)


class ScanHandler(ProblemHandler):
    task_type = "scan"

    def perform(self) -> str:
        deployment = self.get_deployment()
        problems = self.resurrector().scan(deployment, self.params.get("jobs"))
        return f"scan complete: {len(problems)} problem(s) found"


class ScanAndFixHandler(ProblemHandler):
    task_type = "scan_and_fix"
    locks_deployment = True

    def perform(self) -> str:
        with self.context.lock():
            deployment = self.get_deployment()
            resurrector = self.resurrector()
            problems = resurrector.scan(deployment, self.params.get("jobs"))
            resolutions = resurrector.default_resolutions(deployment, problems, skip_paused=True)
            return self.resolve(resurrector, deployment, resolutions)


class ResolveProblemsHandler(ProblemHandler):
    task_type = "resolve_problems"
    locks_deployment = True

    def perform(self) -> str:
        with self.context.lock():
            deployment = self.get_deployment()
            resurrector = self.resurrector()
            requested = self.params.get("resolutions") or {}
            if requested.get("solution") == "default":
                resolutions = resurrector.default_resolutions(
                    deployment, DeploymentProblem.objects.filter(deployment=deployment, state="open")
                )
            else:
                resolutions = resurrector.validate_resolutions(deployment, requested)
            return self.resolve(resurrector, deployment, resolutions)
