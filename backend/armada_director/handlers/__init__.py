from typing import Dict, Type

from ..errors import ValidationError
from .base import TaskHandler
from .deploy import UpdateDeploymentHandler
from .deployments import ChangeJobStateHandler, DeleteDeploymentHandler
from .logs import FetchLogsHandler
from .problems import ResolveProblemsHandler, ScanAndFixHandler, ScanHandler
from .releases import (
    BackupHandler,
    CreateReleaseHandler,
    CreateStemcellHandler,
    DeleteReleaseHandler,
    DeleteStemcellHandler,
)
from .snapshots import DeleteSnapshotHandler, SnapshotHandler

HANDLERS: Dict[str, Type[TaskHandler]] = {
    handler.task_type: handler
    for handler in (
        CreateReleaseHandler,
        DeleteReleaseHandler,
        CreateStemcellHandler,
        DeleteStemcellHandler,
        UpdateDeploymentHandler,
        DeleteDeploymentHandler,
        ChangeJobStateHandler,
        SnapshotHandler,
        DeleteSnapshotHandler,
        ScanHandler,
        ScanAndFixHandler,
        ResolveProblemsHandler,
        BackupHandler,
        FetchLogsHandler,
    )
}


def get_handler(task_type: str) -> Type[TaskHandler]:
    handler = HANDLERS.get(task_type)
    if handler is None:
        raise ValidationError(f"Unknown task type '{task_type}'")
    return handler
