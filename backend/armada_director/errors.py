from typing import Any, Dict, Optional


class DirectorError(Exception):
    """Base error carrying a stable code and the HTTP status the API relays."""

    code = 100
    status = 500

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "description": self.message}


class ValidationError(DirectorError):
    code = 40000
    status = 400


class InstanceInvalidIndex(ValidationError):
    code = 40001


class DeploymentNotFound(ValidationError):
    code = 70000
    status = 404


class InstanceNotFound(ValidationError):
    code = 80000
    status = 404


class SnapshotNotFound(ValidationError):
    code = 420000
    status = 404


class ProblemNotFound(ValidationError):
    code = 130000
    status = 404


class ReleaseNotFound(ValidationError):
    code = 30000
    status = 404


class StemcellNotFound(ValidationError):
    code = 50000
    status = 404


class TaskNotFound(ValidationError):
    code = 10000
    status = 404


class CrossDeploymentError(ValidationError):
    code = 130001


class DeploymentMismatch(ValidationError):
    code = 420001


class InvalidResolution(ValidationError):
    code = 130002


class InfrastructureMismatch(ValidationError):
    code = 70001


class ReleaseInUse(ValidationError):
    code = 30001


class StemcellInUse(ValidationError):
    code = 50001


class ReleaseVersionConflict(ValidationError):
    code = 30002


class AllocationError(DirectorError):
    code = 190000
    status = 400


class CapacityExhausted(AllocationError):
    code = 190001


class NetworkExhausted(AllocationError):
    code = 190002


class CloudError(DirectorError):
    code = 100001


class CloudTimeout(CloudError):
    code = 100002


class VMNotFound(CloudError):
    code = 100003


class AgentError(DirectorError):
    code = 450001


class AgentTimeout(AgentError):
    code = 450002


class DeploymentFailed(DirectorError):
    """A reconciliation plan stopped part-way; `report` says where."""

    code = 400007

    def __init__(self, message: str = "", *, report=None):
        super().__init__(message)
        self.report = report


class TaskCancelled(DirectorError):
    code = 10001


class PropertyNotFound(ValidationError):
    code = 110003
    status = 404


class PropertyAlreadyExists(ValidationError):
    code = 110001


class BackupNotFound(ValidationError):
    code = 10101
    status = 404
