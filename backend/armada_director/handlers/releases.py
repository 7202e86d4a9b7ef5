from ..releases import ReleaseManager, write_backup
from .base import TaskHandler


class ReleaseHandler(TaskHandler):
    def manager(self) -> ReleaseManager:
        return ReleaseManager(self.config, self.director.artifacts, log=self.log)


class CreateReleaseHandler(ReleaseHandler):
    task_type = "create_release"

    def perform(self) -> str:
        version = self.manager().create_release(
            self.params.get("manifest"),
            artifact_ref=self.params.get("artifact_ref") or "",
            artifact_path=self.params.get("artifact_path") or "",
            rebase=bool(self.params.get("rebase")),
        )
        return f"/releases/{version.release.name}/{version.version}"


class DeleteReleaseHandler(ReleaseHandler):
    task_type = "delete_release"

    def perform(self) -> str:
        name = self.params["name"]
        count = self.manager().delete_release(name, self.params.get("version"), force=bool(self.params.get("force")))
        return f"/releases/{name} ({count} version(s) deleted)"


class CreateStemcellHandler(ReleaseHandler):
    task_type = "create_stemcell"

    def perform(self) -> str:
        infrastructure = self.params.get("infrastructure") or self.config.default_infrastructure
        stemcell = self.manager().create_stemcell(
            self.context.cloud(infrastructure),
            self.params["name"],
            self.params["version"],
            artifact_ref=self.params.get("artifact_ref") or "",
            cloud_properties=self.params.get("cloud_properties"),
            infrastructure=infrastructure,
        )
        return f"/stemcells/{stemcell.name}/{stemcell.version}"


class DeleteStemcellHandler(ReleaseHandler):
    task_type = "delete_stemcell"

    def perform(self) -> str:
        name, version = self.params["name"], self.params["version"]
        manager = self.manager()
        stemcell = manager.stemcell_for_deletion(name, version, force=bool(self.params.get("force")))
        manager.delete_stemcell(self.context.cloud(stemcell.infrastructure or None), name, version,
                               force=bool(self.params.get("force")))
        return f"/stemcells/{name}/{version}"


class BackupHandler(TaskHandler):
    task_type = "backup"

    def perform(self) -> str:
        path = write_backup(self.params.get("path") or self.config.backup_path)
        self.log.info("Backup written to %s", path)
        return path
