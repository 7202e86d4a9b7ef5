from typing import Iterable

from django.db import models
from django.db.models import Q
from django.utils import timezone


class Task(models.Model):
    TYPE_CHOICES = [
        ("create_release", "Create release"),
        ("delete_release", "Delete release"),
        ("create_stemcell", "Create stemcell"),
        ("delete_stemcell", "Delete stemcell"),
        ("update_deployment", "Update deployment"),
        ("delete_deployment", "Delete deployment"),
        ("change_job_state", "Change job state"),
        ("snapshot", "Snapshot"),
        ("delete_snapshot", "Delete snapshot"),
        ("scan", "Scan"),
        ("scan_and_fix", "Scan and fix"),
        ("resolve_problems", "Resolve problems"),
        ("backup", "Backup"),
        ("fetch_logs", "Fetch logs"),
    ]
    STATE_CHOICES = [
        ("queued", "Queued"),
        ("processing", "Processing"),
        ("cancelling", "Cancelling"),
        ("cancelled", "Cancelled"),
        ("done", "Done"),
        ("error", "Error"),
    ]
    TERMINAL_STATES = frozenset({"done", "error", "cancelled"})
    ACTIVE_STATES = frozenset({"queued", "processing", "cancelling"})
    TRANSITIONS = {
        "queued": frozenset({"processing", "cancelling"}),
        "processing": frozenset({"done", "error", "cancelled", "cancelling"}),
        "cancelling": frozenset({"cancelled"}),
    }

    type = models.CharField(max_length=40, choices=TYPE_CHOICES)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default="queued", db_index=True)
    description = models.CharField(max_length=255)
    deployment_name = models.CharField(max_length=200, blank=True, db_index=True)
    params_json = models.JSONField(null=True, blank=True)
    result = models.TextField(blank=True)
    output = models.CharField(max_length=500, blank=True)
    timestamp = models.DateTimeField(default=timezone.now)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    user = models.ForeignKey(
        "auth.User", null=True, blank=True, on_delete=models.SET_NULL, related_name="director_tasks"
    )

    class Meta:
        ordering = ["-id"]

    def __str__(self) -> str:
        return f"task {self.id} {self.type} ({self.state})"

    @classmethod
    def transition(cls, task_id: int, from_states: Iterable[str], to_state: str, **fields) -> bool:
        """Atomically move a task between states; False when another writer got there first."""
        allowed = [state for state in from_states if to_state in cls.TRANSITIONS.get(state, ())]
        if not allowed:
            return False
        if to_state in cls.TERMINAL_STATES:
            fields.setdefault("finished_at", timezone.now())
        return cls.objects.filter(id=task_id, state__in=allowed).update(state=to_state, **fields) == 1


class Release(models.Model):
    name = models.CharField(max_length=200, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class ReleaseVersion(models.Model):
    release = models.ForeignKey(Release, on_delete=models.CASCADE, related_name="versions")
    version = models.CharField(max_length=100)
    commit_hash = models.CharField(max_length=64, default="unknown")
    uncommitted_changes = models.BooleanField(default=False)
    jobs_json = models.JSONField(default=list, blank=True)
    packages_json = models.JSONField(default=list, blank=True)
    fingerprint = models.CharField(max_length=64, db_index=True)
    artifact_ref = models.CharField(max_length=500, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["release__name", "id"]
        unique_together = [("release", "version")]

    def __str__(self) -> str:
        return f"{self.release.name}/{self.version}"

    @property
    def job_names(self):
        return [job.get("name") for job in self.jobs_json or [] if isinstance(job, dict)]


class Stemcell(models.Model):
    name = models.CharField(max_length=200)
    version = models.CharField(max_length=100)
    cid = models.CharField(max_length=255)
    infrastructure = models.CharField(max_length=40, blank=True)
    sha1 = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name", "version"]
        unique_together = [("name", "version")]

    def __str__(self) -> str:
        return f"{self.name}/{self.version}"


class Deployment(models.Model):
    name = models.CharField(max_length=200, unique=True)
    manifest = models.TextField(blank=True)
    cloud_provider = models.CharField(max_length=40, blank=True)
    release_versions = models.ManyToManyField(ReleaseVersion, blank=True, related_name="deployments")
    stemcells = models.ManyToManyField(Stemcell, blank=True, related_name="deployments")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class DeploymentProperty(models.Model):
    deployment = models.ForeignKey(Deployment, on_delete=models.CASCADE, related_name="properties")
    name = models.CharField(max_length=255)
    value = models.TextField(blank=True)

    class Meta:
        ordering = ["name"]
        unique_together = [("deployment", "name")]

    def __str__(self) -> str:
        return f"{self.deployment.name}:{self.name}"


class Vm(models.Model):
    deployment = models.ForeignKey(Deployment, on_delete=models.CASCADE, related_name="vms")
    cid = models.CharField(max_length=255)
    agent_id = models.CharField(max_length=64, unique=True)
    env_json = models.JSONField(null=True, blank=True)
    apply_spec_json = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return f"{self.cid} ({self.agent_id})"


class Instance(models.Model):
    STATE_CHOICES = [
        ("started", "Started"),
        ("stopped", "Stopped"),
        ("detached", "Detached"),
    ]

    deployment = models.ForeignKey(Deployment, on_delete=models.CASCADE, related_name="instances")
    job = models.CharField(max_length=200)
    index = models.PositiveIntegerField()
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default="started")
    resurrection_paused = models.BooleanField(default=False)
    vm = models.OneToOneField(Vm, null=True, blank=True, on_delete=models.SET_NULL, related_name="instance")
    resource_pool = models.CharField(max_length=200, blank=True)
    vm_config_hash = models.CharField(max_length=64, blank=True)
    job_config_hash = models.CharField(max_length=64, blank=True)
    ip_addresses_json = models.JSONField(default=dict, blank=True)
    dns_records_json = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["job", "index"]
        unique_together = [("deployment", "job", "index")]

    def __str__(self) -> str:
        return f"{self.job}/{self.index}"

    @property
    def active_disk(self):
        return self.persistent_disks.filter(active=True).first()


class PersistentDisk(models.Model):
    instance = models.ForeignKey(Instance, on_delete=models.CASCADE, related_name="persistent_disks")
    disk_cid = models.CharField(max_length=255, unique=True)
    size = models.PositiveIntegerField(default=0)
    cloud_properties_json = models.JSONField(default=dict, blank=True)
    active = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(
                fields=["instance"], condition=Q(active=True), name="one_active_disk_per_instance"
            ),
        ]

    def __str__(self) -> str:
        return self.disk_cid


class Snapshot(models.Model):
    persistent_disk = models.ForeignKey(PersistentDisk, on_delete=models.CASCADE, related_name="snapshots")
    snapshot_cid = models.CharField(max_length=255, unique=True)
    clean = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self) -> str:
        return self.snapshot_cid


class DeploymentProblem(models.Model):
    TYPE_CHOICES = [
        ("missing_vm", "Missing VM"),
        ("unresponsive_agent", "Unresponsive agent"),
        ("disk_detached", "Disk detached"),
        ("out_of_disk", "Out of disk"),
        ("inactive_disk", "Inactive disk"),
    ]
    STATE_CHOICES = [
        ("open", "Open"),
        ("resolved", "Resolved"),
    ]
    RESOURCE_CHOICES = [
        ("instance", "Instance"),
        ("vm", "VM"),
        ("disk", "Persistent disk"),
    ]

    deployment = models.ForeignKey(Deployment, on_delete=models.CASCADE, related_name="problems")
    resource_type = models.CharField(max_length=20, choices=RESOURCE_CHOICES)
    resource_id = models.BigIntegerField()
    type = models.CharField(max_length=40, choices=TYPE_CHOICES)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default="open", db_index=True)
    data_json = models.JSONField(default=dict, blank=True)
    resolution = models.CharField(max_length=40, blank=True)
    resolution_task = models.ForeignKey(
        Task, null=True, blank=True, on_delete=models.SET_NULL, related_name="problems"
    )
    counter = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    last_seen_at = models.DateTimeField(default=timezone.now)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return f"{self.type} {self.resource_type}:{self.resource_id} ({self.state})"


class IpReservation(models.Model):
    network_name = models.CharField(max_length=200)
    address = models.GenericIPAddressField()
    instance = models.ForeignKey(Instance, on_delete=models.CASCADE, related_name="ip_reservations")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["network_name", "address"]
        unique_together = [("network_name", "address")]

    def __str__(self) -> str:
        return f"{self.network_name}:{self.address}"
