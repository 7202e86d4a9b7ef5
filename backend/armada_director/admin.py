from django.contrib import admin, messages

from .director import get_director
from .errors import DirectorError
from .models import (
    Deployment,
    DeploymentProblem,
    DeploymentProperty,
    Instance,
    IpReservation,
    PersistentDisk,
    Release,
    ReleaseVersion,
    Snapshot,
    Stemcell,
    Task,
    Vm,
)


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ("id", "type", "state", "deployment_name", "description", "timestamp", "user")
    list_filter = ("state", "type")
    search_fields = ("description", "deployment_name")
    readonly_fields = ("params_json", "result", "output", "timestamp", "started_at", "finished_at")
    actions = ["cancel_tasks"]

    def cancel_tasks(self, request, queryset):
        cancelled = 0
        for task in queryset:
            try:
                get_director().cancel_task(task.id)
            except DirectorError as exc:
                self.message_user(request, str(exc), messages.WARNING)
            else:
                cancelled += 1
        self.message_user(request, f"Marked {cancelled} task(s) for cancellation.", messages.SUCCESS)

    cancel_tasks.short_description = "Cancel selected tasks"


class ReleaseVersionInline(admin.TabularInline):
    model = ReleaseVersion
    extra = 0
    fields = ("version", "commit_hash", "uncommitted_changes", "fingerprint", "created_at")
    readonly_fields = fields


@admin.register(Release)
class ReleaseAdmin(admin.ModelAdmin):
    list_display = ("name", "created_at")
    search_fields = ("name",)
    inlines = [ReleaseVersionInline]


@admin.register(Stemcell)
class StemcellAdmin(admin.ModelAdmin):
    list_display = ("name", "version", "cid", "infrastructure", "created_at")
    search_fields = ("name", "cid")
    list_filter = ("infrastructure",)


@admin.register(Deployment)
class DeploymentAdmin(admin.ModelAdmin):
    list_display = ("name", "cloud_provider", "updated_at")
    search_fields = ("name",)


@admin.register(Instance)
class InstanceAdmin(admin.ModelAdmin):
    list_display = ("deployment", "job", "index", "state", "vm", "resurrection_paused", "updated_at")
    list_filter = ("state", "resurrection_paused")
    search_fields = ("deployment__name", "job")
    actions = ["pause_resurrection", "resume_resurrection"]

    def pause_resurrection(self, request, queryset):
        updated = queryset.update(resurrection_paused=True)
        self.message_user(request, f"Paused resurrection for {updated} instance(s).", messages.SUCCESS)

    pause_resurrection.short_description = "Pause resurrection"

    def resume_resurrection(self, request, queryset):
        updated = queryset.update(resurrection_paused=False)
        self.message_user(request, f"Resumed resurrection for {updated} instance(s).", messages.SUCCESS)

    resume_resurrection.short_description = "Resume resurrection"


@admin.register(Vm)
class VmAdmin(admin.ModelAdmin):
    list_display = ("cid", "agent_id", "deployment", "created_at")
    search_fields = ("cid", "agent_id")


@admin.register(PersistentDisk)
class PersistentDiskAdmin(admin.ModelAdmin):
    list_display = ("disk_cid", "instance", "size", "active", "created_at")
    list_filter = ("active",)
    search_fields = ("disk_cid",)


@admin.register(Snapshot)
class SnapshotAdmin(admin.ModelAdmin):
    list_display = ("snapshot_cid", "persistent_disk", "clean", "created_at")
    search_fields = ("snapshot_cid",)


@admin.register(DeploymentProblem)
class DeploymentProblemAdmin(admin.ModelAdmin):
    list_display = ("id", "deployment", "type", "resource_type", "resource_id", "state", "counter", "last_seen_at")
    list_filter = ("state", "type")
    search_fields = ("deployment__name",)


@admin.register(IpReservation)
class IpReservationAdmin(admin.ModelAdmin):
    list_display = ("network_name", "address", "instance", "created_at")
    search_fields = ("address", "network_name")


@admin.register(DeploymentProperty)
class DeploymentPropertyAdmin(admin.ModelAdmin):
    list_display = ("deployment", "name")
    search_fields = ("deployment__name", "name")
