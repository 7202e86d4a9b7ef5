from django.urls import path

from . import director_api

urlpatterns = [
    path("info", director_api.info, name="director-info"),
    path("tasks", director_api.tasks_collection, name="director-tasks"),
    path("tasks/<int:task_id>", director_api.task_detail, name="director-task-detail"),
    path("tasks/<int:task_id>/output", director_api.task_output, name="director-task-output"),
    path("deployments", director_api.deployments_collection, name="director-deployments"),
    path("deployments/<str:name>", director_api.deployment_detail, name="director-deployment-detail"),
    path("deployments/<str:name>/vms", director_api.deployment_vms, name="director-deployment-vms"),
    path("deployments/<str:name>/properties", director_api.deployment_properties, name="director-properties"),
    path(
        "deployments/<str:name>/properties/<str:property_name>",
        director_api.deployment_property,
        name="director-property-detail",
    ),
    path("deployments/<str:name>/jobs/<str:job>", director_api.job_state, name="director-job-state"),
    path(
        "deployments/<str:name>/jobs/<str:job>/<str:index>",
        director_api.instance_detail,
        name="director-instance-detail",
    ),
    path(
        "deployments/<str:name>/jobs/<str:job>/<str:index>/resurrection",
        director_api.instance_resurrection,
        name="director-instance-resurrection",
    ),
    path(
        "deployments/<str:name>/jobs/<str:job>/<str:index>/logs",
        director_api.instance_logs,
        name="director-instance-logs",
    ),
    path("deployments/<str:name>/snapshots", director_api.deployment_snapshots, name="director-snapshots"),
    path(
        "deployments/<str:name>/snapshots/<str:cid>",
        director_api.snapshot_detail,
        name="director-snapshot-detail",
    ),
    path(
        "deployments/<str:name>/jobs/<str:job>/<str:index>/snapshots",
        director_api.deployment_snapshots,
        name="director-instance-snapshots",
    ),
    path("deployments/<str:name>/scans", director_api.deployment_scans, name="director-scans"),
    path("deployments/<str:name>/problems", director_api.deployment_problems, name="director-problems"),
    path("releases", director_api.releases_collection, name="director-releases"),
    path("releases/<str:name>", director_api.release_detail, name="director-release-detail"),
    path("stemcells", director_api.stemcells_collection, name="director-stemcells"),
    path("stemcells/<str:name>/<str:version>", director_api.stemcell_detail, name="director-stemcell-detail"),
    path("backups", director_api.backups, name="director-backups"),
]
