import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Task",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "type",
                    models.CharField(
                        choices=[
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
                        ],
                        max_length=40,
                    ),
                ),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("queued", "Queued"),
                            ("processing", "Processing"),
                            ("cancelling", "Cancelling"),
                            ("cancelled", "Cancelled"),
                            ("done", "Done"),
                            ("error", "Error"),
                        ],
                        db_index=True,
                        default="queued",
                        max_length=20,
                    ),
                ),
                ("description", models.CharField(max_length=255)),
                ("deployment_name", models.CharField(blank=True, db_index=True, max_length=200)),
                ("params_json", models.JSONField(blank=True, null=True)),
                ("result", models.TextField(blank=True)),
                ("output", models.CharField(blank=True, max_length=500)),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="director_tasks",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-id"],
            },
        ),
        migrations.CreateModel(
            name="Release",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200, unique=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="ReleaseVersion",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("version", models.CharField(max_length=100)),
                ("commit_hash", models.CharField(default="unknown", max_length=64)),
                ("uncommitted_changes", models.BooleanField(default=False)),
                ("jobs_json", models.JSONField(blank=True, default=list)),
                ("packages_json", models.JSONField(blank=True, default=list)),
                ("fingerprint", models.CharField(db_index=True, max_length=64)),
                ("artifact_ref", models.CharField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "release",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="versions",
                        to="armada_director.release",
                    ),
                ),
            ],
            options={
                "ordering": ["release__name", "id"],
                "unique_together": {("release", "version")},
            },
        ),
        migrations.CreateModel(
            name="Stemcell",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200)),
                ("version", models.CharField(max_length=100)),
                ("cid", models.CharField(max_length=255)),
                ("infrastructure", models.CharField(blank=True, max_length=40)),
                ("sha1", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["name", "version"],
                "unique_together": {("name", "version")},
            },
        ),
        migrations.CreateModel(
            name="Deployment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200, unique=True)),
                ("manifest", models.TextField(blank=True)),
                ("cloud_provider", models.CharField(blank=True, max_length=40)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "release_versions",
                    models.ManyToManyField(
                        blank=True, related_name="deployments", to="armada_director.releaseversion"
                    ),
                ),
                (
                    "stemcells",
                    models.ManyToManyField(blank=True, related_name="deployments", to="armada_director.stemcell"),
                ),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Vm",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("cid", models.CharField(max_length=255)),
                ("agent_id", models.CharField(max_length=64, unique=True)),
                ("env_json", models.JSONField(blank=True, null=True)),
                ("apply_spec_json", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "deployment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="vms",
                        to="armada_director.deployment",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="Instance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("job", models.CharField(max_length=200)),
                ("index", models.PositiveIntegerField()),
                (
                    "state",
                    models.CharField(
                        choices=[("started", "Started"), ("stopped", "Stopped"), ("detached", "Detached")],
                        default="started",
                        max_length=20,
                    ),
                ),
                ("resurrection_paused", models.BooleanField(default=False)),
                ("resource_pool", models.CharField(blank=True, max_length=200)),
                ("vm_config_hash", models.CharField(blank=True, max_length=64)),
                ("job_config_hash", models.CharField(blank=True, max_length=64)),
                ("ip_addresses_json", models.JSONField(blank=True, default=dict)),
                ("dns_records_json", models.JSONField(blank=True, default=list)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "deployment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="instances",
                        to="armada_director.deployment",
                    ),
                ),
                (
                    "vm",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="instance",
                        to="armada_director.vm",
                    ),
                ),
            ],
            options={
                "ordering": ["job", "index"],
                "unique_together": {("deployment", "job", "index")},
            },
        ),
        migrations.CreateModel(
            name="PersistentDisk",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("disk_cid", models.CharField(max_length=255, unique=True)),
                ("size", models.PositiveIntegerField(default=0)),
                ("cloud_properties_json", models.JSONField(blank=True, default=dict)),
                ("active", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "instance",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="persistent_disks",
                        to="armada_director.instance",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("active", True)),
                        fields=("instance",),
                        name="one_active_disk_per_instance",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Snapshot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("snapshot_cid", models.CharField(max_length=255, unique=True)),
                ("clean", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "persistent_disk",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="snapshots",
                        to="armada_director.persistentdisk",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="DeploymentProblem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "resource_type",
                    models.CharField(
                        choices=[("instance", "Instance"), ("vm", "VM"), ("disk", "Persistent disk")],
                        max_length=20,
                    ),
                ),
                ("resource_id", models.BigIntegerField()),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("missing_vm", "Missing VM"),
                            ("unresponsive_agent", "Unresponsive agent"),
                            ("disk_detached", "Disk detached"),
                            ("out_of_disk", "Out of disk"),
                            ("inactive_disk", "Inactive disk"),
                        ],
                        max_length=40,
                    ),
                ),
                (
                    "state",
                    models.CharField(
                        choices=[("open", "Open"), ("resolved", "Resolved")],
                        db_index=True,
                        default="open",
                        max_length=20,
                    ),
                ),
                ("data_json", models.JSONField(blank=True, default=dict)),
                ("resolution", models.CharField(blank=True, max_length=40)),
                ("counter", models.PositiveIntegerField(default=1)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("last_seen_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "deployment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="problems",
                        to="armada_director.deployment",
                    ),
                ),
                (
                    "resolution_task",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="problems",
                        to="armada_director.task",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="IpReservation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("network_name", models.CharField(max_length=200)),
                ("address", models.GenericIPAddressField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "instance",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="ip_reservations",
                        to="armada_director.instance",
                    ),
                ),
            ],
            options={
                "ordering": ["network_name", "address"],
                "unique_together": {("network_name", "address")},
            },
        ),
    ]
