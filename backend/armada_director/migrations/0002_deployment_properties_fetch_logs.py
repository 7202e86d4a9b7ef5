import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("armada_director", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="task",
            name="type",
            field=models.CharField(
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
                    ("fetch_logs", "Fetch logs"),
                ],
                max_length=40,
            ),
        ),
        migrations.CreateModel(
            name="DeploymentProperty",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("value", models.TextField(blank=True)),
                (
                    "deployment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="properties",
                        to="armada_director.deployment",
                    ),
                ),
            ],
            options={
                "ordering": ["name"],
                "unique_together": {("deployment", "name")},
            },
        ),
    ]
