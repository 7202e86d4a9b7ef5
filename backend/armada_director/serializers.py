from rest_framework import serializers

from .reconciler import JOB_STATES


class ManifestField(serializers.Field):
    """Accepts a manifest either as YAML text or as an already parsed mapping."""

    def to_internal_value(self, data):
        if isinstance(data, (str, dict)):
            return data
        raise serializers.ValidationError("Expected YAML text or a mapping.")

    def to_representation(self, value):
        return value


class DeployRequestSerializer(serializers.Serializer):
    manifest = ManifestField()
    recreate = serializers.BooleanField(default=False)


class JobStateSerializer(serializers.Serializer):
    state = serializers.ChoiceField(choices=JOB_STATES)


class ResurrectionSerializer(serializers.Serializer):
    resurrection_paused = serializers.BooleanField()


class SnapshotRequestSerializer(serializers.Serializer):
    clean = serializers.BooleanField(default=False)


class SnapshotDeleteSerializer(serializers.Serializer):
    snapshot_cids = serializers.ListField(child=serializers.CharField(), required=False, default=list)


class ScanRequestSerializer(serializers.Serializer):
    jobs = serializers.JSONField(required=False, allow_null=True, default=None)
    fix = serializers.BooleanField(default=False)


class ResolutionsSerializer(serializers.Serializer):
    resolutions = serializers.DictField(child=serializers.CharField(allow_null=True, allow_blank=True))


class ReleaseUploadSerializer(serializers.Serializer):
    manifest = ManifestField()
    artifact_ref = serializers.CharField(required=False, allow_blank=True, default="")
    rebase = serializers.BooleanField(default=False)


class StemcellUploadSerializer(serializers.Serializer):
    name = serializers.CharField()
    version = serializers.CharField()
    artifact_ref = serializers.CharField(required=False, allow_blank=True, default="")
    cloud_properties = serializers.DictField(required=False, default=dict)
    infrastructure = serializers.CharField(required=False, allow_blank=True, default="")


class PropertyCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    value = serializers.CharField(allow_blank=True)


class PropertyValueSerializer(serializers.Serializer):
    value = serializers.CharField(allow_blank=True)


class FetchLogsSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=["job", "agent"], default="job")
    filters = serializers.CharField(required=False, allow_blank=True, default="")
