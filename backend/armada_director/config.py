from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from django.conf import settings

RESOLUTION_OPTIONS: Dict[str, tuple] = {
    "missing_vm": ("recreate_vm", "delete_vm_reference", "ignore"),
    "unresponsive_agent": ("reboot_vm", "recreate_vm", "delete_vm", "ignore"),
    "disk_detached": ("reattach_disk", "ignore"),
    "out_of_disk": ("ignore",),
    "inactive_disk": ("activate_disk", "delete_disk", "ignore"),
}

DEFAULT_RESOLUTIONS: Dict[str, str] = {
    "missing_vm": "recreate_vm",
    "unresponsive_agent": "recreate_vm",
    "disk_detached": "reattach_disk",
    "out_of_disk": "ignore",
    "inactive_disk": "ignore",
}


@dataclass(frozen=True)
class DirectorConfig:
    name: str = "Armada Director"
    uuid: str = ""
    async_jobs_mode: str = "inprocess"
    jobs_redis_url: str = "redis://redis:6379/0"
    jobs_queue: str = "armada-tasks"
    workers: int = 3
    task_log_root: str = "/tmp/armada/tasks"
    backup_path: str = "/tmp/armada/backup.tgz"
    artifact_root: str = "/tmp/armada/artifacts"
    default_infrastructure: str = "dummy"
    cloud: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    cpi_timeout: float = 600.0
    agent_timeout: float = 30.0
    lock_retry_interval: float = 2.0
    lock_ttl: int = 300
    canaries: int = 1
    max_in_flight: int = 1
    update_watch_time: int = 30000
    dns_enabled: bool = False
    dns_domain_name: str = "armada"
    snapshots_enabled: bool = True
    resurrector_interval: int = 300
    out_of_disk_threshold: int = 90
    resolution_defaults: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_RESOLUTIONS))

    @classmethod
    def from_settings(cls, overrides: Optional[Dict[str, Any]] = None) -> "DirectorConfig":
        raw: Dict[str, Any] = dict(getattr(settings, "ARMADA", {}) or {})
        raw.update(overrides or {})
        dns = raw.pop("dns", None) or {}
        defaults = dict(DEFAULT_RESOLUTIONS)
        for problem_type, resolution in (raw.pop("resolution_defaults", None) or {}).items():
            if resolution in RESOLUTION_OPTIONS.get(problem_type, ()):
                defaults[problem_type] = resolution
        known = set(cls.__dataclass_fields__)
        values = {key: value for key, value in raw.items() if key in known}
        if not values.get("async_jobs_mode"):
            values["async_jobs_mode"] = _default_async_mode()
        config = cls(**values)
        return replace(
            config,
            dns_enabled=bool(dns.get("enabled", config.dns_enabled)),
            dns_domain_name=str(dns.get("domain_name") or config.dns_domain_name),
            resolution_defaults=defaults,
        )

    def cloud_options(self, kind: str) -> Dict[str, Any]:
        return dict(self.cloud.get(kind) or {})

    def default_resolution(self, problem_type: str) -> str:
        return self.resolution_defaults.get(problem_type) or DEFAULT_RESOLUTIONS.get(problem_type, "ignore")


def _default_async_mode() -> str:
    return "inprocess" if os.environ.get("DJANGO_DEBUG", "false").lower() == "true" else "redis"
