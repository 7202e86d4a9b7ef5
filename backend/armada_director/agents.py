import io
import logging
import os
import tarfile
import tempfile
import time
import uuid
from typing import Any, Dict, List, Optional

import requests

from .errors import AgentError, AgentTimeout

logger = logging.getLogger(__name__)


class AgentClient:
    """Operations the director drives on the agent running inside each VM."""

    def ping(self) -> str:
        raise NotImplementedError

    def apply(self, spec: Dict[str, Any]) -> None:
        raise NotImplementedError

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def get_state(self) -> Dict[str, Any]:
        raise NotImplementedError

    def mount_disk(self, disk_cid: str) -> None:
        raise NotImplementedError

    def unmount_disk(self, disk_cid: str) -> None:
        raise NotImplementedError

    def list_disk(self) -> List[str]:
        raise NotImplementedError

    def migrate_disk(self, old_disk_cid: str, new_disk_cid: str) -> None:
        raise NotImplementedError

    def fetch_logs(self, log_type: str, filters: Optional[List[str]] = None) -> Dict[str, Any]:
        """Bundle the VM's logs: ``{"blobstore_id": ...}`` or a local ``{"path": ...}`` tarball."""
        raise NotImplementedError


class HttpAgentClient(AgentClient):
    """Talks to an agent over its HTTPS message bus endpoint.

    Long-running methods answer with an ``agent_task_id`` which is polled with
    ``get_task`` until the agent reports a final value.
    """

    def __init__(self, endpoint: str, timeout: float = 30.0, poll_interval: float = 1.0, verify_tls: bool = False):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.verify_tls = verify_tls

    def _send(self, method: str, arguments: Optional[list] = None) -> Any:
        body = {"method": method, "arguments": arguments or [], "reply_to": f"director.{uuid.uuid4().hex}"}
        try:
            resp = requests.post(f"{self.endpoint}/agent", json=body, timeout=self.timeout, verify=self.verify_tls)
        except requests.Timeout as exc:
            raise AgentTimeout(f"agent {method} timed out") from exc
        except requests.RequestException as exc:
            raise AgentError(f"agent {method} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise AgentError(f"agent {method} failed: {resp.status_code}")
        payload = resp.json()
        if payload.get("exception"):
            raise AgentError(str(payload["exception"].get("message") or payload["exception"]))
        return payload.get("value")

    def _run_task(self, method: str, arguments: Optional[list] = None) -> Any:
        value = self._send(method, arguments)
        deadline = time.monotonic() + self.timeout
        while isinstance(value, dict) and value.get("agent_task_id") and value.get("state") == "running":
            if time.monotonic() > deadline:
                raise AgentTimeout(f"agent {method} did not finish in {self.timeout}s")
            time.sleep(self.poll_interval)
            value = self._send("get_task", [value["agent_task_id"]])
        return value

    def ping(self) -> str:
        return self._send("ping")

    def apply(self, spec: Dict[str, Any]) -> None:
        self._run_task("apply", [spec])

    def start(self) -> None:
        self._send("start")

    def stop(self) -> None:
        self._run_task("stop")

    def get_state(self) -> Dict[str, Any]:
        return self._send("get_state", ["full"]) or {}

    def mount_disk(self, disk_cid: str) -> None:
        self._run_task("mount_disk", [disk_cid])

    def unmount_disk(self, disk_cid: str) -> None:
        self._run_task("unmount_disk", [disk_cid])

    def list_disk(self) -> List[str]:
        return list(self._send("list_disk") or [])

    def migrate_disk(self, old_disk_cid: str, new_disk_cid: str) -> None:
        self._run_task("migrate_disk", [old_disk_cid, new_disk_cid])

    def fetch_logs(self, log_type: str, filters: Optional[List[str]] = None) -> Dict[str, Any]:
        value = self._run_task("fetch_logs", [log_type, filters])
        if not isinstance(value, dict) or not value.get("blobstore_id"):
            raise AgentError(f"agent fetch_logs returned no bundle: {value!r}")
        return {"blobstore_id": value["blobstore_id"]}


class DummyAgentClient(AgentClient):
    """Agent answering from the dummy cloud's in-memory VM table."""

    def __init__(self, cloud, agent_id: str):
        self.cloud = cloud
        self.agent_id = agent_id

    def _state(self) -> Dict[str, Any]:
        state = self.cloud.agent_states.get(self.agent_id)
        if state is None or not state.get("responsive", True):
            raise AgentTimeout(f"agent {self.agent_id} is not responding")
        return state

    def ping(self) -> str:
        self._state()
        return "pong"

    def apply(self, spec: Dict[str, Any]) -> None:
        self._state()["spec"] = spec

    def start(self) -> None:
        state = self._state()
        state["job_state"] = state.get("start_state", "running")

    def stop(self) -> None:
        self._state()["job_state"] = "stopped"

    def get_state(self) -> Dict[str, Any]:
        state = self._state()
        return {
            "agent_id": self.agent_id,
            "job_state": state.get("job_state", "stopped"),
            "vm": {"name": state.get("vm_cid")},
            "vitals": {"disk": {"persistent": {"percent": str(state.get("persistent_disk_percent", 0))}}},
        }

    def mount_disk(self, disk_cid: str) -> None:
        disks = self._state().setdefault("disks", [])
        if disk_cid not in disks:
            disks.append(disk_cid)

    def unmount_disk(self, disk_cid: str) -> None:
        disks = self._state().setdefault("disks", [])
        if disk_cid in disks:
            disks.remove(disk_cid)

    def list_disk(self) -> List[str]:
        return list(self._state().get("disks", []))

    def migrate_disk(self, old_disk_cid: str, new_disk_cid: str) -> None:
        self._state()["migrated"] = (old_disk_cid, new_disk_cid)

    def fetch_logs(self, log_type: str, filters: Optional[List[str]] = None) -> Dict[str, Any]:
        state = self._state()
        job = ((state.get("spec") or {}).get("job") or {}).get("name") or "job"
        payload = f"{job} {log_type} logs from agent {self.agent_id}\n".encode("utf-8")
        path = os.path.join(tempfile.mkdtemp(prefix="armada-logs-"), f"{self.agent_id}-{log_type}.tgz")
        with tarfile.open(path, "w:gz") as archive:
            info = tarfile.TarInfo(f"{job}.log")
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))
        return {"path": path}


class AgentClientFactory:
    """Returns the right agent client for a VM given its infrastructure."""

    def __init__(self, cloud_registry, timeout: float = 30.0):
        self.cloud_registry = cloud_registry
        self.timeout = timeout

    def for_vm(self, cloud_provider: str, agent_id: str, env: Optional[Dict[str, Any]] = None) -> AgentClient:
        if cloud_provider == "dummy":
            return DummyAgentClient(self.cloud_registry.get_provider("dummy"), agent_id)
        endpoint = str((env or {}).get("mbus") or "").strip()
        if not endpoint:
            raise AgentError(f"agent {agent_id} has no mbus endpoint")
        return HttpAgentClient(endpoint, timeout=self.timeout)


def persistent_disk_percent(state: Dict[str, Any]) -> int:
    try:
        return int(((state.get("vitals") or {}).get("disk") or {}).get("persistent", {}).get("percent") or 0)
    except (TypeError, ValueError):
        return 0
