import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from ..errors import CloudError, CloudTimeout
from .base import CloudProvider

logger = logging.getLogger(__name__)

TIMED_METHODS = frozenset(
    {
        "create_stemcell",
        "delete_stemcell",
        "create_vm",
        "delete_vm",
        "has_vm",
        "reboot_vm",
        "create_disk",
        "delete_disk",
        "attach_disk",
        "detach_disk",
        "create_snapshot",
        "delete_snapshot",
        "find_by_inventory_path",
        "current_vm_id",
    }
)

# Resources a late create call leaves behind, and how to remove them.
ORPHAN_CLEANUP = {
    "create_vm": "delete_vm",
    "create_disk": "delete_disk",
    "create_snapshot": "delete_snapshot",
    "create_stemcell": "delete_stemcell",
}

_executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="armada-cpi")


class TimedCloud:
    """Proxy that bounds every CPI call by ``timeout`` seconds and logs it.

    A timed-out call raises ``CloudTimeout`` and is not retried. A call still
    waiting for a thread is cancelled; one already running keeps going until
    the provider returns, and whatever a late create call produced is deleted
    since nothing recorded it.
    """

    def __init__(self, provider: CloudProvider, timeout: float, cpi_log: Optional[logging.Logger] = None):
        self.provider = provider
        self.timeout = timeout
        self.cpi_log = cpi_log or logger

    @property
    def provider_type(self) -> str:
        return self.provider.provider_type

    def __getattr__(self, name):
        attr = getattr(self.provider, name)
        if name not in TIMED_METHODS:
            return attr

        def timed(*args, **kwargs):
            return self._invoke(name, attr, args, kwargs)

        return timed

    def _invoke(self, name, method, args, kwargs):
        started = time.monotonic()
        self.cpi_log.info("CPI %s request: %r %r", name, args, kwargs)
        future = _executor.submit(method, *args, **kwargs)
        try:
            result = future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            self.cpi_log.error("CPI %s timed out after %ss", name, self.timeout)
            if not future.cancel():
                future.add_done_callback(functools.partial(self._discard_late_result, name))
            raise CloudTimeout(f"CPI {name} timed out after {self.timeout}s") from exc
        except CloudError as exc:
            self.cpi_log.error("CPI %s failed after %.3fs: %s", name, time.monotonic() - started, exc)
            raise
        except Exception as exc:
            self.cpi_log.error("CPI %s failed after %.3fs: %s", name, time.monotonic() - started, exc)
            raise CloudError(f"CPI {name} failed: {exc}") from exc
        self.cpi_log.info("CPI %s response after %.3fs: %r", name, time.monotonic() - started, result)
        return result

    def _discard_late_result(self, name: str, future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        cid = future.result()
        cleanup = ORPHAN_CLEANUP.get(name)
        if cleanup is None or not cid:
            return
        logger.warning("CPI %s returned %s after timing out, deleting the orphan", name, cid)
        try:
            getattr(self.provider, cleanup)(cid)
        except Exception:
            logger.exception("Could not delete %s left by a timed-out CPI %s", cid, name)
