import logging
import time
from typing import Optional

from django.core.cache import cache

logger = logging.getLogger(__name__)


def lock_key(deployment_name: str) -> str:
    return f"armada:lock:deployment:{deployment_name}"


class DeploymentLock:
    """Advisory per-deployment lock kept in the Django cache.

    ``try_acquire`` never waits; the task manager uses it before a task
    starts and leaves the task queued when the deployment is busy.
    ``acquire`` polls until the key is free or the owning task is cancelled.
    The key expires after ``ttl`` seconds unless ``refresh()`` is called, so a
    dead worker cannot hold a deployment forever. Only the owner deletes the key.
    """

    def __init__(self, deployment_name: str, owner: str, ttl: int = 300, token=None, poll_interval: float = 0.5):
        self.deployment_name = deployment_name
        self.owner = str(owner)
        self.ttl = int(ttl)
        self.token = token
        self.poll_interval = poll_interval
        self.key = lock_key(deployment_name)
        self.acquired = False

    def try_acquire(self) -> bool:
        if self.acquired:
            return True
        if cache.add(self.key, self.owner, timeout=self.ttl):
            self.acquired = True
            logger.debug("Acquired lock on deployment %s for %s", self.deployment_name, self.owner)
        return self.acquired

    def acquire(self) -> None:
        waited = False
        while not self.try_acquire():
            if self.token is not None:
                self.token.checkpoint()
            if not waited:
                logger.info("Waiting for lock on deployment %s (held by %s)", self.deployment_name, self.holder())
                waited = True
            time.sleep(self.poll_interval)

    def holder(self) -> Optional[str]:
        return cache.get(self.key)

    def refresh(self) -> None:
        if self.acquired and self.holder() == self.owner:
            cache.touch(self.key, timeout=self.ttl)

    def release(self) -> None:
        if not self.acquired:
            return
        if self.holder() == self.owner:
            cache.delete(self.key)
        self.acquired = False
        logger.debug("Released lock on deployment %s", self.deployment_name)

    def __enter__(self) -> "DeploymentLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def deployment_lock(deployment_name: str, owner, ttl: int = 300, token=None,
                    poll_interval: float = 0.5) -> DeploymentLock:
    return DeploymentLock(deployment_name, owner, ttl=ttl, token=token, poll_interval=poll_interval)
