import logging
import time

from django.core.management.base import BaseCommand

from armada_director.director import get_director
from armada_director.errors import DirectorError
from armada_director.models import Deployment, Task

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Periodically queue scan_and_fix tasks for every deployment."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
        parser.add_argument("--interval", type=int, help="Seconds between passes (defaults to ARMADA resurrector_interval)")

    def handle(self, *args, **options):
        director = get_director()
        interval = options.get("interval") or director.config.resurrector_interval
        while True:
            queued = self.run_pass(director)
            self.stdout.write(f"Queued {queued} scan_and_fix task(s)")
            if options.get("once"):
                return
            time.sleep(interval)

    def run_pass(self, director) -> int:
        queued = 0
        for name in Deployment.objects.order_by("name").values_list("name", flat=True):
            pending = Task.objects.filter(
                type="scan_and_fix", deployment_name=name, state__in=list(Task.ACTIVE_STATES)
            ).exists()
            if pending:
                logger.info("Skipping %s: a scan_and_fix task is already active", name)
                continue
            try:
                director.scan_and_fix(name)
            except DirectorError as exc:
                logger.warning("Could not queue scan_and_fix for %s: %s", name, exc)
                continue
            queued += 1
        return queued
