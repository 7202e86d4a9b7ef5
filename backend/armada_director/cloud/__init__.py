from .base import CloudProvider
from .registry import CloudProviderRegistry, Infrastructure, infrastructure_for
from .timed import TimedCloud

__all__ = ["CloudProvider", "CloudProviderRegistry", "Infrastructure", "TimedCloud", "infrastructure_for"]
