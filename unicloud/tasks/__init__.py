# Background execution
from unicloud.tasks.runner import BackgroundRunner

__all__ = ["BackgroundRunner"]
