from .protocol import Notifier
from .log import LoggingNotifier

__all__ = ["Notifier", "LoggingNotifier"]
