from .base import BaseBackend
from .polling import PollingBackend

__all__ = ["BaseBackend", "PollingBackend"]
