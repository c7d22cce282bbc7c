from .protocol import TaskExecutor
from .http import HttpTaskExecutor

__all__ = ["TaskExecutor", "HttpTaskExecutor"]
