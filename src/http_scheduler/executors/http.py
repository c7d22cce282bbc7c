import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp

from http_scheduler.domain.execution import ExecutionResult
from http_scheduler.domain.task import HttpMethod, Task
from http_scheduler.errors import ApplicationError, ExecutionError, TransportError
from http_scheduler.executors.protocol import TaskExecutor


def build_headers(task: Task) -> Dict[str, str]:
    """
    User headers with the bearer token, when present, merged on top.
    """
    headers = dict(task.headers)
    if task.token is not None:
        headers["Authorization"] = f"Bearer {task.token.get_secret_value()}"
    return headers


def decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class HttpTaskExecutor(TaskExecutor):
    """
    Task executor making the outbound HTTP request with aiohttp.
    """

    def __init__(self, timeout_seconds: float = 10.0, session: Optional[aiohttp.ClientSession] = None):
        self.timeout_seconds = timeout_seconds
        self._session = session

    async def execute(self, task: Task) -> ExecutionResult:
        """
        Execute the task's HTTP call.

        Transport failures and non-2xx responses are both returned as FAILED results;
        ``response_time_ms`` covers the whole call whatever the outcome.

        Args:
            task (Task): The task to execute.
        """
        start = time.monotonic()
        try:
            status_code, response = await self._send(task)
        except ExecutionError as e:
            return ExecutionResult.failed(str(e), self._elapsed_ms(start), status_code=e.status_code)
        except Exception as e:
            return ExecutionResult.failed(f"unexpected error: {e}", self._elapsed_ms(start))
        return ExecutionResult.completed(response, status_code, self._elapsed_ms(start))

    async def _send(self, task: Task) -> Tuple[int, Any]:
        kwargs: Dict[str, Any] = {
            "method": task.method.value,
            "url": task.url,
            "headers": build_headers(task),
            "timeout": aiohttp.ClientTimeout(total=self.timeout_seconds),
        }
        if task.method != HttpMethod.GET and task.body is not None:
            kwargs["json"] = task.body

        try:
            if self._session is not None:
                return await self._request(self._session, kwargs)
            async with aiohttp.ClientSession() as session:
                return await self._request(session, kwargs)
        except asyncio.TimeoutError:
            raise TransportError(f"request timed out after {self.timeout_seconds:g}s")
        except aiohttp.ClientError as e:
            raise TransportError(str(e) or type(e).__name__)

    @staticmethod
    async def _request(session: aiohttp.ClientSession, kwargs: Dict[str, Any]) -> Tuple[int, Any]:
        async with session.request(**kwargs) as response:
            if not 200 <= response.status < 300:
                raise ApplicationError(response.status)
            return response.status, decode_body(await response.text())

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
