import asyncio
import logging
from datetime import datetime, timedelta, timezone

from http_scheduler.backends.polling import PollingBackend
from http_scheduler.config import SchedulerConfig
from http_scheduler.domain.task import Task

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

config = SchedulerConfig.from_env()
backend = PollingBackend.from_config(config)


async def main():
    await backend.start()

    task = await backend.create_task(Task(
        name="Say hello",
        url="https://httpbin.org/post",
        method="POST",
        headers={"Content-Type": "application/json"},
        body={"message": "hello from http-scheduler"},
        scheduled_time=datetime.now(timezone.utc) + timedelta(seconds=5),
        max_retry=config.default_max_retry,
    ))
    print(task.readable_string)

    await asyncio.sleep(10)

    task = await backend.get_task(task.id)
    print(f"Status: {task.status.value}, response: {task.response}")
    for record in (await backend.get_task_history(task.id)).items:
        print(f"Attempt {record.attempt_number}: {record.status.value} "
              f"({record.status_code}, {record.response_time_ms}ms) {record.error or ''}")

    await backend.stop()

if __name__ == "__main__":
    asyncio.run(main())
