from typing import Optional

import pytest

from storage_jobs.adapters.queue.base import SendOptions
from storage_jobs.adapters.queue.local import LocalJobQueue
from storage_jobs.errors import ConfigurationError, QueueUninitialized
from storage_jobs.jobs.models import Job
from storage_jobs.jobs.tasks import BasePayload, BaseTask


class ResizePayload(BasePayload):
    width: int
    format: Optional[str] = None


class ResizeTask(BaseTask):
    queue_name = "resize"
    slow_retry_queue_name = "resize-slow"
    send_options = SendOptions(priority=5, retry_limit=2)
    slow_retry_send_options = SendOptions(retry_limit=7)
    payload_model = ResizePayload


class PlainTask(BaseTask):
    queue_name = "plain"


async def test_send_uses_task_options(local_queue: LocalJobQueue):
    job_id = await ResizeTask.send(ResizePayload(width=100, tenant_ref="t1"), queue=local_queue)

    record = await local_queue.get_job_by_id("resize", job_id)
    assert record.priority == 5
    assert record.retry_limit == 2
    # unset optional fields are not serialized
    assert record.data == {"width": 100, "tenant_ref": "t1"}


async def test_send_slow_retry_queue(local_queue: LocalJobQueue):
    job_id = await ResizeTask.send_slow_retry_queue({"width": 10}, queue=local_queue)

    record = await local_queue.get_job_by_id("resize-slow", job_id)
    assert record.retry_limit == 7
    assert record.data == {"width": 10}


async def test_send_slow_retry_queue_without_slow_queue(local_queue: LocalJobQueue):
    assert not PlainTask.with_slow_retry_queue()

    with pytest.raises(ConfigurationError):
        await PlainTask.send_slow_retry_queue({}, queue=local_queue)


async def test_send_without_started_dispatcher():
    with pytest.raises(QueueUninitialized):
        await PlainTask.send({})


def test_parse_payload_keeps_extra_fields():
    payload = ResizeTask.parse_payload(Job(id="1", name="resize", data={"width": 3, "request_id": "r", "extra": 1}))

    assert payload.width == 3
    assert payload.request_id == "r"
    assert payload.model_dump()["extra"] == 1


def test_worker_options_per_queue():
    assert ResizeTask.get_worker_options() is ResizeTask.worker_options
    assert ResizeTask.get_worker_options(slow=True) is ResizeTask.slow_retry_worker_options


async def test_base_handle_is_abstract():
    with pytest.raises(NotImplementedError):
        await PlainTask.handle(Job(id="1", name="plain", data={}))
