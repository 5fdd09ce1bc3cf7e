"""
SQS-backed job queue.

One SQS queue per job name. SQS keeps the receive count, so retry
bookkeeping rides on `ApproximateReceiveCount` plus a few message
attributes stamped at send time; a retry is scheduled by shortening the
message's visibility timeout, a terminal failure deletes the message.
"""
import asyncio
import copy
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from storage_jobs.adapters.queue.base import JobQueue, QueueOptions, SendOptions
from storage_jobs.jobs.models import Job, JobState, JobWithMetadata, utcnow
from storage_jobs.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_VISIBILITY_TIMEOUT = 43200
MAX_DELAY_SECONDS = 900
MAX_RECEIVE_BATCH = 10
MISSING_QUEUE_CODES = ("AWS.SimpleQueueService.NonExistentQueue", "QueueDoesNotExist")


class SQSJobQueue(JobQueue):
    """Handles AWS SQS job queues"""

    def __init__(self, options: QueueOptions, settings: Optional[Settings] = None):
        super().__init__(options)
        settings = settings or get_settings()

        endpoint_url = settings.aws_endpoint_url
        if options.connection_string and options.connection_string.startswith(("http://", "https://")):
            endpoint_url = options.connection_string

        self.sqs = boto3.client(
            "sqs",
            endpoint_url=endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
            config=Config(max_pool_connections=options.max_connections),
        )
        self._queue_urls: Dict[str, str] = {}
        self._leases: Dict[str, Tuple[str, str, JobWithMetadata]] = {}

        logger.info(f"SQSJobQueue initialized")
        logger.info(f"  Endpoint: {endpoint_url}")
        logger.info(f"  Region: {settings.aws_region}")

    async def _open(self) -> None:
        await asyncio.to_thread(self.sqs.list_queues, MaxResults=1)

    async def _close(self) -> None:
        self._leases.clear()
        self.sqs.close()

    async def queue_url(self, name: str) -> str:
        """Resolve the queue URL for `name`, creating the queue on first use."""
        if name in self._queue_urls:
            return self._queue_urls[name]

        try:
            response = await asyncio.to_thread(self.sqs.get_queue_url, QueueName=name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") not in MISSING_QUEUE_CODES:
                raise
            logger.info(f"Creating SQS queue {name}")
            response = await asyncio.to_thread(self.sqs.create_queue, QueueName=name)

        self._queue_urls[name] = response["QueueUrl"]
        return self._queue_urls[name]

    async def send(self, name: str, data: Dict[str, Any], options: Optional[SendOptions] = None) -> Optional[str]:
        # priority and singleton keys have no SQS equivalent and are ignored
        options = options or SendOptions()
        url = await self.queue_url(name)

        job_id = str(uuid.uuid4())
        retry_limit = self.options.retry_limit if options.retry_limit is None else options.retry_limit
        retry_delay = self.options.retry_delay if options.retry_delay is None else options.retry_delay
        retry_backoff = self.options.retry_backoff if options.retry_backoff is None else options.retry_backoff
        expire_in = options.expire_in_seconds or self.options.expire_in_seconds

        response = await asyncio.to_thread(
            self.sqs.send_message,
            QueueUrl=url,
            MessageBody=json.dumps({"id": job_id, "name": name, "data": data}),
            DelaySeconds=min(int(options.start_after_seconds), MAX_DELAY_SECONDS),
            MessageAttributes={
                "retry_limit": {"DataType": "Number", "StringValue": str(retry_limit)},
                "retry_delay": {"DataType": "Number", "StringValue": str(retry_delay)},
                "retry_backoff": {"DataType": "String", "StringValue": "true" if retry_backoff else "false"},
                "expire_in": {"DataType": "Number", "StringValue": str(expire_in)},
            },
        )
        logger.info(f"Job {job_id} added to SQS queue {name} with message ID: {response.get('MessageId')}")
        self._notify()
        return job_id

    async def fetch(self, name: str, batch_size: int = 1, include_metadata: bool = False) -> List[Job]:
        url = await self.queue_url(name)
        response = await asyncio.to_thread(
            self.sqs.receive_message,
            QueueUrl=url,
            MaxNumberOfMessages=min(max(1, batch_size), MAX_RECEIVE_BATCH),
            WaitTimeSeconds=0,
            VisibilityTimeout=min(int(self.options.expire_in_seconds), MAX_VISIBILITY_TIMEOUT),
            AttributeNames=["ApproximateReceiveCount", "SentTimestamp"],
            MessageAttributeNames=["All"],
        )

        leased: List[Job] = []
        for message in response.get("Messages", []):
            try:
                job = self._job_from_message(name, message)
            except (KeyError, ValueError) as e:
                logger.error(f"Dropping malformed message {message.get('MessageId')} on {name}: {e}")
                await asyncio.to_thread(self.sqs.delete_message, QueueUrl=url, ReceiptHandle=message["ReceiptHandle"])
                continue

            self._leases[job.id] = (message["ReceiptHandle"], url, job)
            leased.append(copy.deepcopy(job) if include_metadata else job.to_job())
        return leased

    async def complete(self, name: str, job_id: str, output: Any = None) -> None:
        lease = self._leases.pop(job_id, None)
        if lease is None:
            logger.warning(f"Job {job_id} on {name} is not leased, ignoring completion")
            return
        receipt_handle, url, _ = lease
        await asyncio.to_thread(self.sqs.delete_message, QueueUrl=url, ReceiptHandle=receipt_handle)

    async def fail(self, name: str, job_id: str, error: Optional[BaseException] = None) -> None:
        lease = self._leases.pop(job_id, None)
        if lease is None:
            logger.warning(f"Job {job_id} on {name} is not leased, ignoring failure")
            return
        receipt_handle, url, job = lease

        if job.retry_count < job.retry_limit:
            delay = job.retry_delay * (2 ** job.retry_count) if job.retry_backoff else job.retry_delay
            await asyncio.to_thread(
                self.sqs.change_message_visibility,
                QueueUrl=url,
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=min(int(delay), MAX_VISIBILITY_TIMEOUT),
            )
            logger.info(f"Job {job_id} on {name} retry {job.retry_count + 1}/{job.retry_limit} in {int(delay)}s")
        else:
            await asyncio.to_thread(self.sqs.delete_message, QueueUrl=url, ReceiptHandle=receipt_handle)
            logger.warning(f"Job {job_id} on {name} failed after {job.retry_count} retries: {error}")

    async def get_job_by_id(self, name: str, job_id: str) -> Optional[JobWithMetadata]:
        # SQS has no lookup by id; only jobs leased by this process are known
        lease = self._leases.get(job_id)
        if lease is None or lease[2].name != name:
            return None
        return copy.deepcopy(lease[2])

    def _job_from_message(self, name: str, message: Dict[str, Any]) -> JobWithMetadata:
        body = json.loads(message["Body"])
        attributes = message.get("Attributes", {})
        message_attributes = message.get("MessageAttributes", {})

        def attribute(key: str, default: str) -> str:
            return message_attributes.get(key, {}).get("StringValue", default)

        sent_at = attributes.get("SentTimestamp")
        created_on = (
            datetime.fromtimestamp(int(sent_at) / 1000, tz=timezone.utc) if sent_at else utcnow()
        )

        return JobWithMetadata(
            id=body["id"],
            name=body.get("name", name),
            data=body.get("data") or {},
            state=JobState.ACTIVE,
            retry_count=max(0, int(attributes.get("ApproximateReceiveCount", "1")) - 1),
            retry_limit=int(float(attribute("retry_limit", str(self.options.retry_limit)))),
            retry_delay=float(attribute("retry_delay", str(self.options.retry_delay))),
            retry_backoff=attribute("retry_backoff", "true") == "true",
            created_on=created_on,
            start_after=created_on,
            started_on=utcnow(),
            expire_in=timedelta(seconds=float(attribute("expire_in", str(self.options.expire_in_seconds)))),
        )
