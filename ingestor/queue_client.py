"""SQS access for the AMS ingestion worker: receive, delete and queue gauges."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from ingestor.config import IngestorConfig
from ingestor.exceptions import CredentialError, QueueError
from ingestor.logging_utils import get_logger
from ingestor.models import QueueMessage

logger = get_logger(__name__)

CREDENTIAL_ERROR_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
}

STALE_HANDLE_ERROR_CODES = {
    "ReceiptHandleIsInvalid",
    "InvalidParameterValue",
    "AWS.SimpleQueueService.NonExistentQueue",
}

THROUGHPUT_METRICS = {
    "sent": "NumberOfMessagesSent",
    "received": "NumberOfMessagesReceived",
    "deleted": "NumberOfMessagesDeleted",
}

SPARKLINE_MINUTES = 60


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _wrap(e: Exception, operation: str, **details: Any) -> Exception:
    """Translate a boto error into CredentialError or QueueError."""
    details = {"operation": operation, "error": str(e), **details}
    if isinstance(e, (NoCredentialsError, PartialCredentialsError)):
        return CredentialError("AWS credentials are missing or incomplete", details=details)
    if isinstance(e, ClientError) and _error_code(e) in CREDENTIAL_ERROR_CODES:
        return CredentialError("AWS rejected the queue credentials", details=details)
    return QueueError(f"Queue {operation} failed", details=details)


def _floor_minute(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(second=0, microsecond=0)


class SqsQueueClient:
    """Thin wrapper over the boto3 SQS and CloudWatch clients."""

    def __init__(self, config: IngestorConfig, sqs_client=None, cloudwatch_client=None):
        self.config = config
        self.queue_url = config.ams_queue_url
        boto_config = BotoConfig(
            region_name=config.aws_region,
            retries={"max_attempts": 3, "mode": "standard"},
            read_timeout=config.queue_wait_seconds + 10,
        )
        self.sqs = sqs_client or boto3.client("sqs", config=boto_config)
        self.cloudwatch = cloudwatch_client or boto3.client("cloudwatch", config=boto_config)

    def test_connection(self) -> None:
        """Fail fast if the queue is unreachable or the credentials are rejected."""
        try:
            self.sqs.get_queue_attributes(QueueUrl=self.queue_url, AttributeNames=["QueueArn"])
        except (BotoCoreError, ClientError) as e:
            raise _wrap(e, "connectivity check", queue_url=self.queue_url) from e
        logger.info("Queue connection verified", extra={"queue_url": self.queue_url})

    def receive(self, max_wait_seconds: int | None = None) -> list[QueueMessage]:
        """Long-poll for up to ``queue_batch_size`` messages. An empty list means no work."""
        wait = self.config.queue_wait_seconds if max_wait_seconds is None else max_wait_seconds
        try:
            response = self.sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=self.config.queue_batch_size,
                WaitTimeSeconds=wait,
                VisibilityTimeout=self.config.queue_visibility_timeout_seconds,
                AttributeNames=["ApproximateReceiveCount"],
            )
        except (BotoCoreError, ClientError) as e:
            raise _wrap(e, "receive", queue_url=self.queue_url) from e

        messages = [
            QueueMessage(
                body=m.get("Body", ""),
                receipt_handle=m["ReceiptHandle"],
                message_id=m["MessageId"],
                attributes=m.get("Attributes", {}),
            )
            for m in response.get("Messages", [])
        ]
        if messages:
            logger.debug("Received messages", extra={"count": len(messages)})
        return messages

    def delete(self, receipt_handle: str) -> bool:
        """
        Acknowledge a message.

        Returns False (after logging) when the handle is already deleted or has
        expired; the message will simply be redelivered. Other failures raise.
        """
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
            return True
        except ClientError as e:
            if _error_code(e) in STALE_HANDLE_ERROR_CODES:
                logger.warning(
                    "Receipt handle no longer valid; message will be redelivered",
                    extra={"error_code": _error_code(e)},
                )
                return False
            raise _wrap(e, "delete") from e
        except BotoCoreError as e:
            raise _wrap(e, "delete") from e

    def extend_visibility(self, receipt_handle: str, seconds: int) -> None:
        """Push back redelivery of a message that is taking long to process."""
        try:
            self.sqs.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise _wrap(e, "visibility extension", seconds=seconds) from e

    # ------------------------------------------------------------------
    # Gauges (best effort)
    # ------------------------------------------------------------------

    def approximate_depth(self, queue_url: str | None = None) -> int:
        queue_url = queue_url or self.queue_url
        try:
            response = self.sqs.get_queue_attributes(
                QueueUrl=queue_url, AttributeNames=["ApproximateNumberOfMessages"]
            )
            return int(response.get("Attributes", {}).get("ApproximateNumberOfMessages", 0))
        except (BotoCoreError, ClientError, ValueError) as e:
            logger.warning("Failed to read queue depth", extra={"queue_url": queue_url, "error": str(e)})
            return 0

    def oldest_message_age_seconds(self, queue_name: str | None = None) -> int:
        queue_name = queue_name or self.config.queue_name
        end = datetime.now(timezone.utc)
        try:
            response = self.cloudwatch.get_metric_statistics(
                Namespace="AWS/SQS",
                MetricName="ApproximateAgeOfOldestMessage",
                Dimensions=[{"Name": "QueueName", "Value": queue_name}],
                StartTime=end - timedelta(minutes=5),
                EndTime=end,
                Period=60,
                Statistics=["Maximum"],
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("Failed to read oldest message age", extra={"queue_name": queue_name, "error": str(e)})
            return 0

        points = sorted(response.get("Datapoints", []), key=lambda p: p["Timestamp"])
        if not points:
            return 0
        return int(points[-1].get("Maximum", 0))

    def dead_letter_target(self) -> str | None:
        """Resolve the DLQ URL from the main queue's redrive policy, or None."""
        try:
            response = self.sqs.get_queue_attributes(
                QueueUrl=self.queue_url, AttributeNames=["RedrivePolicy"]
            )
        except (BotoCoreError, ClientError) as e:
            raise _wrap(e, "redrive policy lookup") from e

        policy = response.get("Attributes", {}).get("RedrivePolicy")
        if not policy:
            return None
        try:
            target_arn = json.loads(policy).get("deadLetterTargetArn")
        except json.JSONDecodeError:
            logger.warning("Unparseable redrive policy", extra={"redrive_policy": policy})
            return None
        if not target_arn:
            return None

        # arn:aws:sqs:<region>:<account>:<name>
        parts = target_arn.split(":")
        if len(parts) < 6:
            return None
        try:
            return self.sqs.get_queue_url(QueueName=parts[5], QueueOwnerAWSAccountId=parts[4])["QueueUrl"]
        except (BotoCoreError, ClientError) as e:
            raise _wrap(e, "dead letter queue lookup", target_arn=target_arn) from e

    def windowed_counts(
        self,
        metric: str,
        start: datetime,
        end: datetime,
        queue_name: str | None = None,
    ) -> list[int]:
        """
        One-minute buckets of a CloudWatch SQS metric between start and end.

        Minutes with no data point are zero; CloudWatch simply omits them.
        """
        metric_name = THROUGHPUT_METRICS.get(metric, metric)
        queue_name = queue_name or self.config.queue_name
        start = _floor_minute(start)
        end = _floor_minute(end)
        buckets = max(int((end - start).total_seconds() // 60), 0)
        if buckets == 0:
            return []

        try:
            response = self.cloudwatch.get_metric_statistics(
                Namespace="AWS/SQS",
                MetricName=metric_name,
                Dimensions=[{"Name": "QueueName", "Value": queue_name}],
                StartTime=start,
                EndTime=end,
                Period=60,
                Statistics=["Sum"],
            )
        except (BotoCoreError, ClientError) as e:
            raise _wrap(e, "metric query", metric=metric_name, queue_name=queue_name) from e

        counts = [0] * buckets
        for point in response.get("Datapoints", []):
            index = int((_floor_minute(point["Timestamp"]) - start).total_seconds() // 60)
            if 0 <= index < buckets:
                counts[index] += int(point.get("Sum", 0))
        return counts

    def _summary(self, queue_url: str, queue_name: str, start: datetime, end: datetime) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "queue_url": queue_url,
            "approximate_visible": self.approximate_depth(queue_url),
            "oldest_message_age": self.oldest_message_age_seconds(queue_name),
        }
        for label in THROUGHPUT_METRICS:
            counts = self.windowed_counts(label, start, end, queue_name=queue_name)
            summary[f"sparkline_{label}"] = counts
            summary[f"messages_{label}_last_hour"] = sum(counts)
            summary[f"messages_{label}_last_60s"] = counts[-1] if counts else 0
        return summary

    @staticmethod
    def _empty_summary(queue_url: str | None) -> dict[str, Any]:
        summary: dict[str, Any] = {"queue_url": queue_url, "approximate_visible": 0, "oldest_message_age": 0}
        for label in THROUGHPUT_METRICS:
            summary[f"sparkline_{label}"] = [0] * SPARKLINE_MINUTES
            summary[f"messages_{label}_last_hour"] = 0
            summary[f"messages_{label}_last_60s"] = 0
        return summary

    def queue_metrics(self, now: datetime | None = None) -> dict[str, Any]:
        """Depth, age and the last hour of throughput for the main queue and its DLQ."""
        end = _floor_minute(now or datetime.now(timezone.utc))
        start = end - timedelta(minutes=SPARKLINE_MINUTES)

        main = self._summary(self.queue_url, self.config.queue_name, start, end)

        dlq_url = None
        try:
            dlq_url = self.dead_letter_target()
            if dlq_url:
                dlq = self._summary(dlq_url, dlq_url.rsplit("/", 1)[-1], start, end)
            else:
                dlq = self._empty_summary(None)
        except (QueueError, CredentialError) as e:
            logger.error("Failed to read dead letter queue metrics", extra={"dlq_url": dlq_url, "error": str(e)})
            dlq = self._empty_summary(dlq_url)

        return {"main_queue": main, "dlq": dlq}
