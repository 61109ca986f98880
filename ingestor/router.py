"""Dispatch decoded AMS payloads to their typed upsert handlers."""

from __future__ import annotations

import json
import threading
from collections import Counter
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from ingestor.exceptions import PayloadValidationError
from ingestor.handlers import (
    EntityStore,
    handle_ad,
    handle_ad_group,
    handle_budget_usage,
    handle_campaign,
    handle_sp_conversion,
    handle_sp_traffic,
    handle_target,
)
from ingestor.logging_utils import get_logger
from ingestor.schemas import SnsEnvelope

logger = get_logger(__name__)

Handler = Callable[[dict[str, Any], EntityStore], Any]

# Longest prefixes first so "...-adgroups" never matches "...-ads".
DATASET_HANDLERS: tuple[tuple[str, Handler], ...] = (
    ("ads-campaign-management-campaigns", handle_campaign),
    ("ads-campaign-management-adgroups", handle_ad_group),
    ("ads-campaign-management-targets", handle_target),
    ("ads-campaign-management-ads", handle_ad),
    ("sp-conversion", handle_sp_conversion),
    ("budget-usage", handle_budget_usage),
    ("sp-traffic", handle_sp_traffic),
)

ACKNOWLEDGE_ONLY_ENVELOPES = {"SubscriptionConfirmation", "UnsubscribeConfirmation"}


def resolve_handler(dataset_id: str) -> Handler | None:
    for prefix, handler in DATASET_HANDLERS:
        if dataset_id.startswith(prefix):
            return handler
    return None


def decode_body(body: str | bytes) -> Any | None:
    """
    Decode a queue body into an AMS payload.

    Returns None for SNS envelopes that carry no payload (subscription
    confirmations and unknown types); those are acknowledged without routing.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    if not body or not body.strip():
        raise PayloadValidationError("Empty message body")
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as e:
        raise PayloadValidationError("Message body is not valid JSON", details={"error": str(e)}) from e

    if not isinstance(decoded, dict) or "Type" not in decoded:
        # Raw message delivery: the body is the payload itself.
        return decoded

    try:
        envelope = SnsEnvelope.model_validate(decoded)
    except PydanticValidationError as e:
        raise PayloadValidationError("Malformed SNS envelope", details={"error": str(e)}) from e

    if envelope.Type == "Notification":
        if not envelope.Message:
            raise PayloadValidationError(
                "SNS notification without a Message", details={"sns_message_id": envelope.MessageId}
            )
        try:
            return json.loads(envelope.Message)
        except json.JSONDecodeError as e:
            raise PayloadValidationError(
                "SNS Message is not valid JSON",
                details={"sns_message_id": envelope.MessageId, "error": str(e)},
            ) from e

    if envelope.Type in ACKNOWLEDGE_ONLY_ENVELOPES:
        logger.info(
            "Acknowledging SNS control message",
            extra={"sns_type": envelope.Type, "topic_arn": envelope.TopicArn, "subscribe_url": envelope.SubscribeURL},
        )
    else:
        logger.warning("Acknowledging unknown SNS envelope type", extra={"sns_type": envelope.Type})
    return None


class PayloadRouter:
    """
    Route AMS payloads by their ``dataset_id`` prefix.

    Unknown datasets are logged, counted in ``unknown_datasets`` and treated
    as handled so that upstream schema drift never poison-pills the queue.
    Validation failures propagate so the message stays on the queue.
    """

    def __init__(self, store: EntityStore):
        self.store = store
        self.unknown_datasets: Counter = Counter()
        self._lock = threading.Lock()

    def route(self, payload: Any) -> None:
        if isinstance(payload, list):
            for item in payload:
                self._route_one(item)
            return
        self._route_one(payload)

    def _route_one(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            raise PayloadValidationError(
                "Payload must be a JSON object", details={"type": type(payload).__name__}
            )

        dataset_id = payload.get("dataset_id") or payload.get("datasetId")
        if not isinstance(dataset_id, str) or not dataset_id:
            raise PayloadValidationError("Payload has no dataset_id", details={"keys": sorted(payload)[:20]})

        handler = resolve_handler(dataset_id)
        if handler is None:
            with self._lock:
                self.unknown_datasets[dataset_id] += 1
                seen = self.unknown_datasets[dataset_id]
            logger.warning(
                "Unknown dataset_id; acknowledging without storing",
                extra={"dataset_id": dataset_id, "times_seen": seen},
            )
            return

        handler(payload, self.store)
