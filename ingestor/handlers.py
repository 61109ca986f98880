"""Typed upsert handlers, one per AMS dataset."""

from __future__ import annotations

from typing import Any, Protocol, Sequence

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ingestor.exceptions import PayloadValidationError
from ingestor.logging_utils import get_logger
from ingestor.schemas import (
    AdGroupPayload,
    AdPayload,
    BudgetUsagePayload,
    CampaignPayload,
    SpConversionPayload,
    SpTrafficPayload,
    TargetPayload,
)

logger = get_logger(__name__)


class EntityStore(Protocol):
    def upsert(self, table: str, key_columns: Sequence[str], record: dict[str, Any]) -> None: ...


def _validate(schema: type[BaseModel], payload: dict[str, Any]) -> BaseModel:
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        raise PayloadValidationError(
            f"Payload failed {schema.__name__} validation",
            details={
                "dataset_id": payload.get("dataset_id") or payload.get("datasetId"),
                "errors": e.errors(include_url=False, include_context=False),
            },
        ) from e


def _record(model: BaseModel, payload: dict[str, Any]) -> dict[str, Any]:
    """Declared fields become columns; the full payload is kept alongside as JSON."""
    record = {name: getattr(model, name) for name in type(model).model_fields}
    record["raw_payload"] = payload
    return record


def _upsert(
    schema: type[BaseModel],
    table: str,
    key_columns: Sequence[str],
    payload: dict[str, Any],
    store: EntityStore,
) -> dict[str, Any]:
    model = _validate(schema, payload)
    record = _record(model, payload)
    store.upsert(table, key_columns, record)
    logger.debug(
        "Upserted AMS record",
        extra={"table": table, "key": {k: str(record[k]) for k in key_columns}},
    )
    return record


def handle_sp_traffic(payload: dict[str, Any], store: EntityStore) -> dict[str, Any]:
    return _upsert(SpTrafficPayload, "ams_sp_traffic", ("idempotency_id",), payload, store)


def handle_sp_conversion(payload: dict[str, Any], store: EntityStore) -> dict[str, Any]:
    return _upsert(SpConversionPayload, "ams_sp_conversion", ("idempotency_id",), payload, store)


def handle_budget_usage(payload: dict[str, Any], store: EntityStore) -> dict[str, Any]:
    """Budget usage snapshots have no idempotency id; the snapshot timestamp is part of the key."""
    return _upsert(
        BudgetUsagePayload,
        "ams_budget_usage",
        ("advertiser_id", "marketplace_id", "budget_scope_id", "usage_updated_timestamp"),
        payload,
        store,
    )


def handle_campaign(payload: dict[str, Any], store: EntityStore) -> dict[str, Any]:
    return _upsert(CampaignPayload, "ams_campaigns", ("campaign_id", "version"), payload, store)


def handle_ad_group(payload: dict[str, Any], store: EntityStore) -> dict[str, Any]:
    return _upsert(AdGroupPayload, "ams_ad_groups", ("ad_group_id", "campaign_id"), payload, store)


def handle_ad(payload: dict[str, Any], store: EntityStore) -> dict[str, Any]:
    return _upsert(AdPayload, "ams_ads", ("ad_id",), payload, store)


def handle_target(payload: dict[str, Any], store: EntityStore) -> dict[str, Any]:
    return _upsert(TargetPayload, "ams_targets", ("target_id",), payload, store)
