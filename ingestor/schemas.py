"""Pydantic schemas for AMS stream payloads and their SNS envelope."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AmsPayload(BaseModel):
    """Base for AMS payloads. Accepts snake_case or camelCase keys and keeps unknown keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        coerce_numbers_to_str=True,
    )

    dataset_id: str


class SnsEnvelope(BaseModel):
    """SNS wrapper around a queue body (when raw message delivery is off)."""

    model_config = ConfigDict(extra="allow")

    Type: str
    MessageId: str | None = None
    TopicArn: str | None = None
    Message: str | None = None
    SubscribeURL: str | None = None
    Timestamp: str | None = None


# ----------------------------------------------------------------------
# Performance facts
# ----------------------------------------------------------------------


class SpTrafficPayload(AmsPayload):
    idempotency_id: str
    marketplace_id: str
    currency: str
    advertiser_id: str
    campaign_id: str
    ad_group_id: str
    ad_id: str
    keyword_id: str
    keyword_text: str | None = None
    match_type: str | None = None
    placement: str
    time_window_start: datetime
    clicks: int = Field(ge=0)
    impressions: int = Field(ge=0)
    cost: float = Field(ge=0)


class SpConversionPayload(AmsPayload):
    idempotency_id: str
    marketplace_id: str
    currency: str
    advertiser_id: str
    campaign_id: str
    ad_group_id: str
    ad_id: str
    keyword_id: str
    placement: str
    time_window_start: datetime
    attributed_conversions_1d: int | None = Field(default=None, ge=0)
    attributed_conversions_7d: int | None = Field(default=None, ge=0)
    attributed_conversions_14d: int | None = Field(default=None, ge=0)
    attributed_conversions_30d: int | None = Field(default=None, ge=0)
    attributed_conversions_1d_same_sku: int | None = Field(default=None, ge=0)
    attributed_conversions_7d_same_sku: int | None = Field(default=None, ge=0)
    attributed_conversions_14d_same_sku: int | None = Field(default=None, ge=0)
    attributed_conversions_30d_same_sku: int | None = Field(default=None, ge=0)
    attributed_sales_1d: float | None = Field(default=None, ge=0)
    attributed_sales_7d: float | None = Field(default=None, ge=0)
    attributed_sales_14d: float | None = Field(default=None, ge=0)
    attributed_sales_30d: float | None = Field(default=None, ge=0)
    attributed_sales_1d_same_sku: float | None = Field(default=None, ge=0)
    attributed_sales_7d_same_sku: float | None = Field(default=None, ge=0)
    attributed_sales_14d_same_sku: float | None = Field(default=None, ge=0)
    attributed_sales_30d_same_sku: float | None = Field(default=None, ge=0)
    attributed_units_ordered_1d: int | None = Field(default=None, ge=0)
    attributed_units_ordered_7d: int | None = Field(default=None, ge=0)
    attributed_units_ordered_14d: int | None = Field(default=None, ge=0)
    attributed_units_ordered_30d: int | None = Field(default=None, ge=0)
    attributed_units_ordered_1d_same_sku: int | None = Field(default=None, ge=0)
    attributed_units_ordered_7d_same_sku: int | None = Field(default=None, ge=0)
    attributed_units_ordered_14d_same_sku: int | None = Field(default=None, ge=0)
    attributed_units_ordered_30d_same_sku: int | None = Field(default=None, ge=0)


class BudgetUsagePayload(AmsPayload):
    advertiser_id: str
    marketplace_id: str
    budget_scope_id: str
    budget_scope_type: str
    advertising_product_type: str
    budget: float = Field(ge=0)
    budget_usage_percentage: float = Field(ge=0, le=100)
    usage_updated_timestamp: datetime


# ----------------------------------------------------------------------
# Campaign management entities
# ----------------------------------------------------------------------


class CampaignPayload(AmsPayload):
    campaign_id: str
    advertiser_id: str
    marketplace_id: str
    account_id: str
    ad_product: str
    version: int = Field(gt=0)
    name: str
    state: str | None = None
    start_date_time: datetime | None = None
    end_date_time: datetime | None = None
    targeting_settings: str | None = None
    budgets: list[dict[str, Any]] | None = None
    bid_settings: dict[str, Any] | None = None
    tags: list[dict[str, Any]] | None = None


class AdGroupPayload(AmsPayload):
    ad_group_id: str
    campaign_id: str
    ad_product: str
    name: str
    state: str
    advertiser_id: str | None = None
    marketplace_id: str | None = None
    account_id: str | None = None
    version: int | None = None
    default_bid: float | None = None
    bid_settings: dict[str, Any] | None = None


class AdPayload(AmsPayload):
    ad_id: str
    ad_group_id: str | None = None
    campaign_id: str | None = None
    advertiser_id: str | None = None
    marketplace_id: str | None = None
    ad_product: str | None = None
    ad_type: str | None = None
    name: str | None = None
    state: str | None = None
    version: int | None = None
    creative: dict[str, Any] | None = None


class TargetPayload(AmsPayload):
    target_id: str
    ad_group_id: str | None = None
    campaign_id: str | None = None
    advertiser_id: str | None = None
    marketplace_id: str | None = None
    ad_product: str | None = None
    target_type: str | None = None
    target_details: dict[str, Any] | None = None
    negative: bool | None = None
    state: str | None = None
    bid: float | None = None
    version: int | None = None
