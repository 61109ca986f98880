"""Tests for ingestor.router — body decoding, SNS envelopes and dataset dispatch."""

import json

import pytest

from ingestor.exceptions import PayloadValidationError
from ingestor.handlers import handle_ad, handle_ad_group, handle_sp_conversion, handle_sp_traffic
from ingestor.router import PayloadRouter, decode_body, resolve_handler
from tests.fakes import FakeEntityStore


def _sns(message, type_="Notification"):
    return json.dumps({
        "Type": type_,
        "MessageId": "sns-1",
        "TopicArn": "arn:aws:sns:us-east-1:123456789012:ams",
        "Message": message,
    })


# ---------------------------------------------------------------------------
# decode_body
# ---------------------------------------------------------------------------

class TestDecodeBody:
    def test_raw_payload(self, sp_traffic_payload):
        assert decode_body(json.dumps(sp_traffic_payload)) == sp_traffic_payload

    def test_bytes_body(self, sp_traffic_payload):
        assert decode_body(json.dumps(sp_traffic_payload).encode()) == sp_traffic_payload

    def test_sns_notification_unwrapped(self, sp_traffic_payload):
        assert decode_body(_sns(json.dumps(sp_traffic_payload))) == sp_traffic_payload

    def test_subscription_confirmation_acknowledged(self):
        body = json.dumps({
            "Type": "SubscriptionConfirmation",
            "SubscribeURL": "https://sns.example.com/confirm",
        })
        assert decode_body(body) is None

    def test_unknown_envelope_type_acknowledged(self):
        assert decode_body(json.dumps({"Type": "SomethingNew"})) is None

    def test_empty_body_rejected(self):
        with pytest.raises(PayloadValidationError, match="Empty"):
            decode_body("  ")

    def test_invalid_json_rejected(self):
        with pytest.raises(PayloadValidationError, match="not valid JSON"):
            decode_body("{not json")

    def test_notification_without_message_rejected(self):
        with pytest.raises(PayloadValidationError, match="without a Message"):
            decode_body(_sns(None))

    def test_notification_with_invalid_message_rejected(self):
        with pytest.raises(PayloadValidationError, match="SNS Message"):
            decode_body(_sns("{oops"))

    def test_list_payload_passed_through(self, sp_traffic_payload):
        assert decode_body(json.dumps([sp_traffic_payload])) == [sp_traffic_payload]


# ---------------------------------------------------------------------------
# resolve_handler
# ---------------------------------------------------------------------------

class TestResolveHandler:
    @pytest.mark.parametrize(
        "dataset_id,expected",
        [
            ("sp-traffic", handle_sp_traffic),
            ("sp-traffic-v2", handle_sp_traffic),
            ("sp-conversion", handle_sp_conversion),
            ("ads-campaign-management-adgroups", handle_ad_group),
            ("ads-campaign-management-ads", handle_ad),
        ],
    )
    def test_prefix_match(self, dataset_id, expected):
        assert resolve_handler(dataset_id) is expected

    def test_unknown_prefix(self):
        assert resolve_handler("sd-traffic") is None


# ---------------------------------------------------------------------------
# PayloadRouter
# ---------------------------------------------------------------------------

class TestPayloadRouter:
    def test_routes_to_handler(self, sp_traffic_payload):
        store = FakeEntityStore()
        PayloadRouter(store).route(sp_traffic_payload)
        assert len(store.table("ams_sp_traffic")) == 1

    def test_camel_case_dataset_id(self, campaign_payload):
        store = FakeEntityStore()
        PayloadRouter(store).route(campaign_payload)
        assert len(store.table("ams_campaigns")) == 1

    def test_unknown_dataset_counted_not_stored(self):
        store = FakeEntityStore()
        router = PayloadRouter(store)
        router.route({"dataset_id": "sb-traffic", "x": 1})
        router.route({"dataset_id": "sb-traffic", "x": 2})
        assert router.unknown_datasets["sb-traffic"] == 2
        assert store.rows == {}

    def test_list_routes_each_element(self, sp_traffic_payload):
        store = FakeEntityStore()
        second = {**sp_traffic_payload, "idempotency_id": "idem-002"}
        PayloadRouter(store).route([sp_traffic_payload, second])
        assert len(store.table("ams_sp_traffic")) == 2

    def test_missing_dataset_id_rejected(self):
        with pytest.raises(PayloadValidationError, match="dataset_id"):
            PayloadRouter(FakeEntityStore()).route({"idempotency_id": "x"})

    def test_non_object_rejected(self):
        with pytest.raises(PayloadValidationError, match="JSON object"):
            PayloadRouter(FakeEntityStore()).route("sp-traffic")

    def test_handler_error_propagates(self, sp_traffic_payload):
        with pytest.raises(PayloadValidationError):
            PayloadRouter(FakeEntityStore()).route({**sp_traffic_payload, "cost": "free"})
