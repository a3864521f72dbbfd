"""
test_plugin_messages.py - closed message unions on both sides of the boundary
"""

import json

import pytest

from plugin_errors import ProtocolError
from plugin_messages import (
    ApplyData,
    DataApplied,
    DataGenerated,
    GenerateData,
    ImageLoaded,
    ScanLayers,
    StoreIntegerSettings,
    error_message,
    parse_core_message,
    parse_delegate_message,
)


class TestCoreInbound:
    def test_parses_command_from_json_text(self):
        message = parse_core_message('{"type": "scan-layers"}')
        assert isinstance(message, ScanLayers)

    def test_parses_apply_data_payload(self):
        message = parse_core_message({
            "type": "apply-data",
            "payload": {"mappings": [{"layer_name": "%price", "data_type_id": "currency", "options": {"symbol": "€"}}]},
        })

        assert isinstance(message, ApplyData)
        assignment = message.payload.mappings[0]
        assert assignment.layer_name == "%price"
        assert assignment.options == {"symbol": "€"}

    def test_parses_delegate_responses(self):
        generated = parse_core_message({"type": "data-generated", "id": "r1", "data": ["a"]})
        image = parse_core_message(b'{"type": "image-loaded", "id": "r2"}')

        assert isinstance(generated, DataGenerated) and generated.data == ["a"]
        assert isinstance(image, ImageLoaded) and image.data is None

    def test_routing_metadata_is_ignored(self):
        message = parse_core_message({"type": "scan-layers", "channel": "c1", "sender": "ui"})
        assert isinstance(message, ScanLayers)

    def test_integer_range_order_is_enforced(self):
        with pytest.raises(ProtocolError):
            parse_core_message({
                "type": "store-integer-settings",
                "payload": {"settings": {"%age": {"min": 90, "max": 18}}},
            })

    def test_integer_range_defaults(self):
        message = parse_core_message({"type": "store-integer-settings", "payload": {"settings": {"%age": {}}}})
        assert isinstance(message, StoreIntegerSettings)
        assert message.payload.settings["%age"].model_dump() == {"min": 1, "max": 1000}


class TestRejections:
    @pytest.mark.parametrize("raw", [
        '{"type": "format-disk"}',
        '{"payload": {}}',
        '{"type": "apply-data"}',
        '{"type": "apply-data", "payload": {"mappings": "all"}}',
        '{"type": "data-generated", "data": ["missing id"]}',
    ])
    def test_unknown_or_malformed_messages_raise(self, raw):
        with pytest.raises(ProtocolError):
            parse_core_message(raw)

    def test_invalid_json(self):
        with pytest.raises(ProtocolError, match="not valid JSON"):
            parse_core_message("{oops")

    def test_non_object(self):
        with pytest.raises(ProtocolError, match="JSON object"):
            parse_core_message("[1, 2, 3]")

    def test_validation_errors_are_reported(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_core_message({"type": "remove-mapping", "payload": {}})
        assert exc_info.value.details["errors"]

    def test_delegate_side_rejects_ui_commands(self):
        with pytest.raises(ProtocolError):
            parse_delegate_message({"type": "scan-layers"})

    def test_negative_count_is_rejected(self):
        with pytest.raises(ProtocolError):
            parse_delegate_message({"type": "generate-data", "id": "x", "payload": {"data_type_id": "name", "count": -1}})


class TestDelegateInbound:
    def test_parses_delegated_request(self):
        message = parse_delegate_message({
            "type": "generate-data",
            "id": "r1",
            "payload": {"data_type_id": "integer", "count": 2, "options": {"min": 1, "max": 5}},
        })
        assert isinstance(message, GenerateData)
        assert message.payload.count == 2

    def test_notifications_round_trip_through_encode(self):
        sent = DataApplied(payload={"applied": 3, "failed": 0})
        parsed = parse_delegate_message(sent.encode())

        assert isinstance(parsed, DataApplied)
        assert parsed.payload == {"applied": 3, "failed": 0}

    def test_error_message_shape(self):
        encoded = json.loads(error_message("Please select at least one layer").encode())
        assert encoded == {"type": "error", "payload": {"message": "Please select at least one layer"}}

        with_details = json.loads(error_message("Unsupported message", errors=["x"]).encode())
        assert with_details["payload"]["details"] == {"errors": ["x"]}
