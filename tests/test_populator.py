"""
test_populator.py - Core Controller: scan, apply, sheet sync, selection and license commands

Delegated work is answered by the ScriptedLink fixture (see conftest.py).
"""

import asyncio
import hashlib
import json
from pathlib import Path

import pytest

from delegate_communicator import DelegateKind
from host_document import HostDocument
from license_guard import DAILY_LIMIT
from populator import GENERATION_FAILED_VALUE, solid_fill

PNG_HASH = hashlib.sha1(b"\x89PNG\r\n\x1a\nfake-image-body").hexdigest()

ALL_ASSIGNMENTS = [
    {"layer_name": "%name", "data_type_id": "name"},
    {"layer_name": "%avatar", "data_type_id": "avatar"},
    {"layer_name": "%price", "data_type_id": "currency"},
]


async def _command(controller, message_type, payload=None):
    message = {"type": message_type}
    if payload is not None:
        message["payload"] = payload
    await controller.handle_raw(json.dumps(message))
    await controller.wait_idle()


async def _scan_and_apply(controller, assignments):
    await _command(controller, "scan-layers")
    await _command(controller, "apply-data", {"mappings": assignments})


# =============================================================================
# Scan
# =============================================================================

class TestScanLayers:
    @pytest.mark.asyncio
    async def test_reports_mappings(self, controller, link):
        await _command(controller, "scan-layers")

        payload = link.last("layers-scanned")["payload"]
        assert [(m["layer_name"], m["count"]) for m in payload["mappings"]] == [
            ("%name", 2), ("%avatar", 2), ("%price", 1),
        ]
        assert payload["mappings"][0]["layer_type"] == "TEXT"

    @pytest.mark.asyncio
    async def test_saved_configuration_is_applied(self, controller, link):
        controller.config.save("%name", "name")

        await _command(controller, "scan-layers")

        first = link.last("layers-scanned")["payload"]["mappings"][0]
        assert first["data_type_id"] == "name"
        assert first["is_pre_configured"] is True
        assert link.last("layers-scanned")["payload"]["saved_configurations"] == {"%name": "name"}

    @pytest.mark.asyncio
    async def test_empty_selection(self, controller, document, link):
        document.select([])

        await _command(controller, "scan-layers")

        assert link.last("error")["payload"]["message"] == "Please select at least one layer"
        assert link.of_type("layers-scanned") == []

    @pytest.mark.asyncio
    async def test_remove_mapping(self, controller, link):
        await _command(controller, "scan-layers")
        await _command(controller, "remove-mapping", {"layer_name": "%avatar"})

        assert [m.key for m in controller.mappings] == ["%name", "%price"]
        assert link.last("mapping-removed")["payload"] == {"layer_name": "%avatar"}

    @pytest.mark.asyncio
    async def test_get_data_types(self, controller, link):
        await _command(controller, "get-data-types")

        categories = link.last("data-types")["payload"]["categories"]
        assert {"text", "number", "image", "color"} <= set(categories)
        assert any(t["id"] == "name" for t in categories["text"])


# =============================================================================
# Apply
# =============================================================================

class TestApplyData:
    @pytest.mark.asyncio
    async def test_populates_every_mapped_layer(self, controller, document, guard, link):
        await _scan_and_apply(controller, ALL_ASSIGNMENTS)

        assert document.find_node("1:2").characters == "name-0"
        assert document.find_node("2:2").characters == "name-1"
        assert document.find_node("1:5").characters == "currency-0"
        assert document.find_node("1:6").characters == "unchanged"
        for rect_id in ("1:3", "2:3"):
            assert document.find_node(rect_id).fills == [{"type": "IMAGE", "scale_mode": "FILL", "image_hash": PNG_HASH}]
        assert PNG_HASH in document.images

        applied = link.last("data-applied")["payload"]
        assert (applied["applied"], applied["failed"], applied["total"]) == (5, 0, 5)
        assert applied["license"]["remaining_uses"] == DAILY_LIMIT - 1
        assert guard.remaining_daily_uses() == DAILY_LIMIT - 1

    @pytest.mark.asyncio
    async def test_requests_one_batch_per_mapping(self, controller, link):
        await _scan_and_apply(controller, ALL_ASSIGNMENTS)

        requests = link.of_type("generate-data")
        assert sorted((r["payload"]["layer_name"], r["payload"]["count"]) for r in requests) == [
            ("%avatar", 2), ("%name", 2), ("%price", 1),
        ]
        assert len(link.of_type("load-image")) == 2

    @pytest.mark.asyncio
    async def test_progress_updates(self, controller, link):
        await _scan_and_apply(controller, ALL_ASSIGNMENTS)

        progress = [m["payload"] for m in link.of_type("progress-update")]
        assert [p["current"] for p in progress] == [1, 2, 3, 4, 5]
        assert all(p["total"] == 5 for p in progress)
        assert progress[0]["node_id"] == "1:2"

    @pytest.mark.asyncio
    async def test_configuration_is_saved_and_mappings_discarded(self, controller):
        assignments = [
            {"layer_name": "%name", "data_type_id": "name"},
            {"layer_name": "%price", "data_type_id": "currency", "options": {"symbol": "€"}},
        ]
        await _scan_and_apply(controller, assignments)

        assert controller.config.load_saved() == {"%name": "name", "%price": "currency"}
        assert controller.config.options_for("%price") == {"symbol": "€"}
        assert controller.mappings == []

    @pytest.mark.asyncio
    async def test_options_are_forwarded(self, controller, link):
        await _command(controller, "store-integer-settings", {"settings": {"%price": {"min": 10, "max": 20}}})
        await _scan_and_apply(controller, [
            {"layer_name": "%price", "data_type_id": "integer"},
            {"layer_name": "%name", "data_type_id": "lorem", "options": {"words": 2}},
        ])

        by_layer = {r["payload"]["layer_name"]: r["payload"] for r in link.of_type("generate-data")}
        assert by_layer["%price"]["options"] == {"min": 10, "max": 20}
        assert by_layer["%name"]["options"] == {"words": 2}

    @pytest.mark.asyncio
    async def test_short_batches_reuse_the_first_value(self, controller, document, link):
        link.generated["name"] = ["Only One"]

        await _scan_and_apply(controller, [{"layer_name": "%name", "data_type_id": "name"}])

        assert document.find_node("1:2").characters == "Only One"
        assert document.find_node("2:2").characters == "Only One"

    @pytest.mark.asyncio
    async def test_generation_error_uses_fallback_text(self, controller, document, link):
        link.generation_errors["name"] = {"code": "delegate_failure", "message": "boom"}

        await _scan_and_apply(controller, [{"layer_name": "%name", "data_type_id": "name"}])

        assert document.find_node("1:2").characters == GENERATION_FAILED_VALUE
        assert link.last("data-applied")["payload"]["failed"] == 0

    @pytest.mark.asyncio
    async def test_generation_timeout_uses_fallback_text(self, make_controller, document, link):
        controller = make_controller(timeouts={DelegateKind.GENERATE_DATA: 0.01})
        link.silent.add("generate-data")

        await _scan_and_apply(controller, [{"layer_name": "%name", "data_type_id": "name"}])

        assert document.find_node("2:2").characters == GENERATION_FAILED_VALUE
        assert controller.communicator.pending_requests == {}

    @pytest.mark.asyncio
    async def test_failed_image_renames_layer(self, controller, document, link):
        link.broken_images.add("avatar-1")

        await _scan_and_apply(controller, [{"layer_name": "%avatar", "data_type_id": "avatar"}])

        assert document.find_node("1:3").fills[0]["type"] == "IMAGE"
        failed = document.find_node("2:3")
        assert failed.fills == []
        assert failed.name == "Image failed: avatar-1"
        applied = link.last("data-applied")["payload"]
        assert (applied["applied"], applied["failed"]) == (1, 1)

    @pytest.mark.asyncio
    async def test_image_timeout_renames_layer(self, make_controller, document, link):
        controller = make_controller(timeouts={DelegateKind.LOAD_IMAGE: 0.01})
        link.silent.add("load-image")

        await _scan_and_apply(controller, [{"layer_name": "%avatar", "data_type_id": "avatar"}])

        assert document.find_node("1:3").name == "Image failed: avatar-0"

    @pytest.mark.asyncio
    async def test_node_failure_does_not_stop_the_batch(self, controller, document, link):
        document.find_node("1:2").locked = True

        await _scan_and_apply(controller, [{"layer_name": "%name", "data_type_id": "name"}])

        locked = document.find_node("1:2")
        assert locked.characters == "Name"
        assert locked.name == "name: name-0"
        assert document.find_node("2:2").characters == "name-1"
        assert link.last("data-applied")["payload"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_color_types_fill_shapes(self, controller, document, link):
        link.generated["hex_color"] = ["#ff0000", "#00ff00"]

        await _scan_and_apply(controller, [{"layer_name": "%avatar", "data_type_id": "hex_color"}])

        assert document.find_node("1:3").fills == [{"type": "SOLID", "color": {"r": 1.0, "g": 0.0, "b": 0.0}}]
        assert document.find_node("2:3").fills == [{"type": "SOLID", "color": {"r": 0.0, "g": 1.0, "b": 0.0}}]

    @pytest.mark.asyncio
    async def test_blocked_when_quota_exhausted(self, controller, document, guard, link):
        for _ in range(DAILY_LIMIT):
            guard.increment_usage()

        await _scan_and_apply(controller, ALL_ASSIGNMENTS)

        blocked = link.last("blocked")["payload"]
        assert blocked["can_use"] is False
        assert blocked["remaining_uses"] == 0
        assert document.find_node("1:2").characters == "Name"
        assert link.of_type("generate-data") == []
        assert link.of_type("data-applied") == []

    @pytest.mark.asyncio
    async def test_apply_before_scan(self, controller, link):
        await _command(controller, "apply-data", {"mappings": ALL_ASSIGNMENTS})
        assert link.last("error")["payload"]["message"] == "Scan layers before applying data."

    @pytest.mark.asyncio
    async def test_apply_without_types(self, controller, guard, link):
        await _scan_and_apply(controller, [])

        assert "assign data types" in link.last("error")["payload"]["message"]
        assert guard.remaining_daily_uses() == DAILY_LIMIT

    @pytest.mark.asyncio
    async def test_document_is_saved(self, make_controller, tmp_path: Path):
        path = tmp_path / "doc.json"
        controller = make_controller(document_path=path)

        await _scan_and_apply(controller, [{"layer_name": "%name", "data_type_id": "name"}])

        assert HostDocument.load(path).find_node("1:2").characters == "name-0"

    @pytest.mark.asyncio
    async def test_saved_document_keeps_image_fills(self, make_controller, tmp_path: Path):
        path = tmp_path / "doc.json"
        controller = make_controller(document_path=path)

        await _scan_and_apply(controller, [{"layer_name": "%avatar", "data_type_id": "avatar"}])

        saved = HostDocument.load(path)
        assert saved.find_node("1:3").fills[0]["image_hash"] == PNG_HASH
        assert saved.images[PNG_HASH] == b"\x89PNG\r\n\x1a\nfake-image-body"

    @pytest.mark.asyncio
    async def test_frames_take_image_values_as_names(self, controller, document, link):
        await _scan_and_apply(controller, [{"layer_name": "%price", "data_type_id": "avatar"}])

        frame = document.find_node("1:4")
        assert frame.fills == []
        assert frame.name == "avatar-0"
        assert link.of_type("load-image") == []


# =============================================================================
# Configuration commands
# =============================================================================

class TestConfiguration:
    @pytest.mark.asyncio
    async def test_integer_settings_round_trip(self, controller, link):
        await _command(controller, "store-integer-settings", {"settings": {"%age": {"min": 18, "max": 65}}})
        await _command(controller, "load-integer-settings")

        assert link.last("integer-settings-loaded")["payload"] == {"settings": {"%age": {"min": 18, "max": 65}}}

    @pytest.mark.asyncio
    async def test_save_detailed_config_updates_scanned_mapping(self, controller, link):
        await _command(controller, "scan-layers")
        await _command(controller, "save-detailed-config", {
            "layer_name": "%price", "data_type_id": "currency", "options": {"symbol": "£"},
        })

        assert controller.mappings[2].data_type_id == "currency"
        assert controller.config.options_for("%price") == {"symbol": "£"}
        assert link.last("detailed-config-saved")["payload"]["layer_name"] == "%price"

    @pytest.mark.asyncio
    async def test_remove_configuration(self, controller, link):
        controller.config.save("%name", "name")

        await _command(controller, "remove-configuration", {"layer_name": "%name"})

        assert link.last("configuration-removed")["payload"] == {"layer_name": "%name", "removed": True}
        assert controller.config.load_saved() == {}


# =============================================================================
# Google Sheet sync
# =============================================================================

SHEET = {
    "url": "https://docs.google.com/spreadsheets/d/sheet1/edit",
    "headers": ["Name", "Price", "Avatar"],
    "rows": [
        ["Ada", "$5", "https://picsum.photos/1"],
        ["Grace", "$7", "https://picsum.photos/2"],
    ],
}


class TestSheetSync:
    @pytest.mark.asyncio
    async def test_sync_auto_matches_columns(self, controller, link):
        await _command(controller, "sync-google-sheet", SHEET)

        synced = link.last("sheet-synced")["payload"]
        assert synced["row_count"] == 2
        assert synced["mappings"] == {"%name": "Name", "%price": "Price", "%avatar": "Avatar"}
        assert controller.config.load_sheet_snapshot().rows == SHEET["rows"]

    @pytest.mark.asyncio
    async def test_apply_sheet_data(self, controller, document, guard, link):
        await _command(controller, "sync-google-sheet", SHEET)
        await _command(controller, "apply-sheet-data", {"mappings": {}})

        assert document.find_node("1:2").characters == "Ada"
        assert document.find_node("2:2").characters == "Grace"
        assert document.find_node("1:5").characters == "$5"
        assert document.find_node("2:3").fills[0]["type"] == "IMAGE"
        assert [r["payload"]["url"] for r in link.of_type("load-image")] == SHEET["rows"][0][2:] + SHEET["rows"][1][2:]
        assert link.last("data-applied")["payload"]["total"] == 5
        assert guard.remaining_daily_uses() == DAILY_LIMIT - 1

    @pytest.mark.asyncio
    async def test_rows_cycle_when_layers_outnumber_rows(self, controller, document):
        await _command(controller, "sync-google-sheet", {**SHEET, "rows": [["Solo", "$1", ""]]})
        await _command(controller, "apply-sheet-data", {"mappings": {"%name": "Name"}})

        assert document.find_node("1:2").characters == "Solo"
        assert document.find_node("2:2").characters == "Solo"

    @pytest.mark.asyncio
    async def test_unknown_column(self, controller, link):
        await _command(controller, "sync-google-sheet", SHEET)
        await _command(controller, "apply-sheet-data", {"mappings": {"%name": "Surname"}})

        assert "Surname" in link.last("error")["payload"]["message"]

    @pytest.mark.asyncio
    async def test_apply_without_sync(self, controller, link):
        await _command(controller, "apply-sheet-data", {"mappings": {}})
        assert link.last("error")["payload"]["message"] == "No synced sheet data. Sync a Google Sheet first."

    @pytest.mark.asyncio
    async def test_clear_sync_data(self, controller, link):
        await _command(controller, "sync-google-sheet", SHEET)
        await _command(controller, "clear-sync-data")

        assert controller.config.load_sheet_snapshot() is None
        assert link.of_type("sync-data-cleared")


# =============================================================================
# Selection and license commands
# =============================================================================

class TestSelectionAndLicense:
    @pytest.mark.asyncio
    async def test_selection_state(self, controller, link):
        await _command(controller, "get-selection-state")
        assert link.last("selection-state")["payload"] == {"count": 2, "has_selection": True, "marker_count": 5}

    @pytest.mark.asyncio
    async def test_selection_changed(self, controller, link):
        await controller.selection_changed(["2:1"])
        assert link.last("selection-changed")["payload"] == {"count": 1, "has_selection": True, "marker_count": 2}

    @pytest.mark.asyncio
    async def test_validate_license(self, controller, link):
        link.license_response = {"success": True, "uses": 4, "purchase": {}}

        await _command(controller, "validate-license", {"license_key": "ABCDEF01-23456789-ABCDEF01-23456789"})

        validated = link.last("license-validated")["payload"]
        assert validated["success"] is True
        assert validated["status"]["is_licensed"] is True
        assert validated["status"]["remaining_activations"] == 6

    @pytest.mark.asyncio
    async def test_license_status_and_clear(self, controller, guard, link):
        guard.increment_usage()
        await _command(controller, "get-license-status")
        assert link.last("license-status")["payload"]["remaining_uses"] == DAILY_LIMIT - 1

        await _command(controller, "clear-license-status")
        assert link.last("license-status")["payload"]["is_licensed"] is False


# =============================================================================
# Protocol
# =============================================================================

class TestProtocol:
    @pytest.mark.asyncio
    async def test_unsupported_message(self, controller, link):
        await controller.handle_raw('{"type": "delete-everything"}')
        assert link.last("error")["payload"]["message"].startswith("Unsupported message:")

    @pytest.mark.asyncio
    async def test_close_abandons_pending_requests(self, make_controller, link):
        controller = make_controller()
        link.silent.add("generate-data")
        await _command(controller, "scan-layers")
        await controller.handle_raw(json.dumps({
            "type": "apply-data",
            "payload": {"mappings": [{"layer_name": "%name", "data_type_id": "name"}]},
        }))
        while not controller.communicator.pending_requests:
            await asyncio.sleep(0)

        controller.close()
        await controller.wait_idle()

        assert controller.communicator.pending_requests == {}
        assert link.of_type("data-applied") == []
        assert link.of_type("error") == []

    @pytest.mark.asyncio
    async def test_reconnect_reports_lost_connection(self, controller, link, recording_link):
        link.silent.add("generate-data")
        await _command(controller, "scan-layers")
        await controller.handle_raw(json.dumps({
            "type": "apply-data",
            "payload": {"mappings": [{"layer_name": "%name", "data_type_id": "name"}]},
        }))
        while not controller.communicator.pending_requests:
            await asyncio.sleep(0)

        controller.attach(recording_link)
        await controller.wait_idle()

        assert recording_link.last("error")["payload"]["message"] == "Connection lost, please retry"
        assert recording_link.of_type("data-applied") == []


class TestSolidFill:
    def test_hex_and_rgb(self):
        assert solid_fill("#336699")["color"] == {"r": 0.2, "g": 0.4, "b": 0.6}
        assert solid_fill("rgb(255, 0, 0)")["color"] == {"r": 1.0, "g": 0.0, "b": 0.0}
        assert solid_fill("rgba(0,0,255,0.5)")["color"] == {"r": 0.0, "g": 0.0, "b": 1.0}

    @pytest.mark.parametrize("value", ["red", "#12345", "rgb(300, 0, 0)"])
    def test_rejects_other_values(self, value):
        with pytest.raises(ValueError):
            solid_fill(value)
