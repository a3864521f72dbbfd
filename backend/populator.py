"""
Populator - the Core Controller

Owns the document, the current layer mappings, the persisted configuration
and the license guard. It never touches the network: generated values and
image bytes are requested from the Delegate Surface through the
DelegateCommunicator.

User commands are executed one at a time in background tasks so that the
receive loop stays free to deliver delegate responses while a command is
waiting on them.
"""

import asyncio
import base64
import binascii
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from data_types import data_types_by_category, is_color_type, is_image_type
from delegate_communicator import DelegateCommunicator, DelegateError, DelegateKind
from host_document import TEXT, HostDocument, SceneNode
from layer_scanner import LayerMapping, count_markers, scan_selection
from license_guard import LicenseGuard
from plugin_errors import ProtocolError, QuotaExceeded, UserInputError
from plugin_messages import (
    ApplyData,
    ApplySheetData,
    Blocked,
    ClearLicenseStatus,
    ClearSyncData,
    ConfigurationRemoved,
    DataApplied,
    DataTypes,
    DelegateResponse,
    DetailedConfigSaved,
    Envelope,
    GetDataTypes,
    GetLicenseStatus,
    GetSelectionState,
    IntegerSettingsLoaded,
    LayersScanned,
    LicenseStatus,
    LicenseValidated,
    LoadIntegerSettings,
    MappingAssignment,
    MappingRemoved,
    ProgressUpdate,
    RemoveConfiguration,
    RemoveMapping,
    SaveDetailedConfig,
    ScanLayers,
    SelectionChanged,
    SelectionState,
    SheetSynced,
    StoreIntegerSettings,
    SyncDataCleared,
    SyncGoogleSheet,
    ValidateLicense,
    error_message,
    parse_core_message,
)
from plugin_storage import ConfigurationStore, SheetSnapshot
from sheet_sync import auto_match_columns

logger = logging.getLogger(__name__)

GENERATION_FAILED_VALUE = "Error loading data"
SHEET_TEXT_TYPE = "sheet"
SHEET_IMAGE_TYPE = "sheet_image"

_RGB_PATTERN = re.compile(r"^rgba?\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*(?:,\s*[\d.]+\s*)?\)$")


def solid_fill(color: str) -> Dict[str, Any]:
    """Turn '#rrggbb' or 'rgb(r, g, b)' into a SOLID paint with 0..1 channels."""
    value = color.strip()
    if value.startswith("#") and len(value) == 7:
        channels = [int(value[i:i + 2], 16) for i in (1, 3, 5)]
    else:
        match = _RGB_PATTERN.match(value)
        if not match:
            raise ValueError(f"Unrecognized color value: {color}")
        channels = [int(g) for g in match.groups()]
    if any(c > 255 for c in channels):
        raise ValueError(f"Color channel out of range: {color}")
    r, g, b = (round(c / 255, 4) for c in channels)
    return {"type": "SOLID", "color": {"r": r, "g": g, "b": b}}


class PopulatorController:
    def __init__(
        self,
        document: HostDocument,
        guard: LicenseGuard,
        communicator: Optional[DelegateCommunicator] = None,
        config: Optional[ConfigurationStore] = None,
        document_path: Optional[Path] = None,
        timeouts: Optional[Dict[DelegateKind, float]] = None,
    ) -> None:
        self.document = document
        self.guard = guard
        self.communicator = communicator
        self.config = config or ConfigurationStore(document.plugin_data)
        self.document_path = document_path
        self.timeouts = timeouts
        self.websocket = None
        self.mappings: List[LayerMapping] = []
        self._command_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task] = set()
        self._closing = False

        self._handlers: Dict[type, Callable[[Any], Awaitable[None]]] = {
            ScanLayers: self._handle_scan_layers,
            ApplyData: self._handle_apply_data,
            RemoveMapping: self._handle_remove_mapping,
            GetDataTypes: self._handle_get_data_types,
            StoreIntegerSettings: self._handle_store_integer_settings,
            LoadIntegerSettings: self._handle_load_integer_settings,
            SaveDetailedConfig: self._handle_save_detailed_config,
            SyncGoogleSheet: self._handle_sync_google_sheet,
            ApplySheetData: self._handle_apply_sheet_data,
            GetSelectionState: self._handle_get_selection_state,
            ClearSyncData: self._handle_clear_sync_data,
            RemoveConfiguration: self._handle_remove_configuration,
            ValidateLicense: self._handle_validate_license,
            GetLicenseStatus: self._handle_get_license_status,
            ClearLicenseStatus: self._handle_clear_license_status,
        }

    # ============================================
    # ============== LIFECYCLE ===================
    # ============================================

    def attach(self, websocket) -> None:
        """Bind to a (re)connected link; pending requests on the old link are abandoned."""
        if self.communicator is not None:
            self.communicator.cleanup_pending_requests()
        self.websocket = websocket
        self.communicator = DelegateCommunicator(websocket, timeouts=self.timeouts)
        self.guard.communicator = self.communicator

    def close(self) -> None:
        """Cancel queued commands, abandon pending delegations and flush license state."""
        self._closing = True
        for task in list(self._background_tasks):
            if not task.done():
                task.cancel()
        if self.communicator is not None:
            self.communicator.cleanup_pending_requests()
        self.guard.teardown()

    async def wait_idle(self) -> None:
        """Wait until every queued command has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _send(self, message: Envelope) -> None:
        if not self.websocket:
            logger.warning(f"⚠️ Dropping {getattr(message, 'type', '?')}: no UI link")
            return
        await self.websocket.send(message.encode())

    async def _send_error(self, message: str, **details: Any) -> None:
        try:
            await self._send(error_message(message, **details))
        except Exception as e:
            logger.error(f"❌ Could not report error to UI: {e}")

    # ============================================
    # ============ INBOUND DISPATCH ==============
    # ============================================

    async def handle_raw(self, raw_message: str) -> None:
        try:
            message = parse_core_message(raw_message)
        except ProtocolError as e:
            logger.warning(f"⚠️ Rejected message: {e}")
            await self._send_error(f"Unsupported message: {e.message}", **e.details)
            return
        await self.handle_message(message)

    async def handle_message(self, message: Any) -> None:
        if isinstance(message, DelegateResponse):
            if self.communicator is None:
                logger.warning(f"Received {message.type} but communicator not initialized")
                return
            self.communicator.handle_response(message)
            return

        handler = self._handlers[type(message)]
        task = asyncio.create_task(self._run_command(message.type, handler, message))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_command(self, name: str, handler: Callable[[Any], Awaitable[None]], message: Any) -> None:
        async with self._command_lock:
            logger.info(f"🔧 Running {name}")
            try:
                await handler(message)
            except asyncio.CancelledError:
                logger.info(f"🛑 {name} cancelled")
                if not self._closing:
                    # A reconnect abandoned the delegations this command was waiting on
                    await self._send_error("Connection lost, please retry")
                raise
            except UserInputError as e:
                await self._send_error(e.message)
            except Exception as e:
                logger.exception(f"❌ {name} failed")
                await self._send_error(f"Plugin error: {e}")

    # ============================================
    # ========== SCAN & MAPPINGS =================
    # ============================================

    async def _handle_scan_layers(self, _: ScanLayers) -> None:
        self.scan_layers()
        saved = self.config.load_saved()
        await self._send(LayersScanned(payload={
            "mappings": [m.to_payload(saved) for m in self.mappings],
            "saved_configurations": saved,
            "detailed_configurations": self.config.load_detailed(),
        }))

    def scan_layers(self) -> List[LayerMapping]:
        if not self.document.selection:
            raise UserInputError("Please select at least one layer")
        self.mappings = scan_selection(self.document.selection)
        saved = self.config.load_saved()
        for mapping in self.mappings:
            if mapping.key in saved:
                mapping.data_type_id = saved[mapping.key]
                logger.info(f"🔄 Applied saved config: {mapping.key} → {mapping.data_type_id}")
        return self.mappings

    async def _handle_remove_mapping(self, message: RemoveMapping) -> None:
        layer_name = message.payload.layer_name
        self.mappings = [m for m in self.mappings if m.key != layer_name]
        await self._send(MappingRemoved(payload={"layer_name": layer_name}))

    async def _handle_get_data_types(self, _: GetDataTypes) -> None:
        await self._send(DataTypes(payload={"categories": data_types_by_category()}))

    # ============================================
    # ================ APPLY =====================
    # ============================================

    async def _handle_apply_data(self, message: ApplyData) -> None:
        try:
            summary = await self.apply_data(message.payload.mappings)
        except QuotaExceeded as e:
            await self._send(Blocked(payload={"message": e.message, **self.guard.status()}))
            return
        await self._send(DataApplied(payload={
            "message": "Data successfully applied to layers!",
            **summary,
            "license": self.guard.status(),
        }))

    def _ensure_quota(self) -> None:
        if not self.guard.can_use_feature():
            raise QuotaExceeded(self.guard.remaining_daily_uses())

    async def apply_data(self, assignments: List[MappingAssignment]) -> Dict[str, int]:
        self._ensure_quota()
        if not self.mappings:
            raise UserInputError("Scan layers before applying data.")

        by_key = {m.key: m for m in self.mappings}
        options: Dict[str, Dict[str, Any]] = {}
        for assignment in assignments:
            mapping = by_key.get(assignment.layer_name)
            if mapping is None:
                logger.warning(f"⚠️ No scanned mapping for {assignment.layer_name}; skipping")
                continue
            mapping.data_type_id = assignment.data_type_id
            options[mapping.key] = self._options_for(mapping.key, assignment)

        active = [m for m in self.mappings if m.data_type_id]
        if not active:
            raise UserInputError("Please assign data types to at least one layer mapping.")

        generated = await asyncio.gather(
            *(self._generate_for(m, options.get(m.key) or self._options_for(m.key)) for m in active)
        )

        total = sum(m.target_count for m in active)
        current = 0
        failed = 0
        for mapping, values in zip(active, generated):
            for index, node in enumerate(mapping.layers):
                value = self._value_at(values, index)
                if not await self.apply_value_to_node(node, value, mapping.data_type_id):
                    failed += 1
                current += 1
                await self._send_progress(current, total, mapping.key, node)

        for assignment in assignments:
            if assignment.layer_name not in by_key:
                continue
            if assignment.options:
                self.config.save_detailed(assignment.layer_name, assignment.data_type_id, assignment.options)
            else:
                self.config.save(assignment.layer_name, assignment.data_type_id)

        self.guard.increment_usage()
        self.mappings = []
        self._save_document()
        logger.info(f"✨ Applied data to {current} layer(s), {failed} fallback(s)")
        return {"applied": current - failed, "failed": failed, "total": total}

    def _options_for(self, layer_name: str, assignment: Optional[MappingAssignment] = None) -> Dict[str, Any]:
        if assignment is not None and assignment.options:
            return dict(assignment.options)
        stored = self.config.options_for(layer_name)
        if stored:
            return stored
        integer_range = self.config.load_integer_settings().get(layer_name)
        return dict(integer_range) if isinstance(integer_range, dict) else {}

    @staticmethod
    def _value_at(values: List[str], index: int) -> str:
        if index < len(values):
            return values[index]
        if values:
            return values[0]
        return GENERATION_FAILED_VALUE

    async def _generate_for(self, mapping: LayerMapping, options: Dict[str, Any]) -> List[str]:
        payload = {
            "data_type_id": mapping.data_type_id,
            "count": mapping.target_count,
            "layer_name": mapping.key,
            "options": options or None,
        }
        try:
            data = await self.communicator.delegate(DelegateKind.GENERATE_DATA, payload)
        except DelegateError as e:
            logger.error(f"❌ Data generation for {mapping.key} failed: {e}")
            return []
        if data is None:
            logger.warning(f"⏰ No data generated for {mapping.key}; using fallback text")
            return []
        return [str(v) for v in data]

    async def _send_progress(self, current: int, total: int, layer_name: str, node: SceneNode) -> None:
        await self._send(ProgressUpdate(payload={
            "current": current,
            "total": total,
            "layer_name": layer_name,
            "node_id": node.id,
        }))

    async def load_image(self, url: str) -> Optional[bytes]:
        try:
            data = await self.communicator.delegate(DelegateKind.LOAD_IMAGE, {"url": url})
        except DelegateError as e:
            logger.warning(f"❌ Image loading failed: {url} ({e})")
            return None
        if not data:
            return None
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"❌ Image payload for {url} was not valid base64: {e}")
            return None

    async def apply_value_to_node(self, node: SceneNode, value: str, data_type_id: str) -> bool:
        """
        Write one value into one node.

        Returns False when the node only received a fallback (a failed image
        or an error while mutating); the batch continues either way.
        """
        try:
            if node.type == TEXT:
                await self.document.load_font(node.font_name)
                node.set_characters(value)
                return True

            image = is_image_type(data_type_id)
            if node.can_have_fills and image:
                logger.info(f"🖼️ Attempting to load image for {data_type_id}: {value}")
                image_bytes = await self.load_image(value)
                if image_bytes:
                    image_hash = self.document.create_image(image_bytes)
                    node.set_fills([{"type": "IMAGE", "scale_mode": "FILL", "image_hash": image_hash}])
                    return True
                logger.warning("❌ Failed to load image data, falling back to layer name")
                node.name = f"Image failed: {value}"
                return False

            if node.can_have_fills and is_color_type(data_type_id):
                node.set_fills([solid_fill(value)])
                return True

            if not image:
                for child in node.children:
                    if child.type == TEXT:
                        await self.document.load_font(child.font_name)
                        child.set_characters(value)
                        return True

            node.name = value
            return True

        except Exception as e:
            logger.warning(f"⚠️ Could not apply {data_type_id} to {node.id}: {e}")
            node.name = f"{data_type_id}: {value}"
            return False

    # ============================================
    # ============ CONFIGURATION =================
    # ============================================

    async def _handle_store_integer_settings(self, message: StoreIntegerSettings) -> None:
        settings = {k: v.model_dump() for k, v in message.payload.settings.items()}
        self.config.store_integer_settings(settings)
        self._save_document()

    async def _handle_load_integer_settings(self, _: LoadIntegerSettings) -> None:
        await self._send(IntegerSettingsLoaded(payload={"settings": self.config.load_integer_settings()}))

    async def _handle_save_detailed_config(self, message: SaveDetailedConfig) -> None:
        entry = message.payload
        self.config.save_detailed(entry.layer_name, entry.data_type_id, entry.options)
        for mapping in self.mappings:
            if mapping.key == entry.layer_name:
                mapping.data_type_id = entry.data_type_id
        self._save_document()
        await self._send(DetailedConfigSaved(payload=entry.model_dump()))

    async def _handle_remove_configuration(self, message: RemoveConfiguration) -> None:
        layer_name = message.payload.layer_name
        removed = self.config.remove(layer_name)
        self._save_document()
        await self._send(ConfigurationRemoved(payload={"layer_name": layer_name, "removed": removed}))

    # ============================================
    # ============= SHEET SYNC ===================
    # ============================================

    async def _handle_sync_google_sheet(self, message: SyncGoogleSheet) -> None:
        sheet = message.payload
        if not sheet.headers:
            raise UserInputError("The sheet is empty. Add a header row first.")
        keys = [m.key for m in self.mappings]
        if not keys and self.document.selection:
            keys = [m.key for m in scan_selection(self.document.selection)]
        snapshot = SheetSnapshot(
            url=sheet.url,
            headers=list(sheet.headers),
            rows=[list(r) for r in sheet.rows],
            mappings=auto_match_columns(keys, sheet.headers),
        )
        self.config.save_sheet_snapshot(snapshot)
        self._save_document()
        await self._send(SheetSynced(payload={
            "url": snapshot.url,
            "headers": snapshot.headers,
            "row_count": len(snapshot.rows),
            "mappings": snapshot.mappings,
        }))

    async def _handle_apply_sheet_data(self, message: ApplySheetData) -> None:
        try:
            summary = await self.apply_sheet_data(message.payload.mappings)
        except QuotaExceeded as e:
            await self._send(Blocked(payload={"message": e.message, **self.guard.status()}))
            return
        await self._send(DataApplied(payload={
            "message": "Sheet data successfully applied to layers!",
            **summary,
            "license": self.guard.status(),
        }))

    async def apply_sheet_data(self, column_mappings: Dict[str, str]) -> Dict[str, int]:
        self._ensure_quota()
        snapshot = self.config.load_sheet_snapshot()
        if snapshot is None:
            raise UserInputError("No synced sheet data. Sync a Google Sheet first.")
        if not self.mappings:
            self.scan_layers()

        chosen = dict(column_mappings or snapshot.mappings)
        targets: List[Tuple[LayerMapping, List[str]]] = []
        for mapping in self.mappings:
            header = chosen.get(mapping.key)
            if header is None:
                continue
            if header not in snapshot.headers:
                raise UserInputError(f"Column '{header}' is not in the synced sheet.")
            targets.append((mapping, snapshot.column(header)))
        if not targets:
            raise UserInputError("Map at least one layer to a sheet column.")

        total = sum(m.target_count for m, _ in targets)
        current = 0
        failed = 0
        for mapping, column in targets:
            for index, node in enumerate(mapping.layers):
                value = column[index % len(column)] if column else ""
                data_type_id = SHEET_TEXT_TYPE
                if node.can_have_fills and value.startswith(("http://", "https://")):
                    data_type_id = SHEET_IMAGE_TYPE
                if not await self.apply_value_to_node(node, value, data_type_id):
                    failed += 1
                current += 1
                await self._send_progress(current, total, mapping.key, node)

        snapshot.mappings = chosen
        self.config.save_sheet_snapshot(snapshot)
        self.guard.increment_usage()
        self._save_document()
        return {"applied": current - failed, "failed": failed, "total": total}

    async def _handle_clear_sync_data(self, _: ClearSyncData) -> None:
        self.config.clear_sheet_snapshot()
        self._save_document()
        await self._send(SyncDataCleared())

    # ============================================
    # ============ SELECTION =====================
    # ============================================

    def _selection_payload(self) -> Dict[str, Any]:
        selection = self.document.selection
        return {
            "count": len(selection),
            "has_selection": bool(selection),
            "marker_count": count_markers(selection),
        }

    async def _handle_get_selection_state(self, _: GetSelectionState) -> None:
        await self._send(SelectionState(payload=self._selection_payload()))

    async def selection_changed(self, node_ids: List[str]) -> None:
        """Host hook: the user changed the canvas selection."""
        self.document.select(node_ids)
        await self._send(SelectionChanged(payload=self._selection_payload()))

    # ============================================
    # ============== LICENSE =====================
    # ============================================

    async def _handle_validate_license(self, message: ValidateLicense) -> None:
        result = await self.guard.validate_license(message.payload.license_key)
        await self._send(LicenseValidated(payload={**result.to_payload(), "status": self.guard.status()}))

    async def _handle_get_license_status(self, _: GetLicenseStatus) -> None:
        await self._send(LicenseStatus(payload=self.guard.status()))

    async def _handle_clear_license_status(self, _: ClearLicenseStatus) -> None:
        self.guard.clear_license_data()
        await self._send(LicenseStatus(payload=self.guard.status()))

    # ============================================
    # ============== DOCUMENT ====================
    # ============================================

    def _save_document(self) -> None:
        if self.document_path is None:
            return
        try:
            self.document.save(self.document_path)
        except OSError as e:
            logger.error(f"❌ Failed to save document to {self.document_path}: {e}")
