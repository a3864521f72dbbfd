"""
Plugin Messages - closed envelope types for the core/delegate boundary

Every message that crosses the privilege boundary is a JSON object with a
`type` discriminator, an optional correlation `id` and an optional
`payload`. Each direction accepts a closed union of shapes: an unknown
`type` or a payload with the wrong shape is rejected at parse time with a
ProtocolError instead of being duck-typed later.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from plugin_errors import ProtocolError

# Message type constants to avoid stringly-typed conditionals
MESSAGE_TYPE_SCAN_LAYERS = "scan-layers"
MESSAGE_TYPE_APPLY_DATA = "apply-data"
MESSAGE_TYPE_REMOVE_MAPPING = "remove-mapping"
MESSAGE_TYPE_GET_DATA_TYPES = "get-data-types"
MESSAGE_TYPE_STORE_INTEGER_SETTINGS = "store-integer-settings"
MESSAGE_TYPE_LOAD_INTEGER_SETTINGS = "load-integer-settings"
MESSAGE_TYPE_SAVE_DETAILED_CONFIG = "save-detailed-config"
MESSAGE_TYPE_SYNC_GOOGLE_SHEET = "sync-google-sheet"
MESSAGE_TYPE_APPLY_SHEET_DATA = "apply-sheet-data"
MESSAGE_TYPE_GET_SELECTION_STATE = "get-selection-state"
MESSAGE_TYPE_CLEAR_SYNC_DATA = "clear-sync-data"
MESSAGE_TYPE_REMOVE_CONFIGURATION = "remove-configuration"
MESSAGE_TYPE_VALIDATE_LICENSE = "validate-license"
MESSAGE_TYPE_GET_LICENSE_STATUS = "get-license-status"
MESSAGE_TYPE_CLEAR_LICENSE_STATUS = "clear-license-status"

MESSAGE_TYPE_GENERATE_DATA = "generate-data"
MESSAGE_TYPE_DATA_GENERATED = "data-generated"
MESSAGE_TYPE_LOAD_IMAGE = "load-image"
MESSAGE_TYPE_IMAGE_LOADED = "image-loaded"
MESSAGE_TYPE_VERIFY_LICENSE = "verify-license"
MESSAGE_TYPE_LICENSE_VERIFIED = "license-verified"

MESSAGE_TYPE_LAYERS_SCANNED = "layers-scanned"
MESSAGE_TYPE_MAPPING_REMOVED = "mapping-removed"
MESSAGE_TYPE_DATA_TYPES = "data-types"
MESSAGE_TYPE_INTEGER_SETTINGS_LOADED = "integer-settings-loaded"
MESSAGE_TYPE_DETAILED_CONFIG_SAVED = "detailed-config-saved"
MESSAGE_TYPE_DATA_APPLIED = "data-applied"
MESSAGE_TYPE_BLOCKED = "blocked"
MESSAGE_TYPE_PROGRESS_UPDATE = "progress-update"
MESSAGE_TYPE_ERROR = "error"
MESSAGE_TYPE_SELECTION_STATE = "selection-state"
MESSAGE_TYPE_SELECTION_CHANGED = "selection-changed"
MESSAGE_TYPE_SHEET_SYNCED = "sheet-synced"
MESSAGE_TYPE_SYNC_DATA_CLEARED = "sync-data-cleared"
MESSAGE_TYPE_CONFIGURATION_REMOVED = "configuration-removed"
MESSAGE_TYPE_LICENSE_STATUS = "license-status"
MESSAGE_TYPE_LICENSE_VALIDATED = "license-validated"


class Envelope(BaseModel):
    # Bridges may stamp routing metadata (channel, sender); ignore it
    model_config = ConfigDict(extra="ignore")

    def encode(self) -> str:
        return self.model_dump_json(exclude_none=True)


# ============================================
# ============ SHARED PAYLOADS ===============
# ============================================

class MappingAssignment(BaseModel):
    layer_name: str
    data_type_id: str
    options: Optional[Dict[str, Any]] = None


class LayerRef(BaseModel):
    layer_name: str


class IntegerRange(BaseModel):
    min: int = 1
    max: int = 1000

    @model_validator(mode="after")
    def _ordered(self) -> "IntegerRange":
        if self.min > self.max:
            raise ValueError(f"min ({self.min}) must not exceed max ({self.max})")
        return self


class ApplyDataPayload(BaseModel):
    mappings: List[MappingAssignment]


class IntegerSettingsPayload(BaseModel):
    settings: Dict[str, IntegerRange] = Field(default_factory=dict)


class SheetPayload(BaseModel):
    url: str
    headers: List[str]
    rows: List[List[str]] = Field(default_factory=list)


class SheetApplyPayload(BaseModel):
    mappings: Dict[str, str] = Field(default_factory=dict)


class LicenseKeyPayload(BaseModel):
    license_key: str = ""


class GenerateDataPayload(BaseModel):
    data_type_id: str
    count: int = Field(ge=0)
    layer_name: Optional[str] = None
    options: Optional[Dict[str, Any]] = None


class LoadImagePayload(BaseModel):
    url: str


class VerifyLicensePayload(BaseModel):
    license_key: str
    product_id: str


# ============================================
# ======== UI SURFACE -> CORE COMMANDS =======
# ============================================

class ScanLayers(Envelope):
    type: Literal["scan-layers"]


class ApplyData(Envelope):
    type: Literal["apply-data"]
    payload: ApplyDataPayload


class RemoveMapping(Envelope):
    type: Literal["remove-mapping"]
    payload: LayerRef


class GetDataTypes(Envelope):
    type: Literal["get-data-types"]


class StoreIntegerSettings(Envelope):
    type: Literal["store-integer-settings"]
    payload: IntegerSettingsPayload


class LoadIntegerSettings(Envelope):
    type: Literal["load-integer-settings"]


class SaveDetailedConfig(Envelope):
    type: Literal["save-detailed-config"]
    payload: MappingAssignment


class SyncGoogleSheet(Envelope):
    type: Literal["sync-google-sheet"]
    payload: SheetPayload


class ApplySheetData(Envelope):
    type: Literal["apply-sheet-data"]
    payload: SheetApplyPayload


class GetSelectionState(Envelope):
    type: Literal["get-selection-state"]


class ClearSyncData(Envelope):
    type: Literal["clear-sync-data"]


class RemoveConfiguration(Envelope):
    type: Literal["remove-configuration"]
    payload: LayerRef


class ValidateLicense(Envelope):
    type: Literal["validate-license"]
    payload: LicenseKeyPayload


class GetLicenseStatus(Envelope):
    type: Literal["get-license-status"]


class ClearLicenseStatus(Envelope):
    type: Literal["clear-license-status"]


# ============================================
# ====== DELEGATE -> CORE (correlated) =======
# ============================================

class DelegateResponse(Envelope):
    id: str
    error: Optional[Any] = None


class DataGenerated(DelegateResponse):
    type: Literal["data-generated"]
    data: Optional[List[str]] = None


class ImageLoaded(DelegateResponse):
    type: Literal["image-loaded"]
    # base64 encoded image bytes; None when the fetch failed
    data: Optional[str] = None


class LicenseVerified(DelegateResponse):
    type: Literal["license-verified"]
    data: Optional[Dict[str, Any]] = None


# ============================================
# ====== CORE -> DELEGATE (correlated) =======
# ============================================

class GenerateData(Envelope):
    type: Literal["generate-data"]
    id: str
    payload: GenerateDataPayload


class LoadImage(Envelope):
    type: Literal["load-image"]
    id: str
    payload: LoadImagePayload


class VerifyLicense(Envelope):
    type: Literal["verify-license"]
    id: str
    payload: VerifyLicensePayload


# ============================================
# ===== CORE -> UI SURFACE NOTIFICATIONS =====
# ============================================

class Notification(Envelope):
    """Replies and fire-and-forget notices; the UI renders `payload` as-is."""

    payload: Dict[str, Any] = Field(default_factory=dict)


class LayersScanned(Notification):
    type: Literal["layers-scanned"] = MESSAGE_TYPE_LAYERS_SCANNED


class MappingRemoved(Notification):
    type: Literal["mapping-removed"] = MESSAGE_TYPE_MAPPING_REMOVED


class DataTypes(Notification):
    type: Literal["data-types"] = MESSAGE_TYPE_DATA_TYPES


class IntegerSettingsLoaded(Notification):
    type: Literal["integer-settings-loaded"] = MESSAGE_TYPE_INTEGER_SETTINGS_LOADED


class DetailedConfigSaved(Notification):
    type: Literal["detailed-config-saved"] = MESSAGE_TYPE_DETAILED_CONFIG_SAVED


class DataApplied(Notification):
    type: Literal["data-applied"] = MESSAGE_TYPE_DATA_APPLIED


class Blocked(Notification):
    type: Literal["blocked"] = MESSAGE_TYPE_BLOCKED


class ProgressUpdate(Notification):
    type: Literal["progress-update"] = MESSAGE_TYPE_PROGRESS_UPDATE


class ErrorMessage(Notification):
    type: Literal["error"] = MESSAGE_TYPE_ERROR


class SelectionState(Notification):
    type: Literal["selection-state"] = MESSAGE_TYPE_SELECTION_STATE


class SelectionChanged(Notification):
    type: Literal["selection-changed"] = MESSAGE_TYPE_SELECTION_CHANGED


class SheetSynced(Notification):
    type: Literal["sheet-synced"] = MESSAGE_TYPE_SHEET_SYNCED


class SyncDataCleared(Notification):
    type: Literal["sync-data-cleared"] = MESSAGE_TYPE_SYNC_DATA_CLEARED


class ConfigurationRemoved(Notification):
    type: Literal["configuration-removed"] = MESSAGE_TYPE_CONFIGURATION_REMOVED


class LicenseStatus(Notification):
    type: Literal["license-status"] = MESSAGE_TYPE_LICENSE_STATUS


class LicenseValidated(Notification):
    type: Literal["license-validated"] = MESSAGE_TYPE_LICENSE_VALIDATED


def error_message(message: str, **details: Any) -> ErrorMessage:
    payload: Dict[str, Any] = {"message": message}
    if details:
        payload["details"] = details
    return ErrorMessage(payload=payload)


# ============================================
# ============ CLOSED UNIONS =================
# ============================================

CoreInbound = Annotated[
    Union[
        ScanLayers,
        ApplyData,
        RemoveMapping,
        GetDataTypes,
        StoreIntegerSettings,
        LoadIntegerSettings,
        SaveDetailedConfig,
        SyncGoogleSheet,
        ApplySheetData,
        GetSelectionState,
        ClearSyncData,
        RemoveConfiguration,
        ValidateLicense,
        GetLicenseStatus,
        ClearLicenseStatus,
        DataGenerated,
        ImageLoaded,
        LicenseVerified,
    ],
    Field(discriminator="type"),
]

DelegateInbound = Annotated[
    Union[
        GenerateData,
        LoadImage,
        VerifyLicense,
        LayersScanned,
        MappingRemoved,
        DataTypes,
        IntegerSettingsLoaded,
        DetailedConfigSaved,
        DataApplied,
        Blocked,
        ProgressUpdate,
        ErrorMessage,
        SelectionState,
        SelectionChanged,
        SheetSynced,
        SyncDataCleared,
        ConfigurationRemoved,
        LicenseStatus,
        LicenseValidated,
    ],
    Field(discriminator="type"),
]

_core_adapter: TypeAdapter = TypeAdapter(CoreInbound)
_delegate_adapter: TypeAdapter = TypeAdapter(DelegateInbound)


def _decode(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Message is not valid JSON: {e}")
    if not isinstance(raw, dict):
        raise ProtocolError("Message must be a JSON object")
    return raw


def _validate(adapter: TypeAdapter, raw: Union[str, bytes, Dict[str, Any]]) -> Any:
    data = _decode(raw)
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(
            f"Rejected '{data.get('type', '<missing>')}' message",
            {"errors": e.errors(include_url=False, include_context=False)},
        )


def parse_core_message(raw: Union[str, bytes, Dict[str, Any]]) -> Any:
    """Parse a message arriving at the Core Controller."""
    return _validate(_core_adapter, raw)


def parse_delegate_message(raw: Union[str, bytes, Dict[str, Any]]) -> Any:
    """Parse a message arriving at the Delegate Surface."""
    return _validate(_delegate_adapter, raw)
