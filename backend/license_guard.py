"""
License Guard - license validation and free daily quota

Gates the metered apply operations behind either a validated license or a
free daily allowance. State lives in client-scoped storage so it survives
restarts; the daily counter rolls over lazily on the first check of a new
local calendar day.
"""

import logging
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from websockets.exceptions import ConnectionClosed

from delegate_communicator import DelegateCommunicator, DelegateError, DelegateKind
from plugin_storage import KeyValueStore

logger = logging.getLogger(__name__)

DAILY_LIMIT = 15
MAX_ATTEMPTS = 15
RATE_LIMIT_WINDOW = timedelta(hours=1)
MAX_LICENSE_USES = 10

LICENSE_KEY_PATTERN = re.compile(r"^[0-9A-Fa-f]{8}(?:-[0-9A-Fa-f]{8}){3}$")

LICENSE_STORAGE_PREFIX = "license."


@dataclass
class LicenseState:
    license_key: Optional[str] = None
    is_valid: bool = False
    daily_uses: int = 0
    last_reset_date: Optional[str] = None  # ISO local date
    validation_attempts: int = 0
    last_attempt_time: Optional[float] = None  # POSIX timestamp
    remaining_activations: int = 0


@dataclass
class ValidationResult:
    success: bool
    message: str
    code: str = "ok"

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


class LicenseGuard:
    """
    Process-wide license and quota gatekeeper.

    Construct one per session and call initialize() before use; teardown()
    flushes state. Nothing here is global, so tests can run side by side.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        communicator: Optional[DelegateCommunicator] = None,
        product_id: str = "",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.storage = storage
        self.communicator = communicator
        self.product_id = product_id
        self._clock = clock or datetime.now
        self.state = LicenseState()
        self._initialized = False

    # Lifecycle
    def initialize(self) -> None:
        loaded = {}
        for name in LicenseState.__dataclass_fields__:
            value = self.storage.get(LICENSE_STORAGE_PREFIX + name)
            if value is not None:
                loaded[name] = value
        try:
            self.state = LicenseState(**loaded)
        except TypeError as e:
            logger.warning(f"⚠️ Stored license state unreadable, starting fresh: {e}")
            self.state = LicenseState()
        self.state.daily_uses = _count(self.state.daily_uses, "daily_uses")
        self.state.validation_attempts = _count(self.state.validation_attempts, "validation_attempts")
        self._initialized = True
        logger.info(
            f"🔑 License state loaded (valid={self.state.is_valid}, daily_uses={self.state.daily_uses})"
        )

    def teardown(self) -> None:
        if self._initialized:
            self._persist()
        self._initialized = False

    # Quota
    def _today(self) -> date:
        return self._clock().date()

    def _check_daily_rollover(self) -> None:
        today = self._today().isoformat()
        if self.state.last_reset_date != today:
            logger.info(f"🌅 New day ({today}); resetting daily uses from {self.state.daily_uses}")
            self.state.daily_uses = 0
            self.state.last_reset_date = today
            self._persist()

    def is_license_valid(self) -> bool:
        self._check_daily_rollover()
        return bool(self.state.is_valid)

    def remaining_daily_uses(self) -> int:
        self._check_daily_rollover()
        return max(0, DAILY_LIMIT - self.state.daily_uses)

    def can_use_feature(self) -> bool:
        return self.is_license_valid() or self.remaining_daily_uses() > 0

    def increment_usage(self) -> None:
        if self.is_license_valid():
            # Licensed use is metered server-side through activations
            return
        self.state.daily_uses += 1
        self._persist()
        logger.info(f"📊 Daily uses: {self.state.daily_uses}/{DAILY_LIMIT}")

    # Validation
    def can_make_validation_attempt(self) -> bool:
        now = self._clock().timestamp()
        last = self.state.last_attempt_time
        if last is not None and now - last > RATE_LIMIT_WINDOW.total_seconds():
            self.state.validation_attempts = 0
            self._persist()
        return self.state.validation_attempts < MAX_ATTEMPTS

    async def validate_license(self, license_key: str) -> ValidationResult:
        key = (license_key or "").strip()
        if not key:
            return ValidationResult(False, "Please enter a license key.", "invalid_format")
        if len(key) != 35 or not LICENSE_KEY_PATTERN.match(key):
            return ValidationResult(
                False,
                "Invalid license key format. Expected XXXXXXXX-XXXXXXXX-XXXXXXXX-XXXXXXXX.",
                "invalid_format",
            )
        if not self.can_make_validation_attempt():
            return ValidationResult(
                False,
                "Too many validation attempts. Please try again in an hour.",
                "rate_limited",
            )

        self.state.validation_attempts += 1
        self.state.last_attempt_time = self._clock().timestamp()
        self._persist()

        if self.communicator is None:
            logger.error("❌ No delegate link available for license verification")
            return self._network_failure()

        try:
            response = await self.communicator.delegate(
                DelegateKind.VERIFY_LICENSE,
                {"license_key": key, "product_id": self.product_id},
            )
        except DelegateError as e:
            logger.error(f"❌ License verification failed: {e}")
            return self._network_failure()
        except (RuntimeError, OSError, ConnectionClosed) as e:
            logger.error(f"❌ License verification could not reach the delegate: {e}")
            return self._network_failure()

        if not isinstance(response, dict):
            logger.warning("⚠️ No usable license verification response")
            return self._network_failure()

        return self._interpret(key, response)

    def _interpret(self, key: str, response: Dict[str, Any]) -> ValidationResult:
        if not response.get("success"):
            return ValidationResult(False, "Invalid license key.", "invalid_license")

        purchase = response.get("purchase") or {}
        if not isinstance(purchase, dict):
            return self._network_failure()
        if purchase.get("refunded") or purchase.get("disputed") or purchase.get("chargebacked"):
            return ValidationResult(False, "This license is no longer active.", "license_revoked")

        try:
            uses = int(response.get("uses", 0))
        except (TypeError, ValueError):
            return self._network_failure()

        if uses >= MAX_LICENSE_USES:
            return ValidationResult(
                False,
                f"This license has reached its activation limit ({MAX_LICENSE_USES}).",
                "activation_limit",
            )

        self.state.license_key = key
        self.state.is_valid = True
        self.state.remaining_activations = max(0, MAX_LICENSE_USES - uses)
        self._persist()
        logger.info(f"✅ License validated ({self.state.remaining_activations} activations left)")
        return ValidationResult(True, "License activated. Enjoy unlimited use!", "ok")

    def _network_failure(self) -> ValidationResult:
        return ValidationResult(
            False,
            "Unable to validate license. Please check your connection.",
            "network_error",
        )

    def clear_license_data(self) -> None:
        self.state = LicenseState()
        for name in LicenseState.__dataclass_fields__:
            self.storage.delete(LICENSE_STORAGE_PREFIX + name)
        logger.info("🧹 License data cleared")

    def status(self) -> Dict[str, Any]:
        licensed = self.is_license_valid()
        return {
            "is_licensed": licensed,
            "remaining_uses": self.remaining_daily_uses(),
            "daily_limit": DAILY_LIMIT,
            "remaining_activations": self.state.remaining_activations if licensed else 0,
            "can_use": self.can_use_feature(),
        }

    def _persist(self) -> None:
        for name, value in asdict(self.state).items():
            self.storage.set(LICENSE_STORAGE_PREFIX + name, value)


def _count(value: Any, name: str) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Stored {name} unreadable ({value!r}), resetting to 0")
        return 0
