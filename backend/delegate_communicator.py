"""
Delegate Communicator - request/response correlation layer

This module lets the Core Controller run an operation that only the Delegate
Surface can perform (HTTP fetches, image downloads, license verification)
and await its result. Requests and responses travel over the same
websocket-like link as every other plugin message; correlation is by a
generated id only, never by arrival order.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from plugin_messages import (
    MESSAGE_TYPE_DATA_GENERATED,
    MESSAGE_TYPE_GENERATE_DATA,
    MESSAGE_TYPE_IMAGE_LOADED,
    MESSAGE_TYPE_LICENSE_VERIFIED,
    MESSAGE_TYPE_LOAD_IMAGE,
    MESSAGE_TYPE_VERIFY_LICENSE,
    DelegateResponse,
)

logger = logging.getLogger(__name__)


class DelegateKind(str, Enum):
    GENERATE_DATA = MESSAGE_TYPE_GENERATE_DATA
    LOAD_IMAGE = MESSAGE_TYPE_LOAD_IMAGE
    VERIFY_LICENSE = MESSAGE_TYPE_VERIFY_LICENSE

    @property
    def response_type(self) -> str:
        return _RESPONSE_TYPES[self]


_RESPONSE_TYPES = {
    DelegateKind.GENERATE_DATA: MESSAGE_TYPE_DATA_GENERATED,
    DelegateKind.LOAD_IMAGE: MESSAGE_TYPE_IMAGE_LOADED,
    DelegateKind.VERIFY_LICENSE: MESSAGE_TYPE_LICENSE_VERIFIED,
}

# Seconds to wait for each kind before treating the request as a miss
DEFAULT_TIMEOUTS: Dict[DelegateKind, float] = {
    DelegateKind.GENERATE_DATA: 30.0,
    DelegateKind.LOAD_IMAGE: 10.0,
    DelegateKind.VERIFY_LICENSE: 15.0,
}


class DelegateError(Exception):
    """
    Structured failure reported by the Delegate Surface.

    Expected payload shape: { code: str, message: str, details?: dict }
    """

    def __init__(self, payload: Any, kind: Optional[DelegateKind] = None):
        self.kind = kind

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "unknown_delegate_error"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
            normalized_payload = payload
        else:
            self.code = "unknown_delegate_error"
            self.message = str(payload)
            self.details = {}
            normalized_payload = {"code": self.code, "message": self.message, "details": self.details}

        self.payload = normalized_payload

        text = self.message if self.message else self.code
        super().__init__(text)


@dataclass
class PendingRequest:
    """One outstanding delegation. Retired by exactly one response or timeout."""

    id: str
    kind: DelegateKind
    future: asyncio.Future
    issued_at: float = field(default_factory=time.time)


class DelegateCommunicator:
    """
    Handles correlated requests to the Delegate Surface.

    This class manages:
    - Sending delegated requests with unique IDs
    - Tracking pending requests keyed by ID
    - Resolving futures when the matching response arrives
    - Timeouts, which resolve to None rather than raising
    """

    def __init__(self, websocket, timeouts: Optional[Dict[DelegateKind, float]] = None):
        """
        Initialize the communicator.

        Args:
            websocket: Link to send messages through (anything with async send(str))
            timeouts: Per-kind timeout overrides in seconds
        """
        self.websocket = websocket
        self.timeouts: Dict[DelegateKind, float] = dict(DEFAULT_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)
        self.pending_requests: Dict[str, PendingRequest] = {}

    def generate_id(self) -> str:
        """Generate a unique ID for delegated requests."""
        request_id = str(uuid.uuid4())
        while request_id in self.pending_requests:
            request_id = str(uuid.uuid4())
        return request_id

    async def delegate(self, kind: DelegateKind, payload: Dict[str, Any]) -> Any:
        """
        Send a request to the Delegate Surface and wait for its result.

        Args:
            kind: Which delegated operation to run
            payload: Operation parameters

        Returns:
            The `data` of the matching response, or None when no response
            arrived within the kind's timeout

        Raises:
            DelegateError: If the Delegate Surface answered with an error
            RuntimeError: If the link is not available
        """
        if not self.websocket:
            raise RuntimeError("Delegate link not available")

        kind = DelegateKind(kind)
        request_id = self.generate_id()
        message = {"type": kind.value, "id": request_id, "payload": payload}

        future = asyncio.get_running_loop().create_future()
        pending = PendingRequest(id=request_id, kind=kind, future=future)
        self.pending_requests[request_id] = pending

        logger.debug(f"📝 Added to pending requests: {request_id} ({kind.value})")
        logger.debug(f"📝 Total pending requests: {len(self.pending_requests)}")

        timeout = self.timeouts[kind]
        try:
            logger.info(f"🚀 Delegating {kind.value} with ID: {request_id}")
            await self.websocket.send(json.dumps(message))
            return await asyncio.wait_for(future, timeout=timeout)

        except asyncio.TimeoutError:
            self.pending_requests.pop(request_id, None)
            elapsed = time.time() - pending.issued_at
            logger.warning(f"⏰ {kind.value} (ID: {request_id}) got no response after {elapsed:.3f}s (limit: {timeout}s)")
            return None

        except Exception as e:
            self.pending_requests.pop(request_id, None)
            logger.error(f"❌ Delegated {kind.value} (ID: {request_id}) failed: {e}")
            raise

    def handle_response(self, message: DelegateResponse) -> bool:
        """
        Route a delegate response to the caller waiting on its ID.

        Args:
            message: Parsed data-generated / image-loaded / license-verified envelope

        Returns:
            True if the response retired a pending request, False if it was ignored
        """
        request_id = message.id
        pending = self.pending_requests.get(request_id)

        if pending is None:
            logger.warning(f"❌ Received {message.type} for unknown ID: {request_id}")
            return False

        if pending.kind.response_type != message.type:
            logger.warning(
                f"❌ Received {message.type} for ID {request_id} which is waiting on {pending.kind.response_type}"
            )
            return False

        self.pending_requests.pop(request_id, None)
        future = pending.future
        elapsed = time.time() - pending.issued_at

        if future.done():
            logger.debug(f"⚠️ Future already completed for {request_id}")
            return False

        if message.error is not None:
            logger.error(f"❌ {pending.kind.value} {request_id} failed after {elapsed:.3f}s: {message.error}")
            error_val = message.error
            if isinstance(error_val, str):
                try:
                    parsed = json.loads(error_val)
                    if isinstance(parsed, dict):
                        error_val = parsed
                except json.JSONDecodeError:
                    pass
            future.set_exception(DelegateError(error_val, kind=pending.kind))
            return True

        logger.info(f"✅ {pending.kind.value} {request_id} completed after {elapsed:.3f}s")
        future.set_result(getattr(message, "data", None))
        return True

    def cleanup_pending_requests(self) -> None:
        """Cancel all pending requests (called on teardown)."""
        for request_id, pending in self.pending_requests.items():
            if not pending.future.done():
                pending.future.cancel()
                logger.info(f"Cancelled pending request: {request_id}")
        self.pending_requests.clear()
