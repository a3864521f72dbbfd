"""
Delegate Surface - unprivileged executor for network work

Receives correlated requests from the Core Controller (generate-data,
load-image, verify-license), performs them with its own HTTP client and
answers exactly once per request id. It is also the UI side of the
boundary: user commands originate here and core notifications end here.
"""

import asyncio
import base64
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from data_providers import ExternalDataProvider, load_image_bytes
from data_types import UNKNOWN_DATA_TYPE_VALUE, LocalDataGenerator
from plugin_errors import PopulatorError, ProtocolError
from plugin_messages import (
    MESSAGE_TYPE_DATA_GENERATED,
    MESSAGE_TYPE_IMAGE_LOADED,
    MESSAGE_TYPE_LICENSE_VERIFIED,
    MESSAGE_TYPE_SYNC_GOOGLE_SHEET,
    GenerateData,
    LoadImage,
    Notification,
    VerifyLicense,
    parse_delegate_message,
)
from sheet_sync import fetch_sheet_values

logger = logging.getLogger(__name__)

DEFAULT_LICENSE_VERIFY_URL = "https://api.gumroad.com/v2/licenses/verify"


class DelegateSurface:
    def __init__(
        self,
        client: httpx.AsyncClient,
        generator: Optional[LocalDataGenerator] = None,
        providers: Optional[ExternalDataProvider] = None,
        license_verify_url: str = DEFAULT_LICENSE_VERIFY_URL,
        sheets_api_key: Optional[str] = None,
        cors_proxy: Optional[str] = None,
        on_notification: Optional[Callable[[Notification], None]] = None,
    ) -> None:
        self.client = client
        self.generator = generator or LocalDataGenerator()
        self.providers = providers or ExternalDataProvider(client, cors_proxy=cors_proxy)
        self.license_verify_url = license_verify_url
        self.sheets_api_key = sheets_api_key
        self.cors_proxy = cors_proxy
        self.on_notification = on_notification
        self.websocket = None
        self.notifications: List[Notification] = []
        self._background_tasks: set[asyncio.Task] = set()

    def attach(self, websocket) -> None:
        self.websocket = websocket

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        if not self.websocket:
            raise RuntimeError("Link to core not connected")
        await self.websocket.send(json.dumps(payload))

    # ============================================
    # ============ INBOUND DISPATCH ==============
    # ============================================

    async def handle_raw(self, raw_message: str) -> None:
        try:
            message = parse_delegate_message(raw_message)
        except ProtocolError as e:
            logger.warning(f"⚠️ Dropping malformed message from core: {e} {e.details}")
            return

        if isinstance(message, (GenerateData, LoadImage, VerifyLicense)):
            # Run concurrently so a slow fetch never blocks other requests
            task = asyncio.create_task(self._serve(message))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
            return

        self.notifications.append(message)
        logger.info(f"📈 {message.type}: {message.payload}")
        if self.on_notification is not None:
            self.on_notification(message)

    async def _serve(self, message: Any) -> None:
        handlers = {
            GenerateData: (MESSAGE_TYPE_DATA_GENERATED, self._generate_data),
            LoadImage: (MESSAGE_TYPE_IMAGE_LOADED, self._load_image),
            VerifyLicense: (MESSAGE_TYPE_LICENSE_VERIFIED, self._verify_license),
        }
        response_type, handler = handlers[type(message)]
        reply: Dict[str, Any] = {"type": response_type, "id": message.id}
        try:
            reply["data"] = await handler(message)
        except PopulatorError as e:
            reply["error"] = e.to_payload()
        except Exception as e:
            logger.exception(f"❌ {message.type} {message.id} failed")
            reply["error"] = {"code": "delegate_failure", "message": str(e)}
        try:
            await self._send_json(reply)
        except Exception as e:
            logger.error(f"❌ Could not answer {message.type} {message.id}: {e}")

    def close(self) -> None:
        for task in list(self._background_tasks):
            if not task.done():
                task.cancel()

    async def wait_idle(self) -> None:
        """Wait for every in-flight request to be answered."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ============================================
    # ========= DELEGATED OPERATIONS =============
    # ============================================

    async def _generate_data(self, message: GenerateData) -> List[str]:
        payload = message.payload
        logger.info(f"🎲 Generating {payload.count} × {payload.data_type_id} for {payload.layer_name or '-'}")
        if self.generator.supports(payload.data_type_id):
            return self.generator.generate(payload.data_type_id, payload.count, payload.options)
        if self.providers.supports(payload.data_type_id):
            return await self.providers.fetch(payload.data_type_id, payload.count)
        return [UNKNOWN_DATA_TYPE_VALUE] * payload.count

    async def _load_image(self, message: LoadImage) -> Optional[str]:
        logger.info(f"🔄 Loading image: {message.payload.url}")
        content = await load_image_bytes(self.client, message.payload.url, self.cors_proxy)
        if content is None:
            return None
        logger.info(f"✅ Image loaded ({len(content)} bytes): {message.payload.url}")
        return base64.b64encode(content).decode("ascii")

    async def _verify_license(self, message: VerifyLicense) -> Dict[str, Any]:
        form = {
            "product_id": message.payload.product_id,
            "license_key": message.payload.license_key,
            "increment_uses_count": "true",
        }
        response = await self.client.post(self.license_verify_url, data=form)
        # The licensing service answers unknown keys with 404 and a JSON body
        if response.status_code >= 500:
            raise httpx.HTTPStatusError(
                f"Licensing service returned HTTP {response.status_code}",
                request=response.request,
                response=response,
            )
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("Licensing service returned a non-object body")
        return body

    # ============================================
    # ========== UI-SIDE COMMANDS ================
    # ============================================

    async def send_command(self, command_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"type": command_type}
        if payload is not None:
            message["payload"] = payload
        logger.info(f"🖱️ Sending {command_type}")
        await self._send_json(message)

    async def sync_google_sheet(self, url: str) -> Optional[str]:
        """Fetch the sheet and hand the rows to the core. Returns an error message, or None on success."""
        try:
            sheet = await fetch_sheet_values(self.client, url, self.sheets_api_key)
        except PopulatorError as e:
            logger.warning(f"⚠️ Sheet sync failed: {e.message}")
            return e.message
        await self.send_command(
            MESSAGE_TYPE_SYNC_GOOGLE_SHEET,
            {"url": url, "headers": sheet.headers, "rows": sheet.rows},
        )
        return None
