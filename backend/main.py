import json
import os
import sys
import signal
import logging
import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import websockets
from dotenv import load_dotenv

from data_providers import ExternalDataProvider
from data_types import LocalDataGenerator
from delegate_communicator import DEFAULT_TIMEOUTS, DelegateKind
from delegate_surface import DEFAULT_LICENSE_VERIFY_URL, DelegateSurface
from host_document import HostDocument
from license_guard import LicenseGuard
from local_bridge import create_link_pair, pump
from plugin_storage import JsonFileStore
from populator import PopulatorController

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='[%(asctime)s] [populator] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger(__name__)

ROLE_CORE = "core"
ROLE_DELEGATE = "delegate"
ROLE_LOCAL = "local"
ROLES = (ROLE_CORE, ROLE_DELEGATE, ROLE_LOCAL)

# Bridge-level message types; never forwarded to the plugin handlers
MESSAGE_TYPE_JOIN = "join"
MESSAGE_TYPE_PING = "ping"
MESSAGE_TYPE_PONG = "pong"
MESSAGE_TYPE_SYSTEM = "system"
BRIDGE_MESSAGE_TYPES = frozenset({MESSAGE_TYPE_JOIN, MESSAGE_TYPE_PING, MESSAGE_TYPE_PONG, MESSAGE_TYPE_SYSTEM})


@dataclass
class PluginConfig:
    role: str = ROLE_LOCAL
    bridge_url: str = "ws://localhost:3055"
    channel: str = "data-populator-default"
    document_path: Optional[Path] = None
    client_storage_path: Path = field(default_factory=lambda: Path.home() / ".data-populator" / "client.json")
    timeouts: Dict[DelegateKind, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    http_timeout: float = 15.0
    license_verify_url: str = DEFAULT_LICENSE_VERIFY_URL
    license_product_id: str = ""
    sheets_api_key: Optional[str] = None
    unsplash_access_key: Optional[str] = None
    cors_proxy: Optional[str] = None
    faker_seed: Optional[int] = None


class PluginAgent:
    """Connects one side of the plugin (core or delegate) to the relay bridge."""

    def __init__(self, bridge_url: str, channel: str, role: str, handler: Any):
        self.bridge_url = bridge_url
        self.channel = channel
        self.role = role
        self.handler = handler
        self.websocket = None
        self.running = True
        self.reconnect_delay = 1  # Start with 1 second
        self.max_reconnect_delay = 30  # Max 30 seconds
        self._keep_alive_task = None

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        """Safely send a JSON-serializable payload over the websocket if connected."""
        if not self.websocket:
            raise RuntimeError("WebSocket not connected")
        await self.websocket.send(json.dumps(payload))

    async def connect(self) -> bool:
        """Connect to the bridge and join the channel under our role"""
        try:
            logger.info(f"Connecting to bridge at {self.bridge_url}")
            # Image payloads are base64 and can be large
            self.websocket = await websockets.connect(self.bridge_url, max_size=None)

            await self._send_json({"type": MESSAGE_TYPE_JOIN, "role": self.role, "channel": self.channel})
            logger.info(f"Sent join message for channel: {self.channel} (role={self.role})")

            self._keep_alive_task = asyncio.create_task(self._websocket_keep_alive())
            logger.info("💓 Started WebSocket keep-alive mechanism")

            self.handler.attach(self.websocket)

            # Reset reconnect delay on successful connection
            self.reconnect_delay = 1
            return True

        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            return False

    async def listen(self) -> None:
        """Listen for messages from the bridge"""
        logger.info("🎧 Starting to listen for messages from bridge")
        while self.running and self.websocket:
            try:
                raw_message = await self.websocket.recv()
            except asyncio.CancelledError:
                logger.info("🛑 Listen loop cancelled")
                break
            except Exception as e:
                logger.error(f"❌ Error receiving message: {e}")
                break

            if not raw_message:
                logger.warning("📡 Received empty WebSocket message")
                continue

            logger.debug(f"📡 Raw WebSocket message received: {raw_message[:200]}...")
            if self._is_bridge_message(raw_message):
                continue
            try:
                await self.handler.handle_raw(raw_message)
            except Exception as e:
                logger.error(f"❌ Error handling message: {e}")

    def _is_bridge_message(self, raw_message: str) -> bool:
        try:
            message = json.loads(raw_message)
        except json.JSONDecodeError:
            return False
        if not isinstance(message, dict) or message.get("type") not in BRIDGE_MESSAGE_TYPES:
            return False
        if message.get("type") == MESSAGE_TYPE_SYSTEM:
            logger.info(f"🔧 System message: {message.get('message')}")
        return True

    async def _websocket_keep_alive(self, interval: int = 30) -> None:
        """Keep WebSocket connection alive with periodic pings"""
        try:
            while self.running and self.websocket:
                await asyncio.sleep(interval)
                try:
                    pong_waiter = await self.websocket.ping()
                    await asyncio.wait_for(pong_waiter, timeout=10)
                    logger.debug("💓 WebSocket keep-alive ping successful")
                except asyncio.TimeoutError:
                    logger.warning("💔 WebSocket keep-alive ping timed out")
                    break
                except Exception as e:
                    logger.error(f"💔 WebSocket keep-alive ping failed: {e}")
                    break
        except asyncio.CancelledError:
            logger.debug("💓 WebSocket keep-alive task cancelled")

    async def run_with_reconnect(self) -> None:
        """Main loop with reconnection logic"""
        while self.running:
            try:
                if await self.connect():
                    logger.info("🌉 Connected to bridge successfully")
                    await self.listen()
                else:
                    logger.warning("Failed to connect to bridge")
            except Exception as e:
                logger.error(f"Unexpected error: {e}")

            if self.running:
                logger.info(f"Reconnecting in {self.reconnect_delay} seconds...")
                await asyncio.sleep(self.reconnect_delay)

                # Exponential backoff up to max delay
                self.reconnect_delay = min(self.reconnect_delay * 2, self.max_reconnect_delay)

    def shutdown(self) -> None:
        """Graceful shutdown"""
        logger.info(f"Shutting down {self.role}")
        self.running = False

        if self._keep_alive_task and not self._keep_alive_task.done():
            self._keep_alive_task.cancel()
            logger.debug("💓 Cancelled WebSocket keep-alive task")

        self.handler.close()
        self.websocket = None


# ============================================
# ================ WIRING ====================
# ============================================

def build_core(config: PluginConfig) -> PopulatorController:
    if config.document_path is not None and config.document_path.exists():
        document = HostDocument.load(config.document_path)
    else:
        document = HostDocument("untitled")
        logger.info("📄 No document file given; starting with an empty document")

    guard = LicenseGuard(JsonFileStore(config.client_storage_path), product_id=config.license_product_id)
    guard.initialize()
    return PopulatorController(document, guard, document_path=config.document_path, timeouts=config.timeouts)


def build_delegate(config: PluginConfig, client: httpx.AsyncClient) -> DelegateSurface:
    generator = LocalDataGenerator(seed=config.faker_seed)
    providers = ExternalDataProvider(
        client,
        unsplash_access_key=config.unsplash_access_key,
        cors_proxy=config.cors_proxy,
    )
    return DelegateSurface(
        client,
        generator=generator,
        providers=providers,
        license_verify_url=config.license_verify_url,
        sheets_api_key=config.sheets_api_key,
        cors_proxy=config.cors_proxy,
    )


async def run_bridge_role(config: PluginConfig) -> None:
    async with httpx.AsyncClient(timeout=config.http_timeout) as client:
        handler = build_core(config) if config.role == ROLE_CORE else build_delegate(config, client)
        agent = PluginAgent(config.bridge_url, config.channel, config.role, handler)

        def signal_handler(signum, frame):
            logger.info("Received shutdown signal")
            agent.shutdown()
            sys.exit(0)

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        try:
            await agent.run_with_reconnect()
        finally:
            agent.shutdown()


async def run_local(config: PluginConfig, commands: List[Dict[str, Any]]) -> DelegateSurface:
    """Run core and delegate in one process and feed them UI commands in order."""
    async with httpx.AsyncClient(timeout=config.http_timeout) as client:
        core = build_core(config)
        delegate = build_delegate(config, client)
        core_link, delegate_link = create_link_pair()
        core.attach(core_link)
        delegate.attach(delegate_link)

        pumps = [
            asyncio.create_task(pump(core_link, core)),
            asyncio.create_task(pump(delegate_link, delegate)),
        ]
        try:
            for command in commands:
                if command.get("type") == "sync-google-sheet" and "url" in command:
                    error = await delegate.sync_google_sheet(command["url"])
                    if error:
                        logger.error(f"❌ {error}")
                else:
                    await delegate.send_command(command["type"], command.get("payload"))
                await delegate_link.drain()
                await core.wait_idle()
        finally:
            # Closing the core side lets the delegate drain every notification first
            await core_link.close()
            await asyncio.gather(pumps[1], return_exceptions=True)
            await delegate_link.close()
            await asyncio.gather(pumps[0], return_exceptions=True)
            core.close()
            delegate.close()
        return delegate


def _read_commands(stream) -> List[Dict[str, Any]]:
    commands = []
    for line in stream:
        line = line.strip()
        if not line:
            continue
        try:
            command = json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(f"❌ Skipping unreadable command line: {e}")
            continue
        if isinstance(command, dict) and "type" in command:
            commands.append(command)
    return commands


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"⚠️ {name} is not a number; using {default}")
        return default


def get_config(argv: Optional[List[str]] = None) -> PluginConfig:
    """Get configuration from environment variables or CLI args"""
    argv = sys.argv[1:] if argv is None else argv

    values: Dict[str, Optional[str]] = {
        "role": os.getenv("PLUGIN_ROLE", ROLE_LOCAL),
        "bridge-url": os.getenv("BRIDGE_URL", "ws://localhost:3055"),
        "channel": os.getenv("PLUGIN_CHANNEL"),
        "document": os.getenv("DOCUMENT_PATH"),
        "client-storage": os.getenv("CLIENT_STORAGE_PATH"),
        "seed": os.getenv("FAKER_SEED"),
    }

    # Parse CLI args for overrides
    for arg in argv:
        if arg.startswith("--") and "=" in arg:
            key, value = arg[2:].split("=", 1)
            if key in values:
                values[key] = value
            else:
                logger.warning(f"Ignoring unknown option --{key}")

    role = values["role"] or ROLE_LOCAL
    if role not in ROLES:
        logger.error(f"Unknown role '{role}', expected one of {', '.join(ROLES)}")
        sys.exit(1)

    channel = values["channel"]
    if not channel:
        channel = "data-populator-default"
        logger.info(f"No channel specified, using default: {channel}")

    seed: Optional[int] = None
    if values["seed"]:
        try:
            seed = int(values["seed"])
        except ValueError:
            logger.warning(f"⚠️ FAKER_SEED '{values['seed']}' is not an integer; generating unseeded data")

    config = PluginConfig(
        role=role,
        bridge_url=values["bridge-url"] or "ws://localhost:3055",
        channel=channel,
        document_path=Path(values["document"]) if values["document"] else None,
        timeouts={
            DelegateKind.GENERATE_DATA: _float_env("GENERATE_DATA_TIMEOUT", DEFAULT_TIMEOUTS[DelegateKind.GENERATE_DATA]),
            DelegateKind.LOAD_IMAGE: _float_env("LOAD_IMAGE_TIMEOUT", DEFAULT_TIMEOUTS[DelegateKind.LOAD_IMAGE]),
            DelegateKind.VERIFY_LICENSE: _float_env("VERIFY_LICENSE_TIMEOUT", DEFAULT_TIMEOUTS[DelegateKind.VERIFY_LICENSE]),
        },
        http_timeout=_float_env("HTTP_TIMEOUT", 15.0),
        license_verify_url=os.getenv("LICENSE_VERIFY_URL", DEFAULT_LICENSE_VERIFY_URL),
        license_product_id=os.getenv("LICENSE_PRODUCT_ID", ""),
        sheets_api_key=os.getenv("GOOGLE_SHEETS_API_KEY") or None,
        unsplash_access_key=os.getenv("UNSPLASH_ACCESS_KEY") or None,
        cors_proxy=os.getenv("CORS_PROXY") or None,
        faker_seed=seed,
    )
    if values["client-storage"]:
        config.client_storage_path = Path(values["client-storage"])
    return config


def main():
    config = get_config()

    logger.info(f"Starting Data Populator ({config.role})")
    logger.info(f"Bridge URL: {config.bridge_url}")
    logger.info(f"Channel: {config.channel}")
    logger.info(f"Document: {config.document_path or '(none)'}")

    try:
        if config.role == ROLE_LOCAL:
            # One JSON command per line on stdin, e.g. {"type": "scan-layers"}
            asyncio.run(run_local(config, _read_commands(sys.stdin)))
        else:
            asyncio.run(run_bridge_role(config))
    except KeyboardInterrupt:
        logger.info("Populator interrupted")


if __name__ == "__main__":
    main()
