"""
Pytest fixtures for the populator tests.

The core side is exercised against a ScriptedLink that answers delegated
requests in-process, so no relay server and no network are needed.
"""

import asyncio
import base64
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from host_document import HostDocument, SceneNode
from license_guard import LicenseGuard
from plugin_messages import parse_core_message
from plugin_storage import KeyValueStore
from populator import PopulatorController

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-body"


# =============================================================================
# Helpers
# =============================================================================

class FakeClock:
    """Callable clock the license guard reads; tests move it by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class RecordingLink:
    """Collects every JSON message sent through it."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == message_type]

    def last(self, message_type: str) -> Dict[str, Any]:
        matches = self.of_type(message_type)
        assert matches, f"no {message_type} message was sent; got {[m.get('type') for m in self.sent]}"
        return matches[-1]


class ScriptedLink(RecordingLink):
    """
    Link from the core to a fake delegate.

    Delegated requests are answered on the next loop iteration:
    - generate-data: `generated[data_type_id]` or "<type>-<i>" values
    - load-image: PNG_BYTES unless the url is in `broken_images`
    - verify-license: `license_response`
    Kinds listed in `silent` are never answered.
    """

    def __init__(self) -> None:
        super().__init__()
        self.controller: Optional[PopulatorController] = None
        self.generated: Dict[str, List[str]] = {}
        self.generation_errors: Dict[str, Dict[str, Any]] = {}
        self.broken_images: set = set()
        self.license_response: Optional[Dict[str, Any]] = None
        self.silent: set = set()

    async def send(self, message: str) -> None:
        await super().send(message)
        request = json.loads(message)
        if request["type"] in ("generate-data", "load-image", "verify-license") and request["type"] not in self.silent:
            asyncio.get_running_loop().call_soon(self._answer, request)

    def _answer(self, request: Dict[str, Any]) -> None:
        reply: Dict[str, Any] = {"id": request["id"]}
        payload = request["payload"]
        if request["type"] == "generate-data":
            reply["type"] = "data-generated"
            data_type_id = payload["data_type_id"]
            if data_type_id in self.generation_errors:
                reply["error"] = self.generation_errors[data_type_id]
            else:
                reply["data"] = self.generated.get(
                    data_type_id, [f"{data_type_id}-{i}" for i in range(payload["count"])]
                )
        elif request["type"] == "load-image":
            reply["type"] = "image-loaded"
            if payload["url"] not in self.broken_images:
                reply["data"] = base64.b64encode(PNG_BYTES).decode("ascii")
        else:
            reply["type"] = "license-verified"
            reply["data"] = self.license_response
        self.controller.communicator.handle_response(parse_core_message(reply))


def text_node(node_id: str, name: str, characters: str = "") -> SceneNode:
    return SceneNode(node_id, name, "TEXT", characters=characters, font_name={"family": "Inter", "style": "Regular"})


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 30))


@pytest.fixture
def client_store() -> KeyValueStore:
    """Client-scoped storage (license fields)."""
    return KeyValueStore()


@pytest.fixture
def guard(client_store: KeyValueStore, clock: FakeClock) -> LicenseGuard:
    guard = LicenseGuard(client_store, product_id="prod-123", clock=clock)
    guard.initialize()
    return guard


@pytest.fixture
def document() -> HostDocument:
    """
    Two cards sharing marker names.

    - %name: two TEXT layers
    - %avatar: two RECTANGLE layers
    - %price: one FRAME with a TEXT child
    """
    card_one = SceneNode("1:1", "Card", "FRAME", children=[
        text_node("1:2", "%name", "Name"),
        SceneNode("1:3", "%avatar", "RECTANGLE"),
        SceneNode("1:4", "%price", "FRAME", children=[text_node("1:5", "Label", "$0")]),
        text_node("1:6", "Plain", "unchanged"),
    ])
    card_two = SceneNode("2:1", "Card 2", "FRAME", children=[
        text_node("2:2", "%name", "Name"),
        SceneNode("2:3", "%avatar", "RECTANGLE"),
    ])
    page = SceneNode("0:1", "Page 1", "PAGE", children=[card_one, card_two])
    doc = HostDocument("doc-1", pages=[page])
    doc.select(["1:1", "2:1"])
    return doc


@pytest.fixture
def link() -> ScriptedLink:
    return ScriptedLink()


@pytest.fixture
def make_controller(document: HostDocument, guard: LicenseGuard, link: ScriptedLink) -> Callable[..., PopulatorController]:
    """Factory so tests can pass timeouts or a document path."""

    def factory(**kwargs: Any) -> PopulatorController:
        controller = PopulatorController(document, guard, **kwargs)
        controller.attach(link)
        link.controller = controller
        return controller

    return factory


@pytest.fixture
def controller(make_controller: Callable[..., PopulatorController]) -> PopulatorController:
    return make_controller()


@pytest.fixture
def mock_client_factory() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an httpx.AsyncClient whose requests are served by a handler function."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def recording_link() -> RecordingLink:
    return RecordingLink()
