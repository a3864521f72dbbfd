"""
Local Bridge - in-process link between core and delegate

Mimics the slice of the websockets client API the plugin sides use (send / recv /
close) with a pair of asyncio queues, so both sides can run in one process
without a relay server.
"""

import asyncio
from typing import Optional, Tuple


class LinkClosed(ConnectionError):
    pass


class LocalLink:
    def __init__(self, inbox: "asyncio.Queue[Optional[str]]", outbox: "asyncio.Queue[Optional[str]]") -> None:
        self._inbox = inbox
        self._outbox = outbox
        self.closed = False  # this side sent its close marker
        self.peer_closed = False

    async def send(self, message: str) -> None:
        if self.closed or self.peer_closed:
            raise LinkClosed("link is closed")
        await self._outbox.put(message)

    async def recv(self) -> str:
        if self.peer_closed:
            raise LinkClosed("peer closed the link")
        message = await self._inbox.get()
        if message is None:
            self.peer_closed = True
            raise LinkClosed("peer closed the link")
        return message

    async def drain(self) -> None:
        """Wait until the peer has picked up everything this side sent."""
        while not self._outbox.empty():
            await asyncio.sleep(0)

    async def close(self) -> None:
        # The marker goes out once even if the peer closed first, so its receive loop ends
        if not self.closed:
            self.closed = True
            await self._outbox.put(None)


def create_link_pair() -> Tuple[LocalLink, LocalLink]:
    """Return (core_side, delegate_side); whatever one sends, the other receives."""
    to_core: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
    to_delegate: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
    return LocalLink(to_core, to_delegate), LocalLink(to_delegate, to_core)


async def pump(link: LocalLink, handler) -> None:
    """Feed every message arriving on `link` to `handler.handle_raw` until the link closes."""
    while True:
        try:
            raw = await link.recv()
        except LinkClosed:
            return
        await handler.handle_raw(raw)
