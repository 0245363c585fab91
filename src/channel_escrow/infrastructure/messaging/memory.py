"""In-process Messaging Surface.

Backs the HTTP API (chat adapters post participant messages to it and read
the transcript back) and the test suite. A message an actor posts is handed
to a collector only if one is waiting for that actor in that channel, the
way a chat-platform message collector only sees messages that arrive while
it is listening; otherwise the message just lands in the transcript.
"""

from __future__ import annotations

import asyncio
import itertools
import uuid
from dataclasses import dataclass, field

from channel_escrow.domain.protocols import Prompt
from channel_escrow.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ChannelMessage:
    """One message in a channel transcript."""

    message_id: str
    author: str
    text: str
    prompt: Prompt | None = None
    mentions: tuple[str, ...] = ()
    deleted: bool = False


@dataclass
class _Channel:
    channel_id: str
    members: tuple[str, str]
    transcript: list[ChannelMessage] = field(default_factory=list)
    muted: set[str] = field(default_factory=set)
    waiters: dict[str, list[asyncio.Future[str]]] = field(default_factory=dict)


class InMemoryMessagingSurface:
    """MessagingSurface holding channels in a dict."""

    SYSTEM_AUTHOR = "escrow-bot"

    def __init__(self) -> None:
        self._channels: dict[str, _Channel] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # MessagingSurface
    # ------------------------------------------------------------------

    async def create_channel(self, initiator: str, counterparty: str) -> str:
        channel_id = f"deal-{uuid.uuid4().hex[:12]}"
        self._channels[channel_id] = _Channel(channel_id, (initiator, counterparty))
        logger.info("messaging.channel_created", channel_id=channel_id)
        return channel_id

    async def delete_channel(self, channel_id: str) -> None:
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return
        for waiters in channel.waiters.values():
            for fut in waiters:
                if not fut.done():
                    fut.cancel()
        logger.info("messaging.channel_deleted", channel_id=channel_id)

    async def channel_exists(self, channel_id: str) -> bool:
        return channel_id in self._channels

    async def send_message(
        self,
        channel_id: str,
        text: str,
        *,
        prompt: Prompt | None = None,
        mentions: tuple[str, ...] = (),
    ) -> str:
        channel = self._require(channel_id)
        message = ChannelMessage(
            message_id=str(next(self._ids)),
            author=self.SYSTEM_AUTHOR,
            text=text,
            prompt=prompt,
            mentions=mentions,
        )
        channel.transcript.append(message)
        return message.message_id

    async def edit_message(
        self,
        channel_id: str,
        message_id: str,
        text: str,
        *,
        prompt: Prompt | None = None,
    ) -> None:
        message = self._find(channel_id, message_id)
        message.text = text
        message.prompt = prompt

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        self._find(channel_id, message_id).deleted = True

    async def set_posting_allowed(
        self, channel_id: str, actor_id: str, allowed: bool
    ) -> None:
        channel = self._require(channel_id)
        if allowed:
            channel.muted.discard(actor_id)
        else:
            channel.muted.add(actor_id)

    async def collect_message(
        self, channel_id: str, actor_id: str, timeout: float
    ) -> str | None:
        channel = self._channels.get(channel_id)
        if channel is None:
            return None
        fut: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        waiters = channel.waiters.setdefault(actor_id, [])
        waiters.append(fut)
        try:
            return await asyncio.wait_for(fut, timeout)
        except TimeoutError:
            return None
        except asyncio.CancelledError:
            # The channel was deleted under the collector: report "no message".
            task = asyncio.current_task()
            if channel_id not in self._channels and task is not None and not task.cancelling():
                return None
            raise
        finally:
            if fut in waiters:
                waiters.remove(fut)

    # ------------------------------------------------------------------
    # Inbound side (chat adapter / API / tests)
    # ------------------------------------------------------------------

    async def post_message(self, channel_id: str, actor_id: str, text: str) -> bool:
        """Record a participant message; return True if a collector received it."""
        channel = self._require(channel_id)
        if actor_id not in channel.members or actor_id in channel.muted:
            logger.info("messaging.post_rejected", channel_id=channel_id, actor_id=actor_id)
            return False
        channel.transcript.append(
            ChannelMessage(message_id=str(next(self._ids)), author=actor_id, text=text)
        )
        for fut in channel.waiters.get(actor_id, []):
            if not fut.done():
                fut.set_result(text)
                return True
        return False

    def is_collecting(self, channel_id: str, actor_id: str) -> bool:
        channel = self._channels.get(channel_id)
        if channel is None:
            return False
        return any(not f.done() for f in channel.waiters.get(actor_id, []))

    def is_muted(self, channel_id: str, actor_id: str) -> bool:
        return actor_id in self._require(channel_id).muted

    def transcript(self, channel_id: str) -> list[ChannelMessage]:
        return [m for m in self._require(channel_id).transcript if not m.deleted]

    def _require(self, channel_id: str) -> _Channel:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise KeyError(f"Unknown channel: {channel_id}")
        return channel

    def _find(self, channel_id: str, message_id: str) -> ChannelMessage:
        for message in self._require(channel_id).transcript:
            if message.message_id == message_id:
                return message
        raise KeyError(f"Unknown message {message_id} in {channel_id}")
