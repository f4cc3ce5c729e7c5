import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .errors import AssistantError
from .history import ConversationMessage, window
from .locks import KeyedLocks
from .profiles import Mode, ProfileStore, next_mode
from .resolver import IntentResolver
from .tools import ToolDispatcher

log = logging.getLogger(__name__)

MESSAGE_EVENT = "message"
ALLOW_EVERYONE = "*"
SEEN_MESSAGE_LIMIT = 1024
FALLBACK_REPLY = "Sorry, something went wrong on my side. Please try again in a little while."


@dataclass
class InboundEvent:
    event_type: str
    sender: str
    recipient: str = ""
    from_bot: bool = False
    text: str = ""
    message_id: Optional[str] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)


class Assistant:
    """Runs one conversation turn per inbound chat message."""

    def __init__(
        self,
        *,
        store: ProfileStore,
        resolver: IntentResolver,
        dispatcher: ToolDispatcher,
        transport: Any,
        allowed_senders: Iterable[str] = (),
        history_limit: int = 10,
        onboarding_history_limit: int = 6,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.transport = transport
        self.allowed_senders: FrozenSet[str] = frozenset(allowed_senders)
        self.history_limit = history_limit
        self.onboarding_history_limit = onboarding_history_limit
        self._turn_locks = KeyedLocks()
        self._seen_messages: OrderedDict[str, None] = OrderedDict()

    def accepts(self, event: InboundEvent) -> bool:
        if event.event_type != MESSAGE_EVENT:
            return False
        if event.from_bot or not event.sender:
            return False
        if ALLOW_EVERYONE not in self.allowed_senders and event.sender not in self.allowed_senders:
            log.info("Ignoring message from unbound sender %s", event.sender)
            return False
        return bool(event.text and event.text.strip())

    def _first_delivery(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return True
        if message_id in self._seen_messages:
            return False
        self._seen_messages[message_id] = None
        while len(self._seen_messages) > SEEN_MESSAGE_LIMIT:
            self._seen_messages.popitem(last=False)
        return True

    async def handle_event(self, event: InboundEvent) -> Optional[str]:
        if not self.accepts(event):
            return None
        if not self._first_delivery(event.message_id):
            log.info("Skipping redelivered message %s from %s", event.message_id, event.sender)
            return None
        log.debug("Message %s from %s to %s", event.message_id, event.sender, event.recipient)
        return await self.handle_message(event.sender, event.text.strip(), message_id=event.message_id)

    async def handle_message(
        self, handle: str, message: str, *, message_id: Optional[str] = None
    ) -> str:
        async with self._turn_locks.hold(handle):
            await self._typing(handle, start=True)
            try:
                try:
                    reply = await self._run_turn(handle, message, message_id)
                except AssistantError as exc:
                    log.warning("Turn for %s failed: %s: %s", handle, type(exc).__name__, exc)
                    reply = FALLBACK_REPLY
                except Exception as exc:
                    log.exception("Unexpected failure handling %s: %s", handle, exc)
                    reply = FALLBACK_REPLY
                await self._send(handle, reply)
            finally:
                await self._typing(handle, start=False)
        return reply

    async def _run_turn(self, handle: str, message: str, message_id: Optional[str]) -> str:
        profile = self.store.find_or_create(handle)
        mode = next_mode(profile)
        log.info("Turn for %s in %s mode", handle, mode.value)
        if mode is Mode.ONBOARDING:
            history = await self._history(handle, message_id, self.onboarding_history_limit)
            intent = await self.resolver.resolve_onboarding(profile, history, message)
            updates = intent.profile_updates()
            if updates:
                self.store.update_profile(handle, **updates)
                log.info("Onboarding stored %s for %s", ", ".join(sorted(updates)), handle)
            return intent.reply

        history = await self._history(handle, message_id, self.history_limit)
        intent = await self.resolver.resolve_operational(profile, history, message)
        if intent.invocation is None:
            return intent.text or ""
        invocation = intent.invocation
        result = await self.dispatcher.dispatch(invocation.tool_name, invocation.arguments, handle)
        return result.render()

    async def _history(
        self, handle: str, message_id: Optional[str], limit: int
    ) -> List[ConversationMessage]:
        try:
            raw = await self.transport.get_history(handle)
        except AssistantError as exc:
            log.warning("History unavailable for %s: %s", handle, exc)
            return []
        if message_id:
            raw = [item for item in raw if item.message_id != message_id]
        return window(raw, limit)

    async def _send(self, handle: str, text: str) -> None:
        try:
            await self.transport.send_text(handle, text)
        except AssistantError as exc:
            log.error("Failed to deliver reply to %s: %s", handle, exc)

    async def _typing(self, handle: str, *, start: bool) -> None:
        try:
            if start:
                await self.transport.start_typing(handle)
            else:
                await self.transport.stop_typing(handle)
        except AssistantError as exc:
            log.warning("Typing indicator failed for %s: %s", handle, exc)
