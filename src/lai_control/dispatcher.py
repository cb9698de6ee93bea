"""Routing of control-channel envelopes to the application's collaborators."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
import os
from typing import Any

from .events import ASK_EVENT, NOTIFY_EVENT, EventBus
from .framing import Envelope, Response
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)

DEV_MODE_ENV = "DEV_MODE"
DEV_MODE_VALUES = frozenset({"1", "true", "yes"})

DEV_CONVERSATION_TITLE = "Dev Test Conversation"
DEV_MODEL = "dev-model"
DEV_PROVIDER = "dev-provider"
DEFAULT_CREATE_CONTENT = "Test message"

NO_MESSAGES_FOUND = "No messages found"
CREATE_REQUIRES_DEV_MODE = "create command only available in DEV_MODE"
CREATE_MISSING_PAYLOAD = "No payload provided for create command"


def dev_mode_from_env(environ: Mapping[str, str] | None = None) -> bool:
    """Return True when ``DEV_MODE`` is 1, true, or yes (case-insensitive)."""
    env = os.environ if environ is None else environ
    return env.get(DEV_MODE_ENV, "").strip().lower() in DEV_MODE_VALUES


class Dispatcher:
    """Turn one envelope into one response.

    ``dispatch`` never raises; a failure inside a handler becomes an error
    response so the connection loop can keep going.
    """

    def __init__(
        self,
        events: EventBus,
        store: ConversationStore,
        dev_mode_enabled: bool = False,
    ) -> None:
        self.events = events
        self.store = store
        self.dev_mode_enabled = dev_mode_enabled
        self._handlers: dict[str, Callable[[Envelope], Response]] = {
            "notify": self._handle_notify,
            "ask": self._handle_ask,
            "last": self._handle_last,
            "create": self._handle_create,
        }

    def dispatch(self, envelope: Envelope) -> Response:
        handler = self._handlers.get(envelope.kind)
        if handler is None:
            # Unknown kinds are acknowledged and ignored.
            LOGGER.debug(
                "ipc.unknown_kind",
                extra={"event": "ipc.unknown_kind", "kind": envelope.kind},
            )
            return Response.ok()
        try:
            return handler(envelope)
        except Exception as exc:  # noqa: BLE001 - never break the connection loop.
            LOGGER.error(
                "ipc.dispatch_failed",
                extra={
                    "event": "ipc.dispatch_failed",
                    "kind": envelope.kind,
                    "error": str(exc),
                },
            )
            return Response.error(str(exc))

    def _handle_notify(self, envelope: Envelope) -> Response:
        self.events.publish(
            NOTIFY_EVENT, {"message": envelope.message or ""}, source="cli"
        )
        return Response.ok()

    def _handle_ask(self, envelope: Envelope) -> Response:
        # The reply arrives later through the store; the CLI polls ``last``.
        if isinstance(envelope.payload, dict):
            data: dict[str, Any] = dict(envelope.payload)
        elif envelope.payload is not None:
            data = {"payload": envelope.payload}
        else:
            data = {"prompt": envelope.message or ""}
        self.events.publish(ASK_EVENT, data, source="cli")
        return Response.ok()

    def _handle_last(self, envelope: Envelope) -> Response:
        message = self.store.get_last_assistant_message()
        if message is None:
            return Response.error(NO_MESSAGES_FOUND)
        return Response.ok(message.to_dict())

    def _handle_create(self, envelope: Envelope) -> Response:
        if not self.dev_mode_enabled:
            return Response.error(CREATE_REQUIRES_DEV_MODE)
        payload = envelope.payload
        if not isinstance(payload, dict):
            return Response.error(CREATE_MISSING_PAYLOAD)

        content = payload.get("content")
        if not isinstance(content, str):
            content = DEFAULT_CREATE_CONTENT
        conversation_id = payload.get("conversation_id")
        if not isinstance(conversation_id, str) or not conversation_id:
            conversation = self.store.create_conversation(
                DEV_CONVERSATION_TITLE, DEV_MODEL, DEV_PROVIDER
            )
            conversation_id = conversation.id

        message = self.store.create_message(conversation_id, "assistant", content)
        LOGGER.info(
            "ipc.create",
            extra={
                "event": "ipc.create",
                "conversation_id": conversation_id,
                "message_id": message.id,
            },
        )
        return Response.ok(message.to_dict())
