"""Stateful continuation for the Responses protocol.

After a Responses stream finishes, a marker carrying the server's response
id is appended to the assistant output.  On the next request the history
after that marker is sent alone with ``previous_response_id``, so the
server does not have to re-read the whole conversation.  Backends that
reject ``previous_response_id`` get the full history instead, and are
remembered for the rest of the process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from llm_relay.adapters.openai_responses import OpenAIResponsesAdapter
from llm_relay.config import ModelConfig
from llm_relay.errors import HttpStatusError
from llm_relay.types import CallOptions, DataPart, Message, Role

_logger = logging.getLogger(__name__)

STATEFUL_MARKER_MIME = "application/vnd.llm-relay.stateful-marker"


def encode_marker(model_id: str, response_id: str) -> DataPart:
    return DataPart(STATEFUL_MARKER_MIME, f"{model_id}\\{response_id}".encode())


def decode_marker(part: Any) -> tuple[str, str] | None:
    """Return ``(model_id, response_id)`` if *part* is a continuity marker."""
    if not isinstance(part, DataPart) or part.mime_type != STATEFUL_MARKER_MIME:
        return None
    try:
        decoded = part.data.decode()
    except UnicodeDecodeError:
        return None
    sep = decoded.find("\\")
    if sep <= 0:
        return None
    model_id, response_id = decoded[:sep].strip(), decoded[sep + 1:].strip()
    if not model_id or not response_id:
        return None
    return model_id, response_id


def find_last_marker(model_id: str, messages: list[Message]) -> tuple[str, int] | None:
    """Scan backward for the newest assistant marker for *model_id*.

    Returns ``(response_id, message_index)``.
    """
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role != Role.ASSISTANT:
            continue
        for part in messages[i].parts:
            decoded = decode_marker(part)
            if decoded and decoded[0] == model_id:
                return decoded[1], i
    return None


@dataclass
class ContinuityPlan:
    """Request body to send, plus the full-history body to fall back to.

    ``fallback_body`` is ``None`` when ``body`` already carries the whole
    history.
    """

    base_url: str
    body: dict[str, Any]
    fallback_body: dict[str, Any] | None = None

    @property
    def uses_previous_response_id(self) -> bool:
        return self.fallback_body is not None


class ContinuityTracker:
    """Process-wide record of base URLs that reject ``previous_response_id``."""

    def __init__(self) -> None:
        self._unsupported: set[str] = set()

    @staticmethod
    def _normalize(base_url: str) -> str:
        return base_url.rstrip("/")

    def is_supported(self, base_url: str) -> bool:
        return self._normalize(base_url) not in self._unsupported

    def mark_unsupported(self, base_url: str) -> None:
        self._unsupported.add(self._normalize(base_url))

    def plan(
        self,
        adapter: OpenAIResponsesAdapter,
        model: ModelConfig,
        base_url: str,
        messages: list[Message],
        options: CallOptions | None = None,
    ) -> ContinuityPlan:
        include = model.include_reasoning_in_request
        full = adapter.convert_messages(messages, include)

        full_body = adapter.body_for(model, full.system, full.messages, options)

        found = find_last_marker(model.id, messages)
        if (
            found is None
            or "previous_response_id" in model.extra
            or not self.is_supported(base_url)
        ):
            return ContinuityPlan(base_url, full_body)

        response_id, index = found
        delta_items: list[dict[str, Any]] = []
        if index < len(messages) - 1:
            delta_items = adapter.convert_messages(messages[index + 1:], include).messages
        if not delta_items:
            return ContinuityPlan(base_url, full_body)

        _logger.debug(
            "Sending %d of %d messages after response %s",
            len(messages) - index - 1, len(messages), response_id,
        )
        delta_body = adapter.body_for(
            model, full.system, delta_items, options, previous_response_id=response_id,
        )
        return ContinuityPlan(base_url, delta_body, full_body)

    def should_fall_back(self, plan: ContinuityPlan, error: Exception) -> bool:
        """True when *error* is a rejection of the continuation id.

        Marks the base URL so the delta strategy is not tried again.
        """
        if not plan.uses_previous_response_id or not isinstance(error, HttpStatusError):
            return False
        if not error.is_client_error or error.status == 429:
            return False
        self.mark_unsupported(plan.base_url)
        _logger.warning(
            "previous_response_id rejected by %s (%d); resending full history",
            plan.base_url, error.status,
        )
        return True


DEFAULT_TRACKER = ContinuityTracker()
