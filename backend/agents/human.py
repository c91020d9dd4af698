"""Presentation port between the turn orchestrator and the human.

The orchestrator never talks to a terminal or socket directly. It receives a
HumanInterface and calls `write`, `prompt` and `confirm` on it. The
event-bus implementation turns each blocking question into a pending
request: a HUMAN_INPUT_REQUESTED event is published, and the turn stays
suspended until some transport (HTTP, WebSocket) calls `resolve` with the
answer.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Literal, Protocol

import structlog

from events.bus import EventBus
from events.types import AgentEvent, EventType

logger = structlog.get_logger()

_YES_ANSWERS = frozenset({"y", "yes"})


class HumanInterface(Protocol):
    """What the orchestrator needs from whoever is driving the session."""

    async def write(self, text: str) -> None: ...

    async def prompt(self, question: str) -> str: ...

    async def confirm(self, question: str) -> bool: ...


class NoPendingRequestError(LookupError):
    """Raised when an answer does not match any pending request."""


@dataclass
class PendingRequest:
    request_id: str
    question: str
    kind: Literal["prompt", "confirm"]
    future: asyncio.Future[str]


class EventBusHumanInterface:
    """HumanInterface whose questions are answered through `resolve`.

    Attributes:
        session_id: Session whose event stream carries the requests.
        event_bus: Bus used to publish requests and messages.
    """

    def __init__(self, session_id: str, event_bus: EventBus) -> None:
        self.session_id = session_id
        self.event_bus = event_bus
        self._pending: dict[str, PendingRequest] = {}

    @property
    def pending(self) -> list[PendingRequest]:
        return list(self._pending.values())

    async def write(self, text: str) -> None:
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.AGENT_MESSAGE,
                session_id=self.session_id,
                data={"content": text},
            )
        )

    async def _ask(self, question: str, kind: Literal["prompt", "confirm"]) -> str:
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, question, kind, future)

        await self.event_bus.publish(
            AgentEvent(
                type=EventType.HUMAN_INPUT_REQUESTED,
                session_id=self.session_id,
                data={"request_id": request_id, "question": question, "kind": kind},
            )
        )
        logger.info("human_input_requested", session_id=self.session_id, request_id=request_id, kind=kind)

        try:
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def prompt(self, question: str) -> str:
        return await self._ask(question, "prompt")

    async def confirm(self, question: str) -> bool:
        answer = await self._ask(question, "confirm")
        return answer.strip().lower() in _YES_ANSWERS

    async def resolve(self, answer: str, request_id: str | None = None) -> str:
        """Answer a pending request.

        Args:
            answer: The human's free-text answer.
            request_id: Which request to answer; defaults to the oldest one.

        Returns:
            The id of the request that was answered.

        Raises:
            NoPendingRequestError: If nothing matching is pending.
        """
        if request_id is None:
            if not self._pending:
                raise NoPendingRequestError("No pending request")
            request_id = next(iter(self._pending))

        request = self._pending.get(request_id)
        if request is None or request.future.done():
            raise NoPendingRequestError(f"No pending request {request_id}")

        request.future.set_result(answer)
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.HUMAN_INPUT_RECEIVED,
                session_id=self.session_id,
                data={"request_id": request_id, "answer": answer},
            )
        )
        return request_id

    def abort_pending(self, error: Exception) -> int:
        """Fail every outstanding request with `error`.

        The waiting turn sees `error` raised from its `prompt`/`confirm`
        call. Returns how many requests were aborted.
        """
        aborted = 0
        for request in list(self._pending.values()):
            if not request.future.done():
                request.future.set_exception(error)
                aborted += 1
        return aborted

    def cancel_pending(self) -> None:
        """Cancel every outstanding request, e.g. on session close."""
        for request in self._pending.values():
            if not request.future.done():
                request.future.cancel()
        self._pending.clear()
