"""Command queue and batch approval.

All tool calls parsed from one agent response form a CommandQueue. The
human makes one decision for the whole batch:

- all: run everything; dangerous-tool confirmations are pre-approved.
- step: run items one by one; dangerous tools are confirmed individually.
- abort: drop the batch without running anything.
"""

from collections import deque
from collections.abc import Iterable
from enum import StrEnum

import structlog

from agents.human import HumanInterface
from agents.protocol import ToolCall

logger = structlog.get_logger()


class ApprovalMode(StrEnum):
    ALL = "all"
    STEP = "step"
    ABORT = "abort"


_ANSWER_MODES: dict[str, ApprovalMode] = {
    "a": ApprovalMode.ALL,
    "all": ApprovalMode.ALL,
    "y": ApprovalMode.ALL,
    "yes": ApprovalMode.ALL,
    "s": ApprovalMode.STEP,
    "step": ApprovalMode.STEP,
}


def parse_approval_answer(answer: str) -> ApprovalMode:
    """Map a free-text answer to an ApprovalMode; unrecognized means abort."""
    return _ANSWER_MODES.get((answer or "").strip().lower(), ApprovalMode.ABORT)


class CommandQueue:
    """FIFO of tool calls from one agent response.

    Only the orchestrator reads from or writes to a queue.
    """

    def __init__(self, calls: Iterable[ToolCall] = ()) -> None:
        self._items: deque[ToolCall] = deque(calls)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def pop_next(self) -> ToolCall | None:
        return self._items.popleft() if self._items else None

    def discard_remaining(self) -> list[ToolCall]:
        """Drop every remaining item and return what was dropped."""
        dropped = list(self._items)
        self._items.clear()
        return dropped


def format_batch_summary(queue: CommandQueue) -> str:
    lines = [f"The agent wants to run {len(queue)} tool call(s):"]
    lines.extend(f"  {index}. {call.describe()}" for index, call in enumerate(queue, start=1))
    lines.append("Run [a]ll, [s]tep through, or abort?")
    return "\n".join(lines)


async def request_batch_approval(queue: CommandQueue, human: HumanInterface) -> ApprovalMode:
    """Ask once for the whole batch."""
    answer = await human.prompt(format_batch_summary(queue))
    mode = parse_approval_answer(answer)
    logger.info("queue_approval", mode=mode.value, size=len(queue))
    return mode
