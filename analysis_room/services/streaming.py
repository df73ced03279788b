"""
Turn streaming protocol: typed events, an ordering state machine and SSE encoding.

Order enforced per round:
    status* -> safety? -> meta_agent -> experts -> scout? -> turn* -> result -> done
status may appear anywhere before done; error ends the stream from any state.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, FrozenSet

from ..utils.logging_config import get_logger

logger = get_logger(__name__)

KEEPALIVE_COMMENT = ': keep-alive\n\n'


class EventName(str, Enum):
    STATUS = 'status'
    SAFETY = 'safety'
    META_AGENT = 'meta_agent'
    EXPERTS = 'experts'
    SCOUT = 'scout'
    TURN = 'turn'
    RESULT = 'result'
    DONE = 'done'
    ERROR = 'error'


class StreamPhase(str, Enum):
    START = 'start'
    SAFETY = 'safety'
    META_AGENT = 'meta_agent'
    EXPERTS = 'experts'
    SCOUT = 'scout'
    TURNS = 'turns'
    RESULT = 'result'
    CLOSED = 'closed'


class StreamProtocolError(Exception):
    """Custom exception for out-of-order stream events."""
    pass


@dataclass(frozen=True)
class StreamEvent:
    name: EventName
    data: Dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        return f'event: {self.name.value}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n'


_TRANSITIONS: Dict[StreamPhase, Dict[EventName, StreamPhase]] = {
    StreamPhase.START: {EventName.SAFETY: StreamPhase.SAFETY, EventName.META_AGENT: StreamPhase.META_AGENT},
    StreamPhase.SAFETY: {EventName.META_AGENT: StreamPhase.META_AGENT},
    StreamPhase.META_AGENT: {EventName.EXPERTS: StreamPhase.EXPERTS},
    StreamPhase.EXPERTS: {EventName.SCOUT: StreamPhase.SCOUT, EventName.TURN: StreamPhase.TURNS, EventName.RESULT: StreamPhase.RESULT},
    StreamPhase.SCOUT: {EventName.TURN: StreamPhase.TURNS, EventName.RESULT: StreamPhase.RESULT},
    StreamPhase.TURNS: {EventName.TURN: StreamPhase.TURNS, EventName.RESULT: StreamPhase.RESULT},
    StreamPhase.RESULT: {EventName.DONE: StreamPhase.CLOSED},
    StreamPhase.CLOSED: {},
}

_ANYTIME: FrozenSet[EventName] = frozenset({EventName.STATUS})


class EventSequencer:
    """Validates that a round's events follow the protocol order.

    Also checks that turn events never outnumber the experts announced in the
    experts event.
    """

    def __init__(self):
        self.phase = StreamPhase.START
        self.turns = 0
        self.expected_turns = None

    def accept(self, event: StreamEvent) -> StreamEvent:
        """Advance the state machine, returning the event unchanged.

        Raises:
            StreamProtocolError: If the event is not allowed in the current phase
        """
        if self.phase == StreamPhase.CLOSED:
            raise StreamProtocolError(f'Event {event.name.value} after stream was closed')

        if event.name == EventName.ERROR:
            self.phase = StreamPhase.CLOSED
            return event

        if event.name in _ANYTIME:
            return event

        next_phase = _TRANSITIONS[self.phase].get(event.name)
        if next_phase is None:
            raise StreamProtocolError(f'Event {event.name.value} not allowed in phase {self.phase.value}')

        if event.name == EventName.EXPERTS:
            self.expected_turns = len(event.data.get('selected', []))
        elif event.name == EventName.TURN:
            self.turns += 1
            if self.expected_turns is not None and self.turns > self.expected_turns:
                raise StreamProtocolError(f'Turn {self.turns} exceeds {self.expected_turns} selected experts')

        self.phase = next_phase
        return event

    @property
    def closed(self) -> bool:
        return self.phase == StreamPhase.CLOSED


async def sequenced(events: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
    """Pass events through an EventSequencer."""
    sequencer = EventSequencer()
    try:
        async for event in events:
            yield sequencer.accept(event)
    finally:
        await events.aclose()


def status(stage: str, label: str, **extra: Any) -> StreamEvent:
    return StreamEvent(EventName.STATUS, {'stage': stage, 'label': label, **extra})


def error(message: str) -> StreamEvent:
    return StreamEvent(EventName.ERROR, {'message': message})
