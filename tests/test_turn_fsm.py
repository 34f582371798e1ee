import random

import pytest

from voice_avatar.services.turn_fsm import EventType, Phase, TurnEvent, TurnState, reduce

IDLE = TurnState()
LISTENING = TurnState(Phase.LISTENING)
THINKING = TurnState(Phase.THINKING)


@pytest.mark.parametrize(
    "state, event, expected",
    [
        (IDLE, TurnEvent.listen(), LISTENING),
        (LISTENING, TurnEvent.listen(), LISTENING),
        (LISTENING, TurnEvent.heard("hi"), THINKING),
        (IDLE, TurnEvent.heard("hi"), IDLE),
        (IDLE, TurnEvent.think(), THINKING),
        (LISTENING, TurnEvent.think(), THINKING),
        (THINKING, TurnEvent.speak_seg(2), TurnState(Phase.SPEAKING, 2)),
        (TurnState(Phase.SPEAKING, 2), TurnEvent.speak_seg(1), TurnState(Phase.SPEAKING, 3)),
        (THINKING, TurnEvent.speak_seg(0), THINKING),
        (LISTENING, TurnEvent.speak_seg(1), LISTENING),
        (TurnState(Phase.SPEAKING, 2), TurnEvent.utter_end(), TurnState(Phase.SPEAKING, 1)),
        (
            TurnState(Phase.SPEAKING, 1, True),
            TurnEvent.utter_end(),
            TurnState(Phase.LISTENING, 0, True),
        ),
        (TurnState(Phase.SPEAKING, 1), TurnEvent.utter_end(), TurnState(Phase.SPEAKING, 0)),
        (THINKING, TurnEvent.utter_end(), THINKING),
        (THINKING, TurnEvent.stream_done(), TurnState(Phase.LISTENING, 0, True)),
        (
            TurnState(Phase.SPEAKING, 2),
            TurnEvent.stream_done(),
            TurnState(Phase.SPEAKING, 2, True),
        ),
        (TurnState(Phase.SPEAKING, 0), TurnEvent.stream_done(), TurnState(Phase.LISTENING, 0, True)),
        (TurnState(Phase.SPEAKING, 3, True), TurnEvent.cancel(), LISTENING),
        (IDLE, TurnEvent.cancel(), LISTENING),
    ],
)
def test_transitions(state, event, expected):
    assert reduce(state, event) == expected


def test_full_turn():
    state = IDLE
    for event in (
        TurnEvent.listen(),
        TurnEvent.heard("Tell me about your project."),
        TurnEvent.speak_seg(1),
        TurnEvent.speak_seg(1),
        TurnEvent.utter_end(),
        TurnEvent.stream_done(),
    ):
        state = reduce(state, event)
    assert state == TurnState(Phase.SPEAKING, 1, True)

    state = reduce(state, TurnEvent.utter_end())
    assert state.phase is Phase.LISTENING


def _random_event(rng: random.Random) -> TurnEvent:
    kind = rng.choice(list(EventType))
    if kind is EventType.SPEAK_SEG:
        return TurnEvent.speak_seg(rng.randint(0, 3))
    if kind is EventType.HEARD:
        return TurnEvent.heard("words")
    return TurnEvent(kind)


@pytest.mark.parametrize("seed", range(20))
def test_speaking_never_left_with_pending_work(seed):
    rng = random.Random(seed)
    state = IDLE
    for _ in range(200):
        event = _random_event(rng)
        nxt = reduce(state, event)
        assert nxt.pending >= 0
        if nxt.phase is not Phase.SPEAKING:
            assert nxt.pending == 0
        if (
            state.phase is Phase.SPEAKING
            and nxt.phase is not Phase.SPEAKING
            and event.type is not EventType.CANCEL
        ):
            assert state.pending <= 1
            assert event.type in (EventType.UTTER_END, EventType.STREAM_DONE)
        state = nxt
