"""
Choice strategies for picking which queue is serviced next.

The driver only asks a strategy to pick among the currently selectable
queue ids; applying the chosen entry stays with the driver. This keeps
property-based fuzzing, scripted replay and exhaustive search behind one
interface.
"""

from abc import ABC, abstractmethod
from typing import Sequence

from hypothesis import strategies as st


class ChoiceStrategy(ABC):
    """Abstract base class for queue selection."""

    @abstractmethod
    def choose(self, candidates: Sequence[str]) -> str:
        """Pick one queue id.

        Args:
            candidates: Non-empty, sorted selectable queue ids.

        Returns:
            One of the candidates.
        """


class DrawnChoice(ChoiceStrategy):
    """Draws each choice from a hypothesis data object.

    Use inside a ``@given(st.data())`` test (or any hypothesis-driven
    function). Every choice is a separate draw, so hypothesis shrinks a
    failing history choice by choice, toward the first candidate at each
    step and toward shorter logs overall.
    """

    def __init__(self, data: st.DataObject):
        self.data = data

    def choose(self, candidates: Sequence[str]) -> str:
        return self.data.draw(st.sampled_from(list(candidates)), label="queue")

    def __repr__(self) -> str:
        return "DrawnChoice()"


class ScriptedChoice(ChoiceStrategy):
    """Replays a recorded sequence of queue ids.

    When the scripted id is not selectable, or the script has run out, the
    first candidate is taken instead, which is also where hypothesis shrinks
    a draw to. A truncated script therefore still yields a complete history.
    """

    def __init__(self, choices: Sequence[str]):
        self.choices = list(choices)
        self.position = 0
        self.deviations = 0

    def choose(self, candidates: Sequence[str]) -> str:
        if self.position < len(self.choices):
            scripted = self.choices[self.position]
            self.position += 1
            if scripted in candidates:
                return scripted
        self.deviations += 1
        return candidates[0]

    def __repr__(self) -> str:
        return f"ScriptedChoice({self.position}/{len(self.choices)})"
