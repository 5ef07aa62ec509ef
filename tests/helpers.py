"""Shared test doubles and sample data."""

from chatgroup.models import Character, Message

HOLMES = Character(
    id="sherlock", name="Sherlock Holmes",
    description="the world's greatest consulting detective.",
)
EINSTEIN = Character(
    id="einstein", name="Einstein",
    description="a theoretical physicist who developed the theory of relativity.",
)
CURIE = Character(
    id="curie", name="Marie Curie",
    description="a pioneering physicist and chemist who studied radioactivity.",
)


class StubLLM:
    """Replays canned responses in order; an Exception instance is raised instead.

    Records every (stage, prompt, image) call in `calls`.
    """

    def __init__(self, *responses) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, str, object]] = []

    async def __call__(self, stage, prompt, image=None):
        self.calls.append((stage, prompt, image))
        if not self._responses:
            raise AssertionError(f"unexpected LLM call for stage {stage!r}")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RoutingLLM:
    """Answers by stage: `director` gets one fixed reply, everything else is
    produced by `reply(prompt)`. Safe under concurrent calls."""

    def __init__(self, director, reply=lambda prompt: "ok") -> None:
        self._director = director
        self._reply = reply
        self.calls: list[tuple[str, str, object]] = []

    async def __call__(self, stage, prompt, image=None):
        self.calls.append((stage, prompt, image))
        result = self._director if stage == "director" else self._reply(prompt)
        if isinstance(result, Exception):
            raise result
        return result


def make_message(id, role, content, character_id=None, **extra) -> Message:
    return Message(
        id=id, role=role, content=content,
        timestamp="2026-01-01T00:00:00+00:00",
        character_id=character_id, **extra,
    )
