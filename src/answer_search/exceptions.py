"""Exception hierarchy for the answering pipeline."""

from __future__ import annotations


class AnswerSearchError(Exception):
    """Base class for all errors raised by this package."""


class PipelineStateError(AnswerSearchError):
    """An illegal stage transition was requested (a programming error)."""

    def __init__(self, stage: str, current: str, requested: str) -> None:
        super().__init__(f"stage {stage}: cannot move from {current!r} to {requested!r}")
        self.stage = stage
        self.current = current
        self.requested = requested


class IntentParseError(AnswerSearchError):
    """The chat model's intent response could not be turned into a SearchIntent."""
