"""
Shared test doubles for the generation service and time.
"""

from typing import List, Union

import pytest

from letter_guard.sdk.openai_client import GenerationRequest


class FakeClock:
    """Manually advanced clock whose sleep() moves time forward."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedGenerator:
    """Text generator that plays back a fixed list of results.

    Each entry is either text to return or an exception to raise. The last
    entry repeats once the script runs out.
    """

    def __init__(self, outcomes: List[Union[str, Exception]]):
        self.outcomes = list(outcomes)
        self.requests: List[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.outcomes) - 1)
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def fake_clock():
    return FakeClock()


VALID_INTAKE = {
    "senderName": "Jane Doe",
    "senderAddress": "1 Main St, Springfield",
    "recipientName": "Acme Corp",
    "recipientAddress": "99 Market St, Shelbyville",
    "issueDescription": "Acme has not refunded a defective appliance.",
    "desiredOutcome": "Full refund within 14 days.",
    "amountDemanded": 1250,
}


@pytest.fixture
def valid_intake():
    return dict(VALID_INTAKE)


@pytest.fixture
def make_generator():
    """Factory for ScriptedGenerator instances."""
    return ScriptedGenerator
