from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from training_worker.jobs.outcomes import EvaluationOutcome, SampleGame, SelfPlayOutcome
from training_worker.services.store import InMemoryJobStore


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FixedOutcomes:
    def __init__(self) -> None:
        self.self_play_calls: list[dict] = []
        self.evaluate_calls: list[dict] = []

    def self_play(self, *, games: int, model_version: str | None) -> SelfPlayOutcome:
        self.self_play_calls.append({"games": games, "model_version": model_version})
        return SelfPlayOutcome(
            win_rate=0.55,
            avg_turns=12.0,
            sample_games=[
                SampleGame(winner="player1", turn_count=12, duration_seconds=30),
                SampleGame(winner="player2", turn_count=11, duration_seconds=25),
            ],
        )

    def evaluate(self, *, eval_games: int, model_version: str | None) -> EvaluationOutcome:
        self.evaluate_calls.append({"eval_games": eval_games, "model_version": model_version})
        return EvaluationOutcome(win_rate_vs_previous=0.6, policy_accuracy=0.7, value_accuracy=0.8)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore(job_max_attempts=3)


@pytest.fixture
def clocked_store(clock: ManualClock) -> InMemoryJobStore:
    return InMemoryJobStore(job_max_attempts=3, clock=clock)


@pytest.fixture
def outcomes() -> FixedOutcomes:
    return FixedOutcomes()
