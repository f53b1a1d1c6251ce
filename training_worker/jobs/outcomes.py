"""Batch outcome sources for the training job handlers.

Handlers only record what a source reports. ``RandomBaselineOutcomes`` is a
placeholder that draws values from fixed ranges until real self-play and
evaluation runs are wired in.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class SampleGame:
    winner: str
    turn_count: int
    duration_seconds: int


@dataclass(slots=True)
class SelfPlayOutcome:
    win_rate: float
    avg_turns: float
    sample_games: list[SampleGame] = field(default_factory=list)


@dataclass(slots=True)
class EvaluationOutcome:
    win_rate_vs_previous: float
    policy_accuracy: float
    value_accuracy: float


class OutcomeSource(Protocol):
    def self_play(self, *, games: int, model_version: str | None) -> SelfPlayOutcome: ...

    def evaluate(self, *, eval_games: int, model_version: str | None) -> EvaluationOutcome: ...


def sample_game_count(games: int) -> int:
    return min(5, max(1, games // 20))


class RandomBaselineOutcomes:
    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)

    def self_play(self, *, games: int, model_version: str | None) -> SelfPlayOutcome:
        win_rate = 0.4 + self._rng.random() * 0.3
        avg_turns = 10 + self._rng.random() * 4
        samples = [
            SampleGame(
                winner="player1" if self._rng.random() < win_rate else "player2",
                turn_count=round(avg_turns + self._rng.uniform(-2.0, 2.0)),
                duration_seconds=20 + self._rng.randrange(40),
            )
            for _ in range(sample_game_count(games))
        ]
        return SelfPlayOutcome(win_rate=win_rate, avg_turns=avg_turns, sample_games=samples)

    def evaluate(self, *, eval_games: int, model_version: str | None) -> EvaluationOutcome:
        return EvaluationOutcome(
            win_rate_vs_previous=0.45 + self._rng.random() * 0.25,
            policy_accuracy=0.5 + self._rng.random() * 0.4,
            value_accuracy=0.5 + self._rng.random() * 0.4,
        )


def sample_game_rows(
    outcome: SelfPlayOutcome,
    *,
    job_id: str,
    model_version: str | None,
) -> list[dict[str, Any]]:
    return [
        {
            "game_type": "self_play",
            "status": "completed",
            "player1_type": "neural",
            "player2_type": "neural",
            "winner": game.winner,
            "turn_count": game.turn_count,
            "duration_seconds": game.duration_seconds,
            "game_data": {
                "batch_job_id": job_id,
                "model_version": model_version,
                "note": "background self-play sample",
            },
        }
        for game in outcome.sample_games
    ]
