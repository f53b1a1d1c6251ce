from __future__ import annotations

from typing import Any

from training_worker.jobs.outcomes import OutcomeSource, sample_game_rows
from training_worker.jobs.payloads import job_payload, positive_int, resolve_model_version
from training_worker.services.repository import MetricSample

DEFAULT_GAMES = 100


async def execute_self_play(job: dict[str, Any], *, repository: Any, outcomes: OutcomeSource) -> dict[str, Any]:
    payload = job_payload(job)
    games = positive_int(payload, "games", default=DEFAULT_GAMES)
    session_id = job.get("session_id")
    model_version = resolve_model_version(job)

    outcome = outcomes.self_play(games=games, model_version=model_version)

    # game_count is the session's running total when the session row exists
    game_count = games
    if session_id:
        total = await repository.record_session_progress(
            session_id,
            games_delta=games,
            win_rate=outcome.win_rate,
        )
        if total is not None:
            game_count = int(total)

    if model_version:
        await repository.ensure_model(model_version)

    await repository.append_metrics(
        [
            MetricSample(session_id, model_version, "win_rate", outcome.win_rate, game_count),
            MetricSample(session_id, model_version, "avg_turns", outcome.avg_turns, game_count),
            MetricSample(session_id, model_version, "self_play_batch", float(games), game_count),
        ]
    )

    session_key = f"session_{session_id}" if session_id else f"ad_hoc_{job['id']}"
    recorded = await repository.record_games(
        session_key,
        sample_game_rows(outcome, job_id=job["id"], model_version=model_version),
    )

    return {
        "handled": True,
        "type": job.get("type"),
        "games": games,
        "game_count": game_count,
        "win_rate": round(outcome.win_rate, 4),
        "avg_turns": round(outcome.avg_turns, 2),
        "sample_games": recorded,
        "model_version": model_version,
    }
