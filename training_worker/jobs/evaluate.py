from __future__ import annotations

from typing import Any

from training_worker.jobs.outcomes import OutcomeSource
from training_worker.jobs.payloads import job_payload, positive_int, resolve_model_version
from training_worker.services.repository import MetricSample

DEFAULT_EVAL_GAMES = 200


async def execute_evaluate(job: dict[str, Any], *, repository: Any, outcomes: OutcomeSource) -> dict[str, Any]:
    payload = job_payload(job)
    eval_games = positive_int(payload, "evalGames", "eval_games", default=DEFAULT_EVAL_GAMES)
    session_id = job.get("session_id")
    model_version = resolve_model_version(job)

    outcome = outcomes.evaluate(eval_games=eval_games, model_version=model_version)

    if model_version:
        await repository.ensure_model(model_version)

    await repository.append_metrics(
        [
            MetricSample(session_id, model_version, "win_rate_vs_previous", outcome.win_rate_vs_previous, eval_games),
            MetricSample(session_id, model_version, "policy_accuracy", outcome.policy_accuracy, eval_games),
            MetricSample(session_id, model_version, "value_accuracy", outcome.value_accuracy, eval_games),
        ]
    )

    if model_version:
        await repository.update_model_evaluation(
            model_version,
            win_rate_vs_previous=outcome.win_rate_vs_previous,
            policy_accuracy=outcome.policy_accuracy,
            value_accuracy=outcome.value_accuracy,
        )

    return {
        "handled": True,
        "type": job.get("type"),
        "eval_games": eval_games,
        "win_rate_vs_previous": round(outcome.win_rate_vs_previous, 4),
        "policy_accuracy": round(outcome.policy_accuracy, 4),
        "value_accuracy": round(outcome.value_accuracy, 4),
        "model_version": model_version,
    }
