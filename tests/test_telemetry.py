from fastapi import FastAPI
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from training_worker.core.config import Settings
from training_worker.core.telemetry import _parse_headers, setup_api_telemetry, setup_telemetry, shutdown_api_telemetry


def test_api_telemetry_records_server_spans() -> None:
    app = FastAPI()

    @app.get("/ping")
    async def ping() -> dict[str, bool]:
        return {"pong": True}

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    runtime = setup_api_telemetry(app, Settings(otel_enabled=True, otel_exporter_otlp_endpoint=None))
    exporter = InMemorySpanExporter()
    runtime.provider.add_span_processor(SimpleSpanProcessor(exporter))

    client = TestClient(app)
    assert client.get("/ping").status_code == 200
    assert client.get("/healthz").status_code == 200
    routes = {span.attributes.get("http.route") for span in exporter.get_finished_spans()}

    shutdown_api_telemetry(app, runtime)

    assert "/ping" in routes
    assert "/healthz" not in routes
    assert runtime.enabled is False


def test_disabled_telemetry_has_no_provider() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False))
    assert runtime.enabled is False
    assert runtime.provider is None


def test_parse_headers_skips_malformed_items() -> None:
    assert _parse_headers("authorization=Bearer abc, x-team = ml ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "ml",
    }
    assert _parse_headers(None) == {}
