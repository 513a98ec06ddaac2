import asyncio
from datetime import date, datetime, timezone

import pytest
from aiohttp import web
from aiohttp import test_utils

from analysis.analysis_client import AnalysisClient
from analysis.historical_context import (
    build_analysis_context, error_signature, summarize_patterns
)
from core.config.configuration_manager import AnalysisServiceConfig
from core.models.models import Priority, Severity


def valid_entry(log_id, **overrides):
    entry = {
        "logId": log_id,
        "severity": "Critical",
        "priority": "High",
        "reasoning": "Database connection pool exhausted",
        "potentialFix": "Increase pool size",
        "confidenceScore": 0.9,
    }
    entry.update(overrides)
    return entry


class FakeAnalysisService:
    """Scripted stand-in for the external service. Each call pops the next step."""

    def __init__(self, steps):
        self.steps = list(steps)
        self.requests = []

    async def analyze(self, request: web.Request):
        body = await request.json()
        self.requests.append({"body": body, "headers": dict(request.headers)})
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        return await step(body)

    async def health(self, request: web.Request):
        return web.json_response({"status": "ok"})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/analyze", self.analyze)
        app.router.add_get("/health", self.health)
        return app


def respond_valid(**overrides):
    async def step(body):
        log_id = body["logs"][0]["id"]
        return web.json_response({"analyzedLogs": [valid_entry(log_id, **overrides)]})
    return step


def respond_status(status):
    async def step(body):
        return web.json_response({"error": "unavailable"}, status=status)
    return step


def respond_slow(seconds):
    async def step(body):
        await asyncio.sleep(seconds)
        return web.json_response({"analyzedLogs": []})
    return step


def respond_raw(text):
    async def step(body):
        return web.Response(text=text, content_type="application/json")
    return step


def respond_bytes(payload: bytes):
    async def step(body):
        return web.Response(body=payload, content_type="application/json", charset="utf-8")
    return step


class TestAnalysisClient:

    @pytest.fixture
    def make_client(self, mock_logger, error_handler):
        def _make_client(server: test_utils.TestServer, **overrides):
            values = {
                "base_url": f"http://{server.host}:{server.port}",
                "api_key": "secret-key",
                "timeout_seconds": 1,
                "max_retry_attempts": 3,
                "retry_delay_seconds": 0,
            }
            values.update(overrides)
            return AnalysisClient(AnalysisServiceConfig(**values), mock_logger, error_handler)
        return _make_client

    @pytest.mark.asyncio
    async def test_successful_analysis(self, make_client, make_log):
        service = FakeAnalysisService([respond_valid()])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert outcome.succeeded
        assert outcome.attempts == 1
        assert outcome.result.severity == Severity.CRITICAL
        assert outcome.result.priority == Priority.HIGH
        assert outcome.result.potential_fix == "Increase pool size"
        assert outcome.duration_ms > 0

        request = service.requests[0]
        assert request["headers"]["Authorization"] == "Bearer secret-key"
        sent = request["body"]["logs"][0]
        assert sent["id"] == "log-1"
        assert sent["stackTrace"] == "at CheckoutController.Submit() line 42"
        assert request["body"]["parameters"]["includeSeverityClassification"] is True
        assert "errorPatterns" in request["body"]["context"]

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, make_client, make_log):
        service = FakeAnalysisService([respond_status(500), respond_status(503), respond_valid()])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert outcome.succeeded
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_yield_failure(self, make_client, make_log):
        service = FakeAnalysisService([respond_status(502)])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert not outcome.succeeded
        assert outcome.attempts == 3
        assert outcome.retryable is True
        assert "502" in outcome.reason
        assert len(service.requests) == 3

    @pytest.mark.asyncio
    async def test_timeouts_are_retried_then_fail(self, make_client, make_log):
        service = FakeAnalysisService([respond_slow(1.5)])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert not outcome.succeeded
        assert outcome.attempts == 3
        assert outcome.retryable is True

    @pytest.mark.asyncio
    async def test_max_attempts_override(self, make_client, make_log):
        service = FakeAnalysisService([respond_status(500)])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"), max_attempts=1)

        assert outcome.attempts == 1
        assert len(service.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"severity": "Urgent"},
        {"priority": "Critical"},
        {"reasoning": "   "},
        {"confidenceScore": 1.5},
        {"potentialFix": None},
    ])
    async def test_invalid_fields_fail_without_retry(self, make_client, make_log, overrides):
        service = FakeAnalysisService([respond_valid(**overrides)])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert not outcome.succeeded
        assert outcome.retryable is False
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_missing_entry_for_log_is_failure(self, make_client, make_log):
        async def other_log(body):
            return web.json_response({"analyzedLogs": [valid_entry("someone-else")]})
        service = FakeAnalysisService([other_log])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert not outcome.succeeded
        assert "log-1" in outcome.reason

    @pytest.mark.asyncio
    async def test_malformed_body_is_failure(self, make_client, make_log):
        service = FakeAnalysisService([respond_raw("not json at all")])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert not outcome.succeeded
        assert outcome.retryable is False

    @pytest.mark.asyncio
    async def test_undecodable_body_is_failure_without_retry(self, make_client, make_log):
        service = FakeAnalysisService([respond_bytes(b'{"analyzedLogs": [\xff]}')])
        async with test_utils.TestServer(service.app()) as server:
            outcome = await make_client(server).analyze_async(make_log("log-1"))

        assert not outcome.succeeded
        assert outcome.retryable is False
        assert outcome.attempts == 1
        assert len(service.requests) == 1

    @pytest.mark.asyncio
    async def test_health_check(self, make_client):
        service = FakeAnalysisService([respond_valid()])
        async with test_utils.TestServer(service.app()) as server:
            assert await make_client(server).check_health() is True
            assert await make_client(server, health_path="/missing").check_health() is False


class TestHistoricalContext:

    def test_error_signature_normalizes_volatile_parts(self):
        message = ("Order 12345 failed for tenant 3f2504e0-4f89-11d3-9a0c-0305e82c3301 "
                   "reading C:\\data\\orders\\12345.json")

        assert error_signature(message) == "Order [NUMBER] failed for tenant [GUID] reading [FILEPATH]"

    def test_error_signature_handles_posix_paths(self):
        assert error_signature("cannot open /var/log/app/out.log") == "cannot open [FILEPATH]"

    def test_patterns_rank_by_frequency(self, make_log):
        records = [
            make_log(str(i), message="Timeout calling payments", severity="High", priority="High",
                     aiReasoning="r", potentialFix="f", isAnalyzed=True,
                     analyzedAt=datetime(2024, 1, 14, tzinfo=timezone.utc))
            for i in range(3)
        ] + [
            make_log("x", message="Disk full", severity="Low", priority="Low",
                     aiReasoning="r", potentialFix="f", isAnalyzed=True,
                     analyzedAt=datetime(2024, 1, 14, tzinfo=timezone.utc)),
            make_log("unanalyzed", message="Ignored"),
        ]

        patterns = summarize_patterns(records)

        assert [(p.message, p.frequency) for p in patterns] == [("Timeout calling payments", 3), ("Disk full", 1)]

    @pytest.mark.asyncio
    async def test_context_reads_only_preceding_days(self, store, make_log):
        await store.save(date(2024, 1, 14), [make_log("before", message="Earlier failure 1",
                                                      timestamp=datetime(2024, 1, 14, 5, tzinfo=timezone.utc))])
        await store.save(date(2024, 1, 15), [make_log("target", message="Target day failure")])

        context = await build_analysis_context(store, 7, date(2024, 1, 15))

        assert context.frequent_errors == ["Earlier failure [NUMBER]"]
