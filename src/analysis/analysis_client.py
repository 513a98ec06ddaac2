# src/analysis/analysis_client.py
"""
Client for the external classification service.

Transport failures, timeouts and non-2xx statuses are retried with a fixed
delay up to max_retry_attempts. A response that arrives but does not carry a
valid classification for the requested record is a terminal failure for that
call. Callers always receive an AnalysisOutcome, never an exception.
"""
import aiohttp
import asyncio
import json
import time
from typing import Optional, Dict, Any

from pydantic import ValidationError as PydanticValidationError

from core.config.configuration_manager import AnalysisServiceConfig
from core.logging.system_logger import SystemLogger
from core.errors import (
    ErrorHandler, NetworkError, AnalysisResponseError, ErrorType
)
from core.models.models import (
    AnalysisContext, AnalysisOutcome, AnalysisResponse, AnalysisResult, ErrorLog
)

HEALTH_CHECK_TIMEOUT_SECONDS = 10


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


class AnalysisClient:

    def __init__(self, config: AnalysisServiceConfig, logger: SystemLogger, error_handler: ErrorHandler):
        self.config = config
        self.base_url = config.base_url.rstrip('/')
        self.logger = logger
        self.error_handler = error_handler
        self.timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def build_request(self, log: ErrorLog, context: Optional[AnalysisContext] = None) -> Dict[str, Any]:
        """Request body in the service's camelCase contract."""
        context = context or AnalysisContext()
        return {
            "logs": [{
                "id": log.id,
                "timestamp": log.timestamp.isoformat(),
                "message": log.message,
                "stackTrace": log.stack_trace,
                "source": log.source,
            }],
            "context": context.model_dump(by_alias=True, mode="json"),
            "parameters": {
                "includeSeverityClassification": True,
                "includePriorityAssignment": True,
                "includeReasoningExplanation": True,
                "maxResponseTime": self.config.timeout_seconds,
            },
        }

    async def _post_once(self, payload: Dict[str, Any], log_id: str) -> AnalysisResult:
        """
        One HTTP attempt.

        Raises:
            NetworkError: transport failure, timeout or non-2xx status (retryable)
            AnalysisResponseError: body missing or invalid for log_id (not retryable)
        """
        url = f"{self.base_url}{self.config.api_path}"

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=payload, headers=self._headers()) as response:
                    self.logger.debug(f"Analysis request: POST {self.config.api_path}",
                                      status_code=response.status, log_id=log_id)

                    if response.status < 200 or response.status >= 300:
                        raise NetworkError(
                            f"Analysis service returned HTTP {response.status}",
                            ErrorType.NETWORK_HTTP_STATUS,
                            endpoint=self.config.api_path,
                            status_code=response.status
                        )
                    body = await response.read()

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"HTTP client error: {str(e)}",
                ErrorType.NETWORK_CONNECTION_FAILED,
                endpoint=self.config.api_path
            ) from e
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Request timeout after {self.timeout.total}s",
                ErrorType.NETWORK_TIMEOUT,
                endpoint=self.config.api_path
            ) from e

        return self._parse_result(body, log_id)

    def _parse_result(self, body: bytes, log_id: str) -> AnalysisResult:
        try:
            # UnicodeDecodeError is a ValueError, so undecodable bodies land here too
            response = AnalysisResponse.model_validate(json.loads(body.decode("utf-8")))
        except (ValueError, PydanticValidationError) as e:
            raise AnalysisResponseError(
                f"Analysis response is not a valid analyzedLogs document: {e}",
                ErrorType.ANALYSIS_RESPONSE_INVALID,
                log_id=log_id
            ) from e

        entry = next((item for item in response.analyzed_logs
                      if isinstance(item, dict) and item.get("logId") == log_id), None)
        if entry is None:
            raise AnalysisResponseError(
                f"Analysis response has no entry for log {log_id}",
                ErrorType.ANALYSIS_RESULT_MISSING,
                log_id=log_id
            )

        try:
            return AnalysisResult.model_validate(entry)
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise AnalysisResponseError(
                f"Invalid analysis result for log {log_id}: {first['msg']}",
                ErrorType.ANALYSIS_RESPONSE_INVALID,
                log_id=log_id,
                field_name=".".join(str(part) for part in first['loc'])
            ) from e

    async def analyze_async(self, log: ErrorLog, context: Optional[AnalysisContext] = None,
                            max_attempts: Optional[int] = None) -> AnalysisOutcome:
        """
        Analyzes one record. max_attempts caps the attempts of this call
        (defaults to the configured max_retry_attempts).
        """
        max_attempts = max_attempts or self.config.max_retry_attempts
        payload = self.build_request(log, context)
        last_error: Optional[NetworkError] = None
        attempts = 0
        started = time.perf_counter()

        for attempt in range(1, max_attempts + 1):
            attempts = attempt
            try:
                result = await self._post_once(payload, log.id)
                return AnalysisOutcome(log_id=log.id, result=result, attempts=attempts,
                                       duration_ms=_elapsed_ms(started))
            except AnalysisResponseError as e:
                self.error_handler.handle_error(e, "analysis_response_validation", log_id=log.id)
                return AnalysisOutcome(log_id=log.id, attempts=attempts, reason=e.message, retryable=False,
                                       duration_ms=_elapsed_ms(started))
            except NetworkError as e:
                last_error = e
                self.logger.warning(f"Analysis attempt {attempt}/{max_attempts} failed for log {log.id}: {e.message}",
                                    log_id=log.id, attempt=attempt)
                if attempt < max_attempts:
                    await asyncio.sleep(self.config.retry_delay_seconds)

        self.error_handler.handle_error(last_error, "analysis_retries_exhausted", log_id=log.id, attempts=attempts)
        return AnalysisOutcome(log_id=log.id, attempts=attempts, reason=last_error.message, retryable=True,
                               duration_ms=_elapsed_ms(started))

    async def check_health(self) -> bool:
        """GET on the health path. A degraded service is reported, not raised."""
        url = f"{self.base_url}{self.config.health_path}"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=HEALTH_CHECK_TIMEOUT_SECONDS)) as session:
                async with session.get(url, headers=self._headers()) as response:
                    return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Analysis service health probe failed: {e}", endpoint=self.config.health_path)
            return False
