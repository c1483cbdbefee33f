from __future__ import annotations

import json
import logging
import os
import re
import time

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from controller.src.config import ARGOOS_VERSION, ArgoosConfig
from controller.src.controller import ControllerState, RolloutController
from controller.src.errors import AuthenticationFailure, MalformedPayload
from webhook.src.auth import check_token
from webhook.src.dispatch import dispatch_events
from webhook.src.events import REGISTRY_HEADER, decode_events

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|x-argoos-token|token|password|passwd|secret|api[_-]?key)\b"
            r"\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(verbose: bool = False) -> None:
    """Install the JSON handler on the root logger.

    The level comes from ``LOG_LEVEL`` (default ``INFO``); *verbose* forces ``DEBUG``.
    """
    log_level = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
REQUEST_IN_FLIGHT = Gauge(
    "http_in_flight_requests",
    "Current number of HTTP requests being processed",
)
AUTH_FAILURES_TOTAL = Counter(
    "argoos_auth_failures_total",
    "Event requests rejected because of a missing or wrong token",
)
MALFORMED_PAYLOADS_TOTAL = Counter(
    "argoos_malformed_payloads_total",
    "Event requests rejected because the notification body could not be decoded",
)
KNOWN_METRIC_PATHS = {"/event", "/healthz", "/readyz", "/metrics"}


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log every request with its outcome and record Prometheus request metrics.

    ``/metrics`` is logged at debug level and kept out of the request
    metrics to avoid self-referential inflation.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        logger = logging.getLogger(__name__)
        remote = request.client.host if request.client else "-"
        if request.url.path == "/metrics":
            response = await call_next(request)
            logger.debug(
                "%s %s %s %d", remote, request.method, request.url.path, response.status_code
            )
            return response

        REQUEST_IN_FLIGHT.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.monotonic() - start
            metric_path = self._normalize_metric_path(request)
            REQUEST_COUNT.labels(method=request.method, path=metric_path, status=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, path=metric_path).observe(duration)
            REQUEST_IN_FLIGHT.dec()
            logger.info(
                "%s %s %s %d (%.1fms)",
                remote,
                request.method,
                request.url.path,
                status_code,
                duration * 1000,
            )
        return response

    @staticmethod
    def _normalize_metric_path(request: Request) -> str:
        route = request.scope.get("route")
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path in KNOWN_METRIC_PATHS:
            return route_path
        if request.url.path in KNOWN_METRIC_PATHS:
            return request.url.path
        return "other"


def create_app(config: ArgoosConfig, controller: RolloutController) -> FastAPI:
    """Create the argoos webhook application.

    Endpoints:
        ``POST /event``   - Registry notification sink.  Authenticates with
                            ``X-Argoos-Token``, decodes the envelope and
                            triggers rollouts of every impacted workload.
                            Answers once events are dispatched, not once
                            rollouts finish.
        ``GET /healthz``  - Liveness probe (always ``200 ok``).
        ``GET /readyz``   - Readiness probe; ``503`` until the controller runs
                            with a healthy watch.
        ``GET /metrics``  - Prometheus metrics in text exposition format.
    """
    logger = logging.getLogger(__name__)

    app = FastAPI(title="argoos", version=ARGOOS_VERSION)
    app.state.config = config
    app.state.controller = controller
    app.add_middleware(AccessLogMiddleware)

    @app.exception_handler(AuthenticationFailure)
    async def authentication_failure_handler(
        request: Request, exc: AuthenticationFailure
    ) -> PlainTextResponse:
        AUTH_FAILURES_TOTAL.inc()
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.kind)
        return PlainTextResponse(str(exc), status_code=401)

    @app.exception_handler(MalformedPayload)
    async def malformed_payload_handler(request: Request, exc: MalformedPayload) -> JSONResponse:
        MALFORMED_PAYLOADS_TOTAL.inc()
        logger.warning("Discarding malformed notification on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=400,
            content={"error": "malformed_payload", "detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    @app.post("/event")
    async def receive_event(request: Request) -> JSONResponse:
        check_token(request.headers, config.token)

        if controller.state is not ControllerState.RUNNING:
            return JSONResponse(
                status_code=503,
                content={"error": "unavailable", "detail": "rollout controller is not running"},
            )

        body = await request.body()
        registry_override = request.headers.get(REGISTRY_HEADER)
        if registry_override:
            logger.debug("Registry override: %s", registry_override)

        events = decode_events(body, registry_override)
        report = dispatch_events(controller, events)
        logger.info(
            "Dispatched %d push event(s): %d rollout(s) triggered, %d coalesced, %d failed",
            report.events,
            report.triggered,
            report.coalesced,
            len(report.failures),
        )
        return JSONResponse(report.as_dict())

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz(response: Response) -> str:
        snapshot = controller.current_snapshot()
        if controller.ready.is_set():
            return f"ok workloads={len(snapshot)} version={snapshot.version}"
        response.status_code = 503
        return f"not ready state={controller.state.value}"

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    return app
