"""
medmigrate Metrics Module.

In-process, Prometheus-compatible metrics for migration runs. Labels are
restricted to phase names, entity types, error codes and provider names;
nothing derived from record content is ever used as a label.

Usage:
    from medmigrate.core.metrics import track_phase, track_records, setup_metrics

    setup_metrics(app)

    with track_phase("transform"):
        run_transform()

    track_records("patient", 120, stage="transformed")
"""

import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]

DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0)


def _key(label_values: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in label_values.items()))


# =============================================================================
# Metric Types
# =============================================================================

class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self._series: Dict[LabelKey, Any] = {}
        self._lock = threading.Lock()

    def snapshot(self) -> Dict[LabelKey, Any]:
        with self._lock:
            return dict(self._series)


class Counter(_Metric):
    """Monotonic count per label set."""

    kind = "counter"

    def inc(self, value: int = 1, **label_values):
        key = _key(label_values)
        with self._lock:
            self._series[key] = self._series.get(key, 0) + value

    def get(self, **label_values) -> int:
        with self._lock:
            return self._series.get(_key(label_values), 0)

    def total(self) -> int:
        with self._lock:
            return sum(self._series.values())

    @property
    def labels(self) -> Dict[LabelKey, int]:
        return self.snapshot()


class Gauge(_Metric):
    """Point-in-time value per label set."""

    kind = "gauge"

    def set(self, value: float, **label_values):
        with self._lock:
            self._series[_key(label_values)] = value

    def inc(self, value: float = 1.0, **label_values):
        key = _key(label_values)
        with self._lock:
            self._series[key] = self._series.get(key, 0) + value

    def dec(self, value: float = 1.0, **label_values):
        self.inc(-value, **label_values)

    def get(self, **label_values) -> float:
        with self._lock:
            return self._series.get(_key(label_values), 0)


class Histogram(_Metric):
    """Raw observations per label set; buckets are computed on export."""

    kind = "histogram"

    def __init__(self, name: str, description: str, buckets: Tuple[float, ...] = DEFAULT_BUCKETS):
        super().__init__(name, description)
        self.buckets = buckets

    def observe(self, value: float, **label_values):
        with self._lock:
            self._series.setdefault(_key(label_values), []).append(value)

    def get_stats(self, **label_values) -> Dict[str, float]:
        with self._lock:
            values = sorted(self._series.get(_key(label_values), []))

        count = len(values)
        if not count:
            return {"count": 0, "sum": 0, "avg": 0, "p50": 0, "p95": 0}

        total = sum(values)
        return {
            "count": count,
            "sum": total,
            "avg": total / count,
            "min": values[0],
            "max": values[-1],
            "p50": values[count // 2],
            "p95": values[int(count * 0.95)] if count >= 20 else values[-1],
        }


# =============================================================================
# Registry
# =============================================================================

DEFAULT_METRICS = (
    # API
    (Counter, "medmigrate_requests_total", "Total number of API requests"),
    (Histogram, "medmigrate_request_duration_seconds", "Request duration in seconds"),
    (Counter, "medmigrate_request_errors_total", "Total number of request errors"),
    # Pipeline
    (Counter, "medmigrate_phases_total", "Pipeline phases executed, by phase and outcome"),
    (Histogram, "medmigrate_phase_duration_seconds", "Pipeline phase duration in seconds"),
    (Gauge, "medmigrate_runs_in_progress", "Migration runs currently executing"),
    (Counter, "medmigrate_records_total", "Records processed, by entity type and stage"),
    (Counter, "medmigrate_validation_errors_total", "Validation errors, by code"),
    (Counter, "medmigrate_mapping_corrections_total", "AI mapping correction attempts, by outcome"),
    # Intelligence layer
    (Counter, "medmigrate_llm_requests_total", "Total number of AI backend requests"),
    (Histogram, "medmigrate_llm_request_duration_seconds", "AI backend request duration in seconds"),
    (Counter, "medmigrate_llm_tokens_used_total", "AI tokens used, by provider and direction"),
    (Counter, "medmigrate_llm_fallbacks_total", "Fallbacks from one AI backend to the next"),
    (Counter, "medmigrate_discovery_tool_calls_total", "Schema discovery tool invocations, by tool and outcome"),
)


class MetricsRegistry:
    """Named metrics, pre-populated with the migration defaults."""

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: Dict[str, _Metric] = {}
        self.reset()

    def register(self, metric: _Metric):
        with self._lock:
            self._metrics[metric.name] = metric

    def get(self, name: str) -> Optional[Any]:
        with self._lock:
            return self._metrics.get(name)

    def all_metrics(self) -> Dict[str, _Metric]:
        with self._lock:
            return dict(self._metrics)

    def reset(self):
        """Discard all series by re-creating the default metrics."""
        fresh = {name: cls(name, description) for cls, name, description in DEFAULT_METRICS}
        with self._lock:
            self._metrics = fresh


_registry = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return _registry


# =============================================================================
# Tracking Functions
# =============================================================================

def _inc(name: str, value: float = 1, **labels):
    metric = _registry.get(name)
    if metric is not None and value:
        metric.inc(value, **labels)


def _observe(name: str, value: float, **labels):
    metric = _registry.get(name)
    if metric is not None:
        metric.observe(value, **labels)


def track_request_start(endpoint: str, method: str = "GET"):
    _inc("medmigrate_requests_total", endpoint=endpoint, method=method)


def track_request_end(endpoint: str, method: str, duration: float, status: int):
    _observe("medmigrate_request_duration_seconds", duration, endpoint=endpoint, method=method)
    if status >= 400:
        _inc("medmigrate_request_errors_total", endpoint=endpoint, method=method, status=status)


@contextmanager
def track_phase(phase: str) -> Iterator[None]:
    """Time a pipeline phase; an escaping exception counts as outcome=error."""
    started = time.monotonic()
    outcome = "passed"
    try:
        yield
    except Exception:
        outcome = "error"
        raise
    finally:
        _observe("medmigrate_phase_duration_seconds", time.monotonic() - started, phase=phase)
        _inc("medmigrate_phases_total", phase=phase, outcome=outcome)


def track_phase_failure(phase: str):
    """Count a phase that returned a failed outcome without raising."""
    _inc("medmigrate_phases_total", phase=phase, outcome="failed")


def track_run_start():
    _inc("medmigrate_runs_in_progress")


def track_run_end():
    _inc("medmigrate_runs_in_progress", -1)


def track_records(entity_type: str, count: int, stage: str):
    _inc("medmigrate_records_total", count, entity_type=entity_type, stage=stage)


def track_validation_errors(errors_by_code: Dict[str, int]):
    for code, count in errors_by_code.items():
        _inc("medmigrate_validation_errors_total", count, code=code)


def track_correction(outcome: str):
    _inc("medmigrate_mapping_corrections_total", outcome=outcome)


def track_llm_request(duration: float, provider: str, input_tokens: int = 0, output_tokens: int = 0):
    _inc("medmigrate_llm_requests_total", provider=provider)
    _observe("medmigrate_llm_request_duration_seconds", duration, provider=provider)
    _inc("medmigrate_llm_tokens_used_total", input_tokens, provider=provider, direction="input")
    _inc("medmigrate_llm_tokens_used_total", output_tokens, provider=provider, direction="output")


def track_llm_fallback(from_provider: str, reason: str):
    _inc("medmigrate_llm_fallbacks_total", from_provider=from_provider, reason=reason)


def track_tool_call(tool: str, is_error: bool = False):
    _inc("medmigrate_discovery_tool_calls_total", tool=tool, outcome="error" if is_error else "ok")


# =============================================================================
# Export
# =============================================================================

def export_metrics_json() -> Dict[str, Any]:
    """All metrics keyed by name; histograms are reported as summary stats."""
    result = {}
    for name, metric in _registry.all_metrics().items():
        series = metric.snapshot()
        if isinstance(metric, Histogram):
            values = {str(k): metric.get_stats(**dict(k)) for k in series}
        else:
            values = {str(k): v for k, v in series.items()}
        result[name] = {"type": metric.kind, "description": metric.description, "values": values}
    return result


def _render_labels(labels: LabelKey, extra: str = "") -> str:
    parts = [f'{k}="{v}"' for k, v in labels]
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


def export_metrics_prometheus() -> str:
    """Render every metric in the Prometheus text exposition format."""
    lines = []
    for name, metric in _registry.all_metrics().items():
        lines.append(f"# HELP {name} {metric.description}")
        lines.append(f"# TYPE {name} {metric.kind}")

        for labels, value in metric.snapshot().items():
            if not isinstance(metric, Histogram):
                lines.append(f"{name}{_render_labels(labels)} {value}")
                continue

            for bound in metric.buckets:
                within = sum(1 for v in value if v <= bound)
                le = 'le="%s"' % bound
                lines.append(f"{name}_bucket{_render_labels(labels, le)} {within}")
            inf = 'le="+Inf"'
            lines.append(f"{name}_bucket{_render_labels(labels, inf)} {len(value)}")
            lines.append(f"{name}_sum{_render_labels(labels)} {sum(value)}")
            lines.append(f"{name}_count{_render_labels(labels)} {len(value)}")

        lines.append("")
    return "\n".join(lines)


# =============================================================================
# FastAPI Integration
# =============================================================================

def setup_metrics(app):
    """
    Add request metrics middleware plus /metrics and /api/v1/metrics.

    Requests are labelled by route template so run IDs never become label
    values.
    """
    from fastapi import Request, Response

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        started = time.monotonic()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            # The route is only resolved once the request has been dispatched
            route = request.scope.get("route")
            endpoint = getattr(route, "path", None) or "unmatched"
            track_request_start(endpoint, request.method)
            track_request_end(endpoint, request.method, time.monotonic() - started, status)
        return response

    @app.get("/metrics")
    async def metrics_endpoint():
        return Response(content=export_metrics_prometheus(), media_type="text/plain")

    @app.get("/api/v1/metrics")
    async def metrics_json_endpoint():
        return export_metrics_json()
