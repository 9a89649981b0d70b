from __future__ import annotations

import logging
import secrets
from typing import Any, Protocol

from app.config import Settings, settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except Exception:  # pragma: no cover - optional dependency guard
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")

ALERT_SEVERITIES = ("info", "warning", "critical")


class MetricsBackend(Protocol):
    def send(self, metric_type: str, name: str, value: float, rate: float) -> None:
        ...


class StatsdBackend(MetricsBackend):
    """Forwards counters, gauges and timings to a StatsD daemon."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def send(self, metric_type: str, name: str, value: float, rate: float) -> None:
        if metric_type == "timing":
            self._client.timing(name, value, rate=rate)
        elif metric_type == "gauge":
            self._client.gauge(name, value)
        else:
            self._client.incr(name, value, rate=rate)


def _build_backend(config: Settings) -> MetricsBackend | None:
    if (config.metrics_backend or "stdout").lower() != "statsd" or config.metrics_disable:
        return None
    if StatsClient is None:
        logger.warning("metrics.statsd_missing", extra={"package": "statsd"})
        return None
    try:
        client = StatsClient(
            host=config.metrics_statsd_host, port=config.metrics_statsd_port, prefix=""
        )
    except Exception as exc:  # pragma: no cover - backend failure
        logger.warning("metrics.backend_error", extra={"error": type(exc).__name__})
        return None
    return StatsdBackend(client)


class MetricsReporter:
    """Emits discovery metrics as structured log lines, optionally mirrored to StatsD.

    Every payload carries the configured schema version so log-based
    dashboards can tell sweep, collector and budget events apart across
    releases. Alerts are never sampled.
    """

    def __init__(
        self, config: Settings | None = None, *, backend: MetricsBackend | None = None
    ) -> None:
        config = config or settings
        self._disabled = config.metrics_disable
        self._namespace = config.metrics_namespace or "discovery"
        self._sample_rate = max(0.0, min(config.metrics_sample_rate, 1.0))
        self._schema_version = config.metrics_schema_version
        self._backend = backend if backend is not None else _build_backend(config)

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("timing", metric, value_ms, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("gauge", metric, value, tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._record("counter", metric, value, tags)

    def alert(
        self,
        metric: str,
        *,
        value: float,
        threshold: float,
        severity: str,
        tags: dict[str, Any] | None = None,
    ) -> None:
        """Report a crossed ceiling such as a daily cost cap or an opened circuit."""
        if self._disabled:
            return
        if severity not in ALERT_SEVERITIES:
            severity = "warning"
        payload = {
            "metric": self.qualify(metric),
            "value": round(float(value), 4),
            "threshold": round(float(threshold), 4),
            "severity": severity,
            "schema_version": self._schema_version,
            "tags": tags or {},
        }
        level = logging.CRITICAL if severity == "critical" else logging.WARNING
        logger.log(level, "discovery.alert", extra={"metrics": payload})
        self._forward("counter", self.qualify(f"alerts.{severity}"), 1.0, 1.0)

    def qualify(self, metric: str) -> str:
        """Prefix ``metric`` with the namespace unless it already carries it."""
        name = (metric or "").strip()
        if not name:
            return self._namespace
        if name.startswith(f"{self._namespace}."):
            return name
        return f"{self._namespace}.{name}"

    def _record(
        self, metric_type: str, metric: str, value: float | None, tags: dict[str, Any] | None
    ) -> None:
        if self._disabled or value is None:
            return
        rate = 1.0
        if metric_type != "gauge" and self._sample_rate < 1.0:
            rate = self._sample_rate
            if secrets.randbelow(1_000_000) / 1_000_000 > rate:
                return
        name = self.qualify(metric)
        payload: dict[str, Any] = {
            "metric": name,
            "type": metric_type,
            "value": round(float(value), 4),
            "schema_version": self._schema_version,
            "tags": tags or {},
        }
        if rate < 1.0:
            payload["sample_rate"] = round(rate, 4)
        logger.info("discovery.metric", extra={"metrics": payload})
        self._forward(metric_type, name, float(value), rate)

    def _forward(self, metric_type: str, name: str, value: float, rate: float) -> None:
        if self._backend is None:
            return
        try:
            self._backend.send(metric_type, name, value, rate)
        except Exception as exc:  # pragma: no cover - backend failure
            logger.warning(
                "metrics.backend_error",
                extra={"metric": name, "error": type(exc).__name__},
            )


metrics = MetricsReporter()
