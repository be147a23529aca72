"""Metrics hook protocol and no-op default implementation.

The pipeline emits counters and timings at each step.  By default a
:class:`NoopMetricsHook` is used so there is zero overhead.  Pass any object
satisfying :class:`MetricsHook` as ``WechatifyConfig(metrics=...)`` to route
data points to StatsD, Prometheus, or another backend.

Emitted metric names:

* ``wechatify.download_total``           -- counter (tag ``status``)
* ``wechatify.generation_total``         -- counter (tag ``status``)
* ``wechatify.compress_total``           -- counter (tag ``result``)
* ``wechatify.upload_attempts_total``    -- counter
* ``wechatify.upload_retries_total``     -- counter (tag ``reason``)
* ``wechatify.upload_success_total``     -- counter
* ``wechatify.upload_failure_total``     -- counter (tag ``reason``)
* ``wechatify.pipeline_duration_ms``     -- timing (tag ``status``)
* ``wechatify.request_duration_ms``      -- timing (tags ``method``, ``path``, ``status``)
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class MetricsHook(Protocol):
    """Protocol that any metrics backend must satisfy.

    All methods accept an optional *tags* dict of string keys and values.
    """

    def increment(
        self,
        name: str,
        value: int = 1,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Increment a counter metric."""
        ...

    def timing(
        self,
        name: str,
        ms: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Record a duration in milliseconds."""
        ...

    def gauge(
        self,
        name: str,
        value: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Set a gauge metric to an absolute value."""
        ...


class NoopMetricsHook:
    """Default metrics implementation that discards all data points.

    Lets call-sites skip ``if metrics is not None`` guards.
    """

    __slots__ = ()

    def increment(
        self,
        name: str,
        value: int = 1,
        tags: dict[str, str] | None = None,
    ) -> None:
        pass

    def timing(
        self,
        name: str,
        ms: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        pass

    def gauge(
        self,
        name: str,
        value: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        pass


def resolve_metrics(hook: object | None) -> MetricsHook:
    """Return *hook*, or a :class:`NoopMetricsHook` when it is ``None``."""
    return hook if hook is not None else NoopMetricsHook()  # type: ignore[return-value]
