"""OpenTelemetry metrics instruments for remote sync and the live push channel.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
Sync (emitted from sync/engine.py):

  calsync.sync.duration_ms            Histogram  (label: mode=full|incremental, outcome)
      Wall time of one synchronize() call.

  calsync.sync.changes_total          Counter    (label: kind=added|modified|deleted)
      Changes applied to local storage.

Push (emitted from realtime/):

  calsync.push.live_connections       UpDownCounter (gauge semantics)
      Currently registered authenticated connections.

  calsync.push.delivered_total        Counter
      Messages handed to a connection's outbound queue.

  calsync.push.dropped_total          Counter    (label: reason)
      Messages not delivered (closed connection, backpressure).

  calsync.push.heartbeat_timeouts_total  Counter
      Connections closed by the heartbeat sweep.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instrument factories
# ---------------------------------------------------------------------------


def _sync_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calsync.sync.duration_ms",
        description="Wall time of one calendar synchronization in milliseconds",
        unit="ms",
    )


def _sync_changes_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.sync.changes_total",
        description="Remote changes applied to local storage",
        unit="changes",
    )


def _push_live_connections() -> metrics.UpDownCounter:
    return get_meter().create_up_down_counter(
        name="calsync.push.live_connections",
        description="Currently registered live push connections",
        unit="connections",
    )


def _push_delivered_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.push.delivered_total",
        description="Messages queued for delivery on a live connection",
        unit="messages",
    )


def _push_dropped_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.push.dropped_total",
        description="Messages dropped instead of delivered",
        unit="messages",
    )


def _push_heartbeat_timeouts_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.push.heartbeat_timeouts_total",
        description="Connections closed for missing the heartbeat timeout",
        unit="connections",
    )


# ---------------------------------------------------------------------------
# CalsyncMetrics: convenience wrapper that caches instruments
# ---------------------------------------------------------------------------


class CalsyncMetrics:
    """Convenience wrapper around the sync and push instruments.

    Safe to construct before ``init_metrics`` is called; recordings are no-ops
    until a real provider is installed.
    """

    def __init__(self) -> None:
        self.__sync_duration: metrics.Histogram | None = None
        self.__sync_changes: metrics.Counter | None = None
        self.__live: metrics.UpDownCounter | None = None
        self.__delivered: metrics.Counter | None = None
        self.__dropped: metrics.Counter | None = None
        self.__hb_timeouts: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _sync_duration(self) -> metrics.Histogram:
        if self.__sync_duration is None:
            self.__sync_duration = _sync_duration_ms()
        return self.__sync_duration

    @property
    def _sync_changes(self) -> metrics.Counter:
        if self.__sync_changes is None:
            self.__sync_changes = _sync_changes_total()
        return self.__sync_changes

    @property
    def _live(self) -> metrics.UpDownCounter:
        if self.__live is None:
            self.__live = _push_live_connections()
        return self.__live

    @property
    def _delivered(self) -> metrics.Counter:
        if self.__delivered is None:
            self.__delivered = _push_delivered_total()
        return self.__delivered

    @property
    def _dropped(self) -> metrics.Counter:
        if self.__dropped is None:
            self.__dropped = _push_dropped_total()
        return self.__dropped

    @property
    def _hb_timeouts(self) -> metrics.Counter:
        if self.__hb_timeouts is None:
            self.__hb_timeouts = _push_heartbeat_timeouts_total()
        return self.__hb_timeouts

    # -- sync recording helpers ---------------------------------------------

    def record_sync(self, duration_ms: float, *, mode: str, outcome: str) -> None:
        """Record one synchronize() call."""
        self._sync_duration.record(duration_ms, {"mode": mode, "outcome": outcome})

    def record_changes(self, counts: dict[str, int]) -> None:
        """Record applied change counts keyed by added/modified/deleted."""
        for kind, count in counts.items():
            if count:
                self._sync_changes.add(count, {"kind": kind})

    # -- push recording helpers ---------------------------------------------

    def connection_registered(self) -> None:
        self._live.add(1)

    def connection_unregistered(self) -> None:
        self._live.add(-1)

    def message_delivered(self) -> None:
        self._delivered.add(1)

    def message_dropped(self, reason: str) -> None:
        self._dropped.add(1, {"reason": reason})

    def heartbeat_timeout(self) -> None:
        self._hb_timeouts.add(1)


_metrics: CalsyncMetrics | None = None


def get_metrics() -> CalsyncMetrics:
    """Return the process-wide metrics wrapper."""
    global _metrics
    if _metrics is None:
        _metrics = CalsyncMetrics()
    return _metrics
