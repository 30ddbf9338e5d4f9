from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_BY_STATE = Gauge(
    "wagateway_sessions",
    "Number of live sessions grouped by lifecycle state",
    labelnames=("state",),
)
QR_CHALLENGES_TOTAL = Counter(
    "wagateway_qr_challenges_total",
    "Pairing challenges received from the messaging client",
)
QR_TIMEOUTS_TOTAL = Counter(
    "wagateway_qr_timeouts_total",
    "Pairing challenges that were not scanned in time",
)
RECOVERY_SCHEDULED_TOTAL = Counter(
    "wagateway_recovery_scheduled_total",
    "Session re-creation or resume attempts scheduled, grouped by reason",
    labelnames=("reason",),
)
MESSAGES_IN_TOTAL = Counter(
    "wagateway_messages_in_total",
    "Normalized inbound messages grouped by type",
    labelnames=("type",),
)
WEBHOOK_DELIVERIES_TOTAL = Counter(
    "wagateway_webhook_deliveries_total",
    "Webhook POST attempts grouped by outcome",
    labelnames=("status",),
)
MESSAGES_OUT_TOTAL = Counter(
    "wagateway_messages_out_total",
    "Outbound send requests grouped by content kind and outcome",
    labelnames=("kind", "status"),
)
EVENT_ERRORS_TOTAL = Counter(
    "wagateway_event_errors_total",
    "Session event handling errors grouped by category",
    labelnames=("type",),
)

__all__ = [
    "SESSIONS_BY_STATE",
    "QR_CHALLENGES_TOTAL",
    "QR_TIMEOUTS_TOTAL",
    "RECOVERY_SCHEDULED_TOTAL",
    "MESSAGES_IN_TOTAL",
    "WEBHOOK_DELIVERIES_TOTAL",
    "MESSAGES_OUT_TOTAL",
    "EVENT_ERRORS_TOTAL",
]
