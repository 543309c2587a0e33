"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-importing the module (tests, reloads) must not re-register collectors
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook ingestion
webhook_events_counter = _counter(
    'sites_webhook_events_total',
    'Total number of webhook deliveries by provider, event type and outcome',
    ['provider', 'event_type', 'outcome']
)

webhook_signature_failures_counter = _counter(
    'sites_webhook_signature_failures_total',
    'Total number of webhook deliveries rejected by signature verification',
    ['provider', 'reason']
)

webhook_payload_mismatch_counter = _counter(
    'sites_webhook_payload_mismatch_total',
    'Duplicate deliveries whose payload hash differs from the stored event',
    ['provider']
)

# Sale notification
sale_notification_attempts_counter = _counter(
    'sites_sale_notification_attempts_total',
    'Total number of sale notification HTTP attempts',
    ['result']
)

sale_notifications_counter = _counter(
    'sites_sale_notifications_total',
    'Total number of sale notifications by final outcome',
    ['outcome']
)

# Background jobs
retention_runs_counter = _counter(
    'sites_retention_runs_total',
    'Total number of webhook event retention runs',
    ['status']
)

retention_events_purged_counter = _counter(
    'sites_retention_events_purged_total',
    'Total number of webhook events purged by retention'
)

dunning_runs_counter = _counter(
    'sites_dunning_runs_total',
    'Total number of dunning runs',
    ['status']
)
