"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames=()):
    # Re-importing the module (tests, reloads) must not double-register
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Dispatch metrics
campaign_runs_counter = _counter(
    'mailcast_campaign_runs_total',
    'Total number of campaign dispatch runs by outcome',
    ['status']
)

batches_counter = _counter(
    'mailcast_batches_total',
    'Total number of provider batches by outcome',
    ['status']
)

recipients_dispatched_counter = _counter(
    'mailcast_recipients_dispatched_total',
    'Total number of recipients submitted to the provider by outcome',
    ['status']
)

# Scheduler metrics
scheduler_runs_counter = _counter(
    'mailcast_scheduler_runs_total',
    'Total number of scheduler ticks',
    ['status']
)

scheduler_campaigns_promoted_counter = _counter(
    'mailcast_scheduler_campaigns_promoted_total',
    'Total number of scheduled campaigns promoted to running'
)

# Reconciliation metrics
sync_runs_counter = _counter(
    'mailcast_sync_runs_total',
    'Total number of reconciliation passes by outcome',
    ['status']
)
