from prometheus_client import Counter, Histogram, Gauge

# Histogram for API call latency (seconds)
dexcom_api_call_latency_seconds = Histogram(
    'dexcom_api_call_latency_seconds',
    'Latency of Dexcom API calls in seconds',
    ['endpoint']
)

# status: success, error
dexcom_api_call_total = Counter(
    'dexcom_api_call_total',
    'Total Dexcom API calls',
    ['endpoint', 'status']
)

dexcom_api_retries_total = Counter(
    'dexcom_api_retries_total',
    'Total Dexcom API request retries',
    ['endpoint']
)

# kind: egv, event
readings_ingested_total = Counter(
    'readings_ingested_total',
    'Total number of rows submitted to the readings store by the sync job',
    ['kind']
)

# status: success, partial, failed, not_connected
sync_job_completed_total = Counter(
    'sync_job_completed_total',
    'Total number of sync jobs completed',
    ['status']
)
sync_job_duration_seconds = Histogram(
    'sync_job_duration_seconds',
    'Duration of sync jobs in seconds',
    ['mode']
)
sync_chunk_failures_total = Counter(
    'sync_chunk_failures_total',
    'Sync windows that failed and were skipped',
    ['mode']
)

carb_gap_hours = Gauge(
    'carb_gap_hours',
    'Hours since the most recent carb event, as of the last sync'
)

__all__ = [
    'dexcom_api_call_latency_seconds',
    'dexcom_api_call_total',
    'dexcom_api_retries_total',
    'readings_ingested_total',
    'sync_job_completed_total',
    'sync_job_duration_seconds',
    'sync_chunk_failures_total',
    'carb_gap_hours',
]
