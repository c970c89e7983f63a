"""
Prometheus metrics for the support chat service.

Provides counters and histograms for tracking:
- HTTP request counts and latency
- Chat turns by response path and fallback reason
- Retrieval strategy usage and latency
- Provider call statistics and skipped stream frames
- Embedding cache hit rates
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# ============================================================================
# HTTP Request Metrics
# ============================================================================

request_count = Counter(
    'support_rag_requests_total',
    'Total number of HTTP requests',
    ['endpoint', 'method', 'status']
)

request_latency = Histogram(
    'support_rag_request_duration_seconds',
    'HTTP request latency in seconds',
    ['endpoint', 'method'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

# ============================================================================
# Chat Metrics
# ============================================================================

chat_turns = Counter(
    'support_rag_chat_turns_total',
    'Chat turns by response path',
    ['path']
)

fallbacks = Counter(
    'support_rag_fallbacks_total',
    'Degradations to the canned response path',
    ['reason']
)

# ============================================================================
# Retrieval Metrics
# ============================================================================

retrieval_count = Counter(
    'support_rag_retrievals_total',
    'Retrieval calls by strategy that produced the result',
    ['strategy']
)

retrieval_latency = Histogram(
    'support_rag_retrieval_duration_seconds',
    'Retrieval latency in seconds',
    ['strategy'],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# ============================================================================
# Provider Metrics
# ============================================================================

provider_requests = Counter(
    'support_rag_provider_requests_total',
    'Provider HTTP calls',
    ['operation', 'status']
)

provider_latency = Histogram(
    'support_rag_provider_duration_seconds',
    'Provider call latency in seconds',
    ['operation'],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0)
)

stream_frames_skipped = Counter(
    'support_rag_stream_frames_skipped_total',
    'Malformed SSE frames skipped while streaming'
)

provider_retries = Counter(
    'support_rag_provider_retries_total',
    'Provider calls retried after a transient failure',
    ['operation']
)

# ============================================================================
# Cache Metrics
# ============================================================================

cache_hits = Counter(
    'support_rag_cache_hits_total',
    'Total number of embedding cache hits',
    ['cache_type']
)

cache_misses = Counter(
    'support_rag_cache_misses_total',
    'Total number of embedding cache misses',
    ['cache_type']
)


# ============================================================================
# Helper Functions
# ============================================================================

def track_request(endpoint: str, method: str, status: int, duration: float) -> None:
    """Track an HTTP request."""
    request_count.labels(endpoint=endpoint, method=method, status=str(status)).inc()
    request_latency.labels(endpoint=endpoint, method=method).observe(duration)


def track_chat_turn(path: str) -> None:
    chat_turns.labels(path=path).inc()


def track_fallback(reason: str) -> None:
    fallbacks.labels(reason=reason).inc()


def track_retrieval(strategy: str, duration: float) -> None:
    retrieval_count.labels(strategy=strategy).inc()
    retrieval_latency.labels(strategy=strategy).observe(duration)


def track_provider_call(operation: str, status: str, duration: float) -> None:
    """Track a provider call; status is the HTTP code or an error label."""
    provider_requests.labels(operation=operation, status=status).inc()
    provider_latency.labels(operation=operation).observe(duration)


def track_skipped_frame() -> None:
    stream_frames_skipped.inc()


def track_retry(operation: str) -> None:
    provider_retries.labels(operation=operation).inc()


def track_cache(cache_type: str, hit: bool) -> None:
    if hit:
        cache_hits.labels(cache_type=cache_type).inc()
    else:
        cache_misses.labels(cache_type=cache_type).inc()


def get_metrics() -> bytes:
    """Get current metrics in Prometheus format."""
    return generate_latest()


def get_content_type() -> str:
    """Get Prometheus content type."""
    return CONTENT_TYPE_LATEST
