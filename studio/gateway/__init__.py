"""Job orchestration gateway.

Provides the async machinery between callers and the xAI API:
  - Key Pool with a persisted round-robin rotation cursor
  - Request Dispatcher (credential-rotating retry on 401/403/429)
  - Polling Engine (per-job cancellable state machine)
  - Response Normalizer (state, error and media URL extraction)
  - Key health checks
"""
