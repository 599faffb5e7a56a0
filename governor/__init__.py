"""
Governor: resource governance core for the outreach pipeline.

Modules:
- errors: failure taxonomy shared by every component
- rate_limiter: multi-window API admission and quota accounting
- connection_pool: reusable, health-checked connections with LRU eviction
- cache: TTL response cache keyed by canonical request
- token_refresh: lock-guarded OAuth credential refresh
- job_queue: durable job storage with atomic claims
- scheduler: job processor, retry policy and periodic sub-tasks
- gateway: one-call metered access to a guarded API
- alerts: webhook notifications (Slack, Discord, Telegram)
"""
