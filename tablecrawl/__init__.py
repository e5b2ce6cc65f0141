"""Paced, identity-rotating fetch layer and crawl orchestration.

Fetches pages directly or through a shared headless browser, spaces requests
per domain, retries transient failures, and drives crawler plugins through a
historical/incremental lifecycle with pluggable storage.

Key modules:
    pacing          -- PacingGate, randomized per-domain request spacing
    identity        -- IdentityRotator for user-agent selection
    dispatcher      -- FetchDispatcher for direct and rendered fetches
    rendered        -- RenderedSession wrapping the shared browser
    readiness       -- ReadinessCheck and page readiness predicates
    slots           -- DispatchSlots, the global concurrency ceiling
    backoff         -- BackoffStrategy for linear retry delays
    lifecycle       -- CrawlLifecycle state machine and Crawler protocol
    orchestrator    -- CrawlOrchestrator registry and batch runner
    storage         -- Storage protocol and JsonFileStorage
    metrics         -- MetricsCollector for fetch outcome statistics
    models          -- FetchResult, CrawlRun, RunResult and friends
    errors          -- CrawlError hierarchy
    config          -- Settings loaded from the environment
    log             -- JSON event logging
"""
