"""Media discovery package.

Fetches pages statically or renders them in a headless browser when the
static HTML looks client-side rendered, extracts image and video URLs, and
runs batches of URLs as durable, retried jobs.

Key modules:
    decision        -- RenderDecisionEngine and CSR fingerprint rules
    renderer        -- BrowserManager, DynamicRenderer (Playwright)
    extractor       -- extract_media and URL classification helpers
    base            -- BaseScraper per-URL pipeline
    scrapers        -- RequestsScraper, CurlCffiScraper static fetch backends
    factory         -- ScraperFactory for selecting a fetch backend
    job_queue       -- JobQueue, MemoryJobStore, SqlJobStore
    controller      -- WorkerPool for bounded job concurrency
    worker          -- ScrapeWorker job processing loop
    storage         -- SqlStorage (pages/media) and JsonlStorage (result log)
    entities        -- SQLAlchemy tables
    db              -- engine/session helpers and reconnect
    metrics         -- MetricsCollector observability context
    models          -- dataclasses and enums shared across modules
    backoff         -- BackoffStrategy for exponential retry delays
    exceptions      -- error taxonomy
    config          -- Settings read from the environment
"""
