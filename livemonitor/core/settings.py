from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    # Hand records to a background writer. Long-running server only.
    LOG_ENQUEUE: bool = True

    # Performance logging (console)
    PERF_LOG_ENABLED: bool = True
    # Log slow operations (requests / probes) at WARNING when >= this threshold.
    PERF_LOG_SLOW_MS: int = 2000
    # Internal (non-request) spans: probes, audit fetches, reconciliation.
    PERF_LOG_INNER_ENABLED: bool = True
    # If true, logs all internal spans (can be noisy). If false, logs only slow spans.
    PERF_LOG_INNER_ALWAYS: bool = False

    # Target backend (Supabase edge functions)
    SUPABASE_PROJECT_ID: str = "localhost"
    SUPABASE_ANON_KEY: str | None = None
    # `{project_id}` is substituted; `{server}` is the per-prefix function name.
    FUNCTIONS_BASE_URL: str = "https://{project_id}.supabase.co/functions/v1"
    SERVER_NAME_TEMPLATE: str = "make-server-{prefix}"

    # Which server prefix holds the routes under rollout (route probes).
    LIVE_PREFIX: str = "7a20cd7d"
    # Which server prefix answers /health, /audit and /kv/browse.
    DIAG_PREFIX: str = "229c9fbf"

    # Prefix discovery (comma-separated `id=label`).
    DISCOVERY_ENABLED: bool = True
    DISCOVERY_CANDIDATES: str = "7a20cd7d=GitHub main (repo),229c9fbf=Monitor,0ada7954=Legacy"
    DISCOVERY_SAMPLE_PATH: str = "/auth/me"

    # When false, reconciliation only looks at the code axis.
    LIVE_TRACKING_ENABLED: bool = True

    # Timeouts (seconds). Route checks are cheap; audit calls scan the KV table.
    ROUTE_PROBE_TIMEOUT_SECONDS: float = 6.0
    HEALTH_TIMEOUT_SECONDS: float = 8.0
    AUDIT_TIMEOUT_SECONDS: float = 15.0
    DISCOVERY_AUDIT_TIMEOUT_SECONDS: float = 10.0
    DISCOVERY_ROUTE_TIMEOUT_SECONDS: float = 5.0

    # Serverless cold starts: one extra full pass on initial load, after this delay.
    COLD_START_RETRY_DELAY_SECONDS: float = 4.0

    # Run the initial load (and poll loop, if any) when the API starts.
    MONITOR_AUTOSTART: bool = True
    # Scheduled refresh. 0 = manual refresh only.
    REFRESH_POLL_SECONDS: int = 0

    # Static inputs
    # Empty = packaged contract.
    CONTRACT_PATH: str = ""
    # Optional JSON produced by the external code scanner.
    CODE_SCAN_PATH: str = ""

    # CORS
    CORS_ALLOW_ORIGINS: list[str] = ["*"]

    def server_base_url(self, prefix: str) -> str:
        base = self.FUNCTIONS_BASE_URL.format(project_id=self.SUPABASE_PROJECT_ID).rstrip("/")
        return f"{base}/{self.SERVER_NAME_TEMPLATE.format(prefix=prefix)}"

    def probe_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.SUPABASE_ANON_KEY:
            headers["Authorization"] = f"Bearer {self.SUPABASE_ANON_KEY}"
        return headers


settings = Settings()
