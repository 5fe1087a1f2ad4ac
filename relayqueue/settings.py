import socket

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    redis_tls_verify: bool = True
    redis_socket_timeout: float = 5.0
    # request handlers fail fast instead of riding out reconnect backoff
    api_redis_socket_timeout: float = 1.0
    database_url: str = "sqlite+pysqlite:///./relay_ledger.db"

    job_key_prefix: str = "relay:job:"
    job_waiting: str = "relay:waiting"
    job_delayed: str = "relay:delayed"
    job_active: str = "relay:active"
    job_completed: str = "relay:completed"
    job_failed: str = "relay:failed"
    worker_heartbeats: str = "relay:workers"

    pool_size: int = Field(default=5, ge=1, le=64)
    max_attempts: int = Field(default=3, ge=1, le=20)
    lease_seconds: float = Field(default=90.0, gt=0)
    action_timeout_seconds: float = Field(default=60.0, gt=0)
    settle_seconds: float = Field(default=2.0, ge=0)
    worker_poll_seconds: float = Field(default=1.0, gt=0)
    reap_interval_seconds: float = Field(default=5.0, gt=0)
    heartbeat_ttl_seconds: float = Field(default=120.0, gt=0)
    retry_backoff_base: float = Field(default=2.0, ge=0)
    retry_backoff_cap: float = Field(default=60.0, ge=0)
    retention_seconds: int = Field(default=7 * 24 * 3600, ge=60)

    browser_executable_path: str | None = None
    browser_headless: bool = True
    search_url_template: str = "https://www.google.com/search?q={query}"
    evidence_dir: str | None = "evidence"

    api_host: str = "0.0.0.0"
    api_port: int = 3001
    node_name: str = Field(default_factory=socket.gethostname)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _lease_outlives_action(self):
        # the reaper must never reclaim a job whose action can still be running
        if self.lease_seconds <= self.action_timeout_seconds:
            raise ValueError("lease_seconds must be greater than action_timeout_seconds")
        return self
