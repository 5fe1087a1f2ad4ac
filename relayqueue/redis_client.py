from redis import Redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError
from redis.retry import Retry


def get_redis(url: str, socket_timeout: float = 5.0, tls_verify: bool = True, retries: int = 3) -> Redis:
    """One long-lived client per process; it reconnects with exponential backoff on its own."""
    kwargs = {}
    if url.startswith("rediss://") and not tls_verify:
        kwargs["ssl_cert_reqs"] = "none"
    return Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
        health_check_interval=30,
        retry=Retry(ExponentialBackoff(cap=10, base=0.5), retries),
        retry_on_error=[ConnectionError, TimeoutError],
        **kwargs,
    )
