"""Runtime harness: the control loop, cancellation and retries."""
from cogloop.harness.cancellation import CancellationToken
from cogloop.harness.retry import RetryConfig, with_retries

__all__ = ["CancellationToken", "RetryConfig", "with_retries"]
