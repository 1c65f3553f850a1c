import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from kbsearch.logging import get_logger

_logger = get_logger(__name__)

MAX_ATTEMPTS = 2


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in {408, 429} or status >= 500
    return False


def _log_retry(retry_state) -> None:
    _logger.warning(
        "Oracle call failed (attempt %d/%d), retrying: %s",
        retry_state.attempt_number,
        MAX_ATTEMPTS,
        retry_state.outcome.exception(),
    )


@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(MAX_ATTEMPTS),
    wait=wait_exponential_jitter(initial=0.25, max=2, jitter=0.5),
    reraise=True,
    before_sleep=_log_retry,
)
async def with_retry(fn, *args, **kwargs):
    return await fn(*args, **kwargs)
