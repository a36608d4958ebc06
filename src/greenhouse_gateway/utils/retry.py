from typing import Callable, Any, Tuple, Type
import asyncio
import functools
from ..utils.logging import get_logger

logger = get_logger(__name__)


def async_retry_with_backoff(
    max_retries: int = 2,
    base_delay: float = 0.5,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,)
) -> Callable:
    """
    Retry an idempotent coroutine, doubling the delay after each failure.

    Device commands are never wrapped, a repeated toggle would flip the
    relay back.
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} failed after {attempt + 1} attempts: {e}")
                        raise
                    delay = base_delay * (2 ** attempt)
                    logger.warning(f"Attempt {attempt + 1} of {func.__name__} failed: {e}. Retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
