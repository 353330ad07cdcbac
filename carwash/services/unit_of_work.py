"""
Retry policy for service methods that own a database transaction.
"""
import functools
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import OperationalError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from carwash.api.middleware.error_handler import DownstreamUnavailableException
from carwash.lib.logging import get_logger
from carwash.lib.settings import settings


logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def retrying_unit_of_work(func: F) -> F:
    """
    Retry a service method whose transaction hit an OperationalError.

    The decorated method must belong to an object exposing ``self.db``.
    The session is rolled back before every new attempt; once attempts are
    exhausted the failure surfaces as DownstreamUnavailableException.
    Domain errors (not found, conflicts, validation) roll back and pass
    straight through without a retry.
    """
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        retrying = Retrying(
            stop=stop_after_attempt(settings.db_retry_attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type(OperationalError),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    try:
                        return func(self, *args, **kwargs)
                    except OperationalError:
                        self.db.rollback()
                        logger.warning(
                            f"Database unavailable during {func.__name__}, "
                            f"attempt {attempt.retry_state.attempt_number}"
                        )
                        raise
                    except Exception:
                        self.db.rollback()
                        raise
        except OperationalError as e:
            logger.error(f"Giving up on {func.__name__}: {e}")
            raise DownstreamUnavailableException("database") from e

    return wrapper  # type: ignore[return-value]
