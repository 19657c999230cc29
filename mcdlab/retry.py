"""
Fixed-delay retries for deletes that race against AWS/MCD dependency
cleanup, and bounded polling for readiness.
"""

import time
from dataclasses import dataclass
from typing import Callable

from botocore.exceptions import BotoCoreError, ClientError
from requests import RequestException

from mcdlab.errors import ErrorKind, McdApiError, classify_error, error_message

# Seconds to sleep before retrying a delete that reported "in use".
RETRY_DELAYS = {
    "instance": 10,
    "tgw-attachment": 30,
    "elastic-ip": 10,
    "load-balancer": 30,
    "nat-gateway": 30,
    "vpc-endpoint": 15,
    "network-interface": 10,
    "internet-gateway": 10,
    "subnet": 10,
    "route-table": 10,
    "security-group": 10,
    "vpc": 60,
    "key-pair": 10,
    "mcd-gateway": 60,
    "mcd-policy-rule-set": 30,
    "mcd-service-vpc": 30,
    "mcd-dlp-profile": 30,
}
DEFAULT_DELAY = 10

RETRYABLE_ERRORS = (ClientError, BotoCoreError, McdApiError, RequestException)


@dataclass
class Attempt:
    """Outcome of a retried call."""
    kind: ErrorKind | None
    attempts: int
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.kind is None

    @property
    def benign(self) -> bool:
        return self.kind in (ErrorKind.NOT_FOUND, ErrorKind.ALREADY_EXISTS)


def call_with_retry(fn: Callable[[], object], attempts: int = 4, delay: float = DEFAULT_DELAY,
                    sleep: Callable[[float], None] = time.sleep,
                    on_retry: Callable[[int, str], None] | None = None) -> Attempt:
    """Call fn, retrying only IN_USE failures with a fixed delay.

    `attempts` counts the first call, so the default allows 3 retries.
    """
    for attempt in range(1, attempts + 1):
        try:
            fn()
            return Attempt(None, attempt)
        except RETRYABLE_ERRORS as e:
            kind = classify_error(e)
            message = error_message(e)
            if kind != ErrorKind.IN_USE or attempt == attempts:
                return Attempt(kind, attempt, message)
            if on_retry:
                on_retry(attempt, message)
            sleep(delay)
    return Attempt(ErrorKind.UNKNOWN, attempts, "no attempts made")


def wait_for(predicate: Callable[[], bool], timeout: float = 600, interval: float = 15,
             sleep: Callable[[float], None] = time.sleep) -> bool:
    """Poll predicate until it is true or `timeout` seconds of polling have elapsed."""
    polls = max(1, int(timeout // interval) if interval else 1)
    for poll in range(polls + 1):
        if predicate():
            return True
        if poll < polls:
            sleep(interval)
    return False
