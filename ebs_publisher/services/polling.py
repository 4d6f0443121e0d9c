"""Blocking wait for a cloud resource to reach a status."""

from __future__ import annotations

import time
from typing import Callable, Optional

from ebs_publisher.exceptions import WaitTimeoutError
from ebs_publisher.logging import LoggerFactory, ThrottledLogger


log = LoggerFactory.for_poll()
_progress = ThrottledLogger(log, interval_seconds=30.0)

DEFAULT_INTERVAL_SECONDS = 2.0


def wait_for_status(
    resource_id: str,
    target_status: str,
    fetch_status: Callable[[str], str],
    interval: float = DEFAULT_INTERVAL_SECONDS,
    timeout: Optional[float] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Block until ``fetch_status(resource_id)`` returns ``target_status``.

    The status is fetched once per ``interval``. Errors raised by
    ``fetch_status`` are not retried. With ``timeout=None`` the wait is
    unbounded.

    Raises:
        WaitTimeoutError: If the status did not match within ``timeout`` seconds
    """
    target = str(getattr(target_status, "value", target_status))
    start = clock()
    while True:
        status = fetch_status(resource_id)
        log.debug(f"Polled {resource_id}: '{status}'")
        if status == target:
            log.debug(f"{resource_id} is '{target}'")
            return

        elapsed = clock() - start
        if timeout is not None and elapsed + interval > timeout:
            log.error(
                f"Gave up waiting for {resource_id} to become '{target}' "
                f"after {elapsed:.0f}s (last status: '{status}')"
            )
            raise WaitTimeoutError(resource_id, target, status, timeout)

        _progress.info(
            resource_id,
            f"Waiting for {resource_id} to become '{target}' (currently '{status}')",
        )
        sleep(interval)


class StatusPoller:
    """wait_for_status bound to one interval and timeout policy."""

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def wait_for_status(
        self, resource_id: str, target_status: str, fetch_status: Callable[[str], str]
    ) -> None:
        wait_for_status(
            resource_id,
            target_status,
            fetch_status,
            self.interval,
            self.timeout,
            sleep=self._sleep,
            clock=self._clock,
        )
