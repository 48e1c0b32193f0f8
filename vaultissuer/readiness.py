import time
import logging

from .exceptions import BackendError, Cancelled

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_INTERVAL = 0.5


def wait_until_ready(
    probe,
    timeout=DEFAULT_TIMEOUT,
    interval=DEFAULT_INTERVAL,
    cancel=None,
    clock=time.monotonic,
    sleep=time.sleep,
    pass_deadline=False,
):
    """ poll ``probe`` until it succeeds or ``timeout`` seconds have passed

    The probe succeeds when it returns anything but ``False`` without
    raising; an exception counts as "not ready yet". Nothing is kept between
    attempts apart from the deadline, so the same probe can be reused.

    Args:
        probe (callable): zero-argument readiness check.
        timeout (float): overall deadline in seconds.
        interval (float): pause between attempts in seconds.
        cancel (threading.Event): stops waiting early when set.
        clock (callable): monotonic time source (seconds).
        sleep (callable): pause function, only used without ``cancel``.
        pass_deadline (bool): call the probe as ``probe(deadline=..., cancel=...)``
            with the seconds left, so a single attempt cannot outlast
            ``timeout``.

    Returns:
        bool: True once the probe succeeded, False if the deadline passed.

    Raises:
        Cancelled: ``cancel`` was set while waiting.
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        if cancel is not None and cancel.is_set():
            raise Cancelled("readiness wait cancelled")
        try:
            if pass_deadline:
                result = probe(deadline=max(deadline - clock(), 0), cancel=cancel)
            else:
                result = probe()
            ready = result is not False
        except Exception as e:
            logger.debug("readiness probe attempt %d failed: %s", attempt, e)
            ready = False
            if cancel is not None and cancel.is_set():
                raise Cancelled("readiness wait cancelled") from e
        if ready:
            logger.debug("ready after %d attempt(s)", attempt)
            return True

        remaining = deadline - clock()
        if remaining <= 0:
            logger.info("not ready after %d attempt(s) in %ss", attempt, timeout)
            return False
        pause = min(interval, remaining)
        if cancel is not None:
            if cancel.wait(pause):
                raise Cancelled("readiness wait cancelled")
        else:
            sleep(pause)


def require_ready(probe, what="backend", **kwargs):
    """ like :func:`wait_until_ready`, but raise if the deadline passes

    Raises:
        BackendError: the probe never succeeded.
    """
    if not wait_until_ready(probe, **kwargs):
        raise BackendError(f"{what} did not become ready in time")
