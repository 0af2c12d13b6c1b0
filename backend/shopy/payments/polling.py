import time
from typing import Callable

from flask import current_app

DEFAULT_POLL_INTERVAL_SECONDS = 5
DEFAULT_MAX_POLLS = 24


def await_payment(
    check_status: Callable[[str], bool],
    token: str,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_polls: int = DEFAULT_MAX_POLLS,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Poll ``check_status(token)`` until it reports a paid payment.

    The first check runs immediately and at most ``max_polls`` further checks
    follow, ``interval`` seconds apart. Returns ``"paid"`` or ``"pending"``;
    exceptions raised by ``check_status`` propagate to the caller.
    """
    for attempt in range(max_polls + 1):
        if check_status(token):
            current_app.logger.info("Payment %s confirmed after %s checks", token, attempt + 1)
            return "paid"
        if attempt < max_polls:
            sleep(interval)

    current_app.logger.info("Payment %s still pending after %s checks", token, max_polls + 1)
    return "pending"
