"""
Polling and naming utilities
"""

import logging
import random
import threading
import time
from typing import Callable, Optional

from eksforge.exceptions import CancellationError, ReadinessTimeout

logger = logging.getLogger(__name__)

_ADJECTIVES = [
    "attractive", "beautiful", "fabulous", "ferocious", "floral", "hilarious",
    "unique", "wonderful", "scrumptious", "exciting", "gorgeous", "adorable",
]
_NOUNS = [
    "sculpture", "painting", "mushroom", "gopher", "hideout", "monster",
    "party", "wardrobe", "creature", "outfit", "unicorn", "rainbow",
]


def cluster_name(rng: Optional[random.Random] = None, clock: Callable[[], float] = time.time) -> str:
    """
    Generate a cluster name

    Args:
        rng: Random source; seed it for deterministic names
        clock: Source of the timestamp suffix

    Returns:
        Name like "fabulous-mushroom-1539087654"
    """
    rng = rng or random.Random()
    return f"{rng.choice(_ADJECTIVES)}-{rng.choice(_NOUNS)}-{int(clock())}"


def nodegroup_name(rng: Optional[random.Random] = None) -> str:
    """Generate a nodegroup name, e.g. ng-1a2b3c4d"""
    rng = rng or random.Random()
    return "ng-%08x" % rng.getrandbits(32)


def wait_until(check: Callable[[], bool], what: str, timeout: float,
               cancel: Optional[threading.Event] = None,
               initial_delay: float = 5.0, max_delay: float = 30.0,
               clock: Callable[[], float] = time.monotonic) -> None:
    """
    Poll a check with exponential backoff until it passes

    Args:
        check: Returns True once the awaited condition holds
        what: Human readable name of the awaited condition
        timeout: Deadline in seconds
        cancel: Event that aborts the wait when set
        initial_delay: First delay between polls in seconds
        max_delay: Upper bound on the delay between polls

    Raises:
        ReadinessTimeout: Deadline passed before the check succeeded
        CancellationError: Cancel event was set while waiting
    """
    cancel = cancel or threading.Event()
    deadline = clock() + timeout
    delay = initial_delay
    attempt = 0

    while True:
        if cancel.is_set():
            raise CancellationError(what)
        attempt += 1
        if check():
            logger.debug("%s: done after %d attempt(s)", what, attempt)
            return
        remaining = deadline - clock()
        if remaining <= 0:
            raise ReadinessTimeout(what, timeout)
        logger.debug("%s: attempt %d not ready, retrying in %.1fs", what, attempt, min(delay, remaining))
        if cancel.wait(min(delay, remaining)):
            raise CancellationError(what)
        delay = min(delay * 2, max_delay)
