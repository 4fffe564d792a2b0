import logging
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@contextmanager
def measure_time(label, timings=None):
    """Log how long the block took, in ms. Also stored in `timings[label]` when a dict is given."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = round((time.perf_counter() - start) * 1000, 2)
        if timings is not None:
            timings[label] = elapsed
        logger.debug("%s took %sms", label, elapsed)
