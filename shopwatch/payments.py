import logging
import random
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

PaymentProcessor = Callable[[float, str], bool]


def simulated_processor(success_rate: float = 0.9, max_delay: float = 2.0,
                        rng: Optional[random.Random] = None,
                        sleep: Callable[[float], None] = time.sleep) -> PaymentProcessor:
    """Fake payment gateway: random latency up to `max_delay`, succeeds with `success_rate`."""
    rng = rng or random.Random()

    def process(amount: float, currency: str = "USD") -> bool:
        sleep(rng.random() * max_delay)
        ok = rng.random() < success_rate
        logger.info("payment of %.2f %s %s", amount, currency, "accepted" if ok else "declined")
        return ok

    return process
