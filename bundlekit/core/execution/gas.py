"""
Gas price and gas limit estimation.

Prices are plain Python ints (arbitrary precision). The multiplier is an
integer percentage (120 == 1.20x) so no float ever touches a price.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from ..recovery.errors import ConfigurationError, GasEstimationError
from .models import GasQuote

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 100
DEFAULT_LIMIT_BUFFER = 50000

# Runtime multiplier updates are accepted within 1.0x to 3.0x
MIN_MULTIPLIER_PERCENT = 100
MAX_MULTIPLIER_PERCENT = 300


class GasPriceEstimator:
    """
    Fetches network fee data, applies the configured multiplier and clamps
    the result to [min_price, max_price].

    Provider failures propagate unclassified; the retry executor wrapping
    the call classifies them.
    """

    def __init__(
        self,
        provider: Any,
        *,
        min_price: int,
        max_price: int,
        multiplier_percent: int = 120,
        limit_buffer: int = DEFAULT_LIMIT_BUFFER,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        if min_price < 0 or max_price < min_price:
            raise ConfigurationError(
                f"Invalid gas price bounds: min={min_price} max={max_price}"
            )
        if multiplier_percent <= 0:
            raise ConfigurationError(f"Gas multiplier must be positive, got {multiplier_percent}")
        if history_size < 1:
            raise ConfigurationError("Gas history size must be at least 1")

        self.provider = provider
        self.min_price = min_price
        self.max_price = max_price
        self.multiplier_percent = multiplier_percent
        self.limit_buffer = limit_buffer
        self._history: Deque[GasQuote] = deque(maxlen=history_size)

    @property
    def history_size(self) -> int:
        return self._history.maxlen

    def apply_policy(self, raw_price: int) -> int:
        """Multiplier then clamp."""
        price = raw_price * self.multiplier_percent // 100
        return max(self.min_price, min(price, self.max_price))

    def update_multiplier(self, percent: int) -> bool:
        """Change the multiplier used by subsequent estimates."""
        if not MIN_MULTIPLIER_PERCENT <= percent <= MAX_MULTIPLIER_PERCENT:
            logger.warning(f"Rejected gas multiplier update to {percent}%")
            return False
        previous = self.multiplier_percent
        self.multiplier_percent = percent
        logger.info(f"Gas multiplier updated from {previous}% to {percent}%")
        return True

    async def estimate(self) -> GasQuote:
        fee_data = await self.provider.get_fee_data()
        raw_price = fee_data.gas_price
        if raw_price is None:
            raise GasEstimationError("Gas estimation failed: provider returned no gas price")

        quote = GasQuote(price=self.apply_policy(raw_price), observed_base_fee=raw_price)
        self._history.append(quote)

        logger.debug(
            "Gas price estimated",
            extra={
                "gasPrice": str(quote.price),
                "baseFee": str(raw_price),
                "multiplierPercent": self.multiplier_percent,
            },
        )
        return quote

    async def estimate_limit(self, descriptor: Dict[str, Any]) -> int:
        """Provider gas estimate plus the fixed safety buffer."""
        estimated = await self.provider.estimate_gas(descriptor)
        limit = int(estimated) + self.limit_buffer

        logger.debug(
            "Gas limit estimated",
            extra={"estimated": int(estimated), "buffer": self.limit_buffer, "final": limit},
        )
        return limit

    def history(self) -> List[GasQuote]:
        return list(self._history)

    def average_price(self) -> int:
        if not self._history:
            return 0
        return sum(q.price for q in self._history) // len(self._history)

    def latest(self) -> Optional[GasQuote]:
        return self._history[-1] if self._history else None
