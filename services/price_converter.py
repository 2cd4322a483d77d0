"""
USD <-> wei conversion against the escrow contract's ETH/USD feed.

USD amounts are carried on-chain as 8-decimal fixed point, the same
precision as the Chainlink price feed, so usd8 / price8 is a plain ETH ratio.
"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN

from core.errors import EscrowError, InvalidAmount, PriceUnavailable

logger = logging.getLogger('gateway.price')

USD_DECIMALS = 8
WEI_PER_ETH = 10 ** 18
SLIPPAGE_DIVISOR = 50       # +2% buffer on pre-committed values
TOLERANCE_PERCENT = 1       # +/-1% band when verifying a client-sent value


def parse_usd(usd_amount) -> Decimal:
    """Parse a decimal USD amount. Rejects negatives, NaN and non-numbers."""
    if isinstance(usd_amount, bool) or usd_amount is None:
        raise InvalidAmount(f"invalid USD amount: {usd_amount!r}")
    try:
        value = Decimal(str(usd_amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"invalid USD amount: {usd_amount!r}")
    if not value.is_finite() or value < 0:
        raise InvalidAmount(f"invalid USD amount: {usd_amount!r}")
    return value


def usd_to_fixed8(usd_amount) -> int:
    value = parse_usd(usd_amount)
    scaled = (value * (10 ** USD_DECIMALS)).quantize(Decimal('1'), rounding=ROUND_HALF_EVEN)
    return int(scaled)


def with_slippage(wei: int) -> int:
    return wei + wei // SLIPPAGE_DIVISOR


def within_tolerance(actual: int, required: int) -> bool:
    """True when actual is within TOLERANCE_PERCENT of required (either side)."""
    return abs(actual - required) * 100 <= required * TOLERANCE_PERCENT


class PriceConverter:
    """Converts using a live price read from `price_source.get_eth_usd_price()`."""

    def __init__(self, price_source):
        self.price_source = price_source

    def eth_usd_price(self, deadline=None) -> int:
        try:
            price = self.price_source.get_eth_usd_price(deadline=deadline)
        except PriceUnavailable:
            raise
        except EscrowError as e:
            raise PriceUnavailable(f"failed to get ETH/USD price: {e.message}")
        if not price or price <= 0:
            raise PriceUnavailable(f"invalid ETH/USD price from feed: {price}")
        return int(price)

    def usd_to_wei(self, usd_amount, price=None, deadline=None) -> int:
        usd8 = usd_to_fixed8(usd_amount)
        price8 = price if price is not None else self.eth_usd_price(deadline)
        if price8 <= 0:
            raise PriceUnavailable(f"invalid ETH/USD price: {price8}")
        wei = usd8 * WEI_PER_ETH // price8
        logger.debug("Converted $%s -> %d wei at price %d", usd_amount, wei, price8)
        return wei

    def wei_to_usd(self, wei: int, price=None, deadline=None) -> str:
        price8 = price if price is not None else self.eth_usd_price(deadline)
        if price8 <= 0:
            raise PriceUnavailable(f"invalid ETH/USD price: {price8}")
        usd = Decimal(int(wei)) * Decimal(price8) / Decimal(WEI_PER_ETH) / Decimal(10 ** USD_DECIMALS)
        return str(usd.quantize(Decimal('0.01'), rounding=ROUND_HALF_EVEN))

    def required_funding(self, usd_amount, deadline=None) -> tuple:
        """Returns (usd_fixed8, wei_with_slippage) for a funding submission."""
        usd8 = usd_to_fixed8(usd_amount)
        wei = self.usd_to_wei(usd_amount, deadline=deadline)
        return usd8, with_slippage(wei)
