"""
Utility functions for addresses, token amounts and cache keys.
"""

from typing import Any
from decimal import Decimal, ROUND_DOWN
import re
import logging

logger = logging.getLogger(__name__)

# Cache key prefixes owned by a tracked address
POWER_KEY = "voting_power"
ANALYTICS_KEY = "voting_analytics"
PREDICTIONS_KEY = "power_predictions"


def is_valid_ethereum_address(address: str) -> bool:
    """Check if a string is a valid Ethereum address."""
    if not address:
        return False

    # Remove 0x prefix if present
    if address.startswith('0x'):
        address = address[2:]

    # Check if it's 40 hex characters
    return bool(re.match(r'^[0-9a-fA-F]{40}$', address))


def normalize_address(address: str) -> str:
    """Normalize an Ethereum address to lowercase with 0x prefix."""
    if not is_valid_ethereum_address(address):
        raise ValueError(f"Invalid address: {address!r}")

    address = address.lower()
    if not address.startswith('0x'):
        address = '0x' + address

    return address


def address_cache_key(prefix: str, address: str, *parts: Any) -> str:
    """Key like voting_power:0xabc, or power_predictions:0xabc:30:7 with extra parts."""
    return ":".join([prefix, address, *(str(p) for p in parts)])


def format_token_amount(amount: int, decimals: int) -> Decimal:
    """Convert base units into whole tokens."""
    try:
        if decimals == 0:
            return Decimal(amount)

        divisor = Decimal(10) ** decimals
        return (Decimal(amount) / divisor).quantize(Decimal('0.000001'), rounding=ROUND_DOWN)
    except (ValueError, TypeError, ArithmeticError) as e:
        logger.warning(
            f"Error formatting token amount: {amount}, decimals: {decimals}, error: {e}")
        return Decimal('0')


def format_number(number: Decimal, decimals: int = 2) -> str:
    """Format a number with K/M/B suffixes."""
    try:
        if number == 0:
            return "0"

        num = float(number)

        if num >= 1_000_000_000:
            return f"{num / 1_000_000_000:.{decimals}f}B"
        elif num >= 1_000_000:
            return f"{num / 1_000_000:.{decimals}f}M"
        elif num >= 1_000:
            return f"{num / 1_000:.{decimals}f}K"
        else:
            return f"{num:.{decimals}f}"
    except (ValueError, TypeError, OverflowError) as e:
        logger.warning(f"Error formatting number {number}: {e}")
        return str(number)


def short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"
