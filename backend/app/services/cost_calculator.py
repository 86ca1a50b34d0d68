"""
Server-side cost calculation for AI model usage.

WHY THIS IS A SERVICE AND NOT INLINE:
  • Cost is financial data — it deserves its own testable, auditable module.
  • Prices live on the ModelDescriptor, so catalog changes never touch
    the recorder or the routers.
  • Using Decimal everywhere avoids floating-point rounding on money.
"""

from decimal import Decimal

from app.services.model_registry import ModelDescriptor

# Pre-computed divisor — avoids repeated Decimal construction.
_ONE_THOUSAND = Decimal("1000")
_ZERO = Decimal("0")


def calculate_cost(
    descriptor: ModelDescriptor | None,
    input_tokens: int,
    output_tokens: int,
) -> Decimal:
    """
    Calculate the USD cost of one request.

    Args:
        descriptor:    Model that served the request. None (model no longer
                       in the catalog) costs nothing.
        input_tokens:  Number of prompt tokens (>= 0).
        output_tokens: Number of completion tokens (>= 0).

    Returns:
        Exact Decimal cost in USD.

    Raises:
        ValueError: If a token count is negative.
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts must be non-negative")
    if descriptor is None:
        return _ZERO

    input_cost = (Decimal(input_tokens) / _ONE_THOUSAND) * descriptor.price_per_1k_input
    output_cost = (Decimal(output_tokens) / _ONE_THOUSAND) * descriptor.price_per_1k_output

    return input_cost + output_cost
