"""Merchant fee calculation"""

from fxpay_gateway.domain.models import FeeBreakdown, MerchantProfile
from fxpay_gateway.utils.money import round_money


def calculate_fee(merchant: MerchantProfile, amount: float, currency: str) -> FeeBreakdown:
    """
    Compute the processing fee for a transaction.

    Resolution order:
    - Merchant default percentage and flat fee
    - Currency-specific override (case-insensitive match on currency)
    - First volume tier containing the merchant's monthly volume, applied as a
      percentage discount on the percentage fee only

    Example:
        2.9% + $0.30 on 1000.00, no discount -> 29.00 + 0.30 = 29.30
    """
    percentage_fee = merchant.percentage_fee
    flat_fee = merchant.flat_fee
    override = None

    currency = currency.upper()
    for currency_fee in merchant.currency_fees:
        if currency_fee.currency.upper() == currency:
            override = currency
            if currency_fee.percentage_fee is not None:
                percentage_fee = currency_fee.percentage_fee
            if currency_fee.flat_fee is not None:
                flat_fee = currency_fee.flat_fee
            break

    # Tiers are checked from the lowest threshold up; max_volume is inclusive
    discount = 0.0
    for tier in sorted(merchant.volume_incentives, key=lambda t: t.min_volume):
        if merchant.monthly_volume >= tier.min_volume and (
            tier.max_volume is None or merchant.monthly_volume <= tier.max_volume
        ):
            discount = tier.discount_percent
            break

    effective_percentage = percentage_fee * (1 - discount / 100)
    total_fee = round_money(amount * effective_percentage / 100 + flat_fee)

    return FeeBreakdown(
        percentage_fee=effective_percentage,
        flat_fee=flat_fee,
        total_fee=total_fee,
        discount=discount,
        currency_override=override,
    )
