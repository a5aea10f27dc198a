from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .models import PaymentMethod


@dataclass(frozen=True)
class DiscountResult:
    final_amount: int
    discount_amount: int
    discount_applied: bool

    def as_metadata(self, original_amount: int) -> dict:
        return {
            "basePayAmount": self.discount_amount,
            "basePayApplied": self.discount_applied,
            "originalAmount": original_amount,
        }


def apply_discount(amount: int, discount_constant: int) -> DiscountResult:
    """Adjust ``amount`` by the configured BasePay constant.

    The adjustment is added, so it behaves as a surcharge: ``final_amount``
    is never below ``amount`` and equals it when the constant is 0.
    """
    if discount_constant < 0:
        raise ValueError("discount constant must be non-negative")
    return DiscountResult(
        final_amount=amount + discount_constant,
        discount_amount=discount_constant,
        discount_applied=discount_constant > 0,
    )


def no_discount(amount: int) -> DiscountResult:
    return DiscountResult(final_amount=amount, discount_amount=0, discount_applied=False)


def discount_for_method(amount: int, method: PaymentMethod, discount_constant: int) -> DiscountResult:
    if method == PaymentMethod.BASEPAY:
        return apply_discount(amount, discount_constant)
    return no_discount(amount)


def format_usdc(amount: int, decimals: int = 6) -> str:
    """Render a smallest-unit amount as ``"0.1 USDC"``, trimmed to 3 places."""
    value = (Decimal(amount) / (Decimal(10) ** decimals)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
    text = format(value, "f").rstrip("0").rstrip(".")
    return f"{text or '0'} USDC"
