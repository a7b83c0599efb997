"""Currency -- ISO 4217 minor-unit exponents and major/minor conversion."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    """Minor-unit precision for a single ISO 4217 currency."""

    code: str
    decimal_places: int

    @property
    def minor_unit_factor(self) -> int:
        """Number of minor units in one major unit (100 for CAD, 1 for JPY)."""
        return 10 ** self.decimal_places


class CurrencyRegistry:
    """ISO 4217 exponents.  Currencies not listed use two decimal places."""

    DEFAULT_DECIMAL_PLACES: ClassVar[int] = 2

    _NON_DEFAULT: ClassVar[dict[str, int]] = {
        # Zero decimal currencies
        "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0,
        "KMF": 0, "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0,
        "VUV": 0, "XAF": 0, "XOF": 0, "XPF": 0,
        # Three decimal currencies
        "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
        # Four decimal currencies
        "CLF": 4, "UYW": 4,
    }

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo:
        normalized = (code or "").upper().strip()
        return CurrencyInfo(
            normalized,
            cls._NON_DEFAULT.get(normalized, cls.DEFAULT_DECIMAL_PLACES),
        )

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        return cls.get_info(code).decimal_places

    @classmethod
    def is_well_formed(cls, code: str) -> bool:
        """Three ASCII letters.  Existence in ISO 4217 is not checked."""
        return isinstance(code, str) and len(code) == 3 and code.isascii() and code.isalpha()

    @classmethod
    def to_minor_units(cls, amount: Decimal, code: str) -> int:
        """Scale a major-unit Decimal to integer minor units, rounding half up."""
        factor = cls.get_info(code).minor_unit_factor
        return int((amount * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def to_major_units(cls, minor_units: int, code: str) -> Decimal:
        """Inverse of to_minor_units; exact for integer input."""
        places = cls.get_decimal_places(code)
        return Decimal(minor_units).scaleb(-places)
