"""Regional VAT rate tables.

Rates are legally fixed per fiscal region and are not configuration.
"""

from decimal import Decimal
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict


class FiscalRegion(str, Enum):
    """Jurisdiction whose rate table applies to a document."""

    MAINLAND = "mainland"
    AZORES = "azores"
    MADEIRA = "madeira"


class VatTier(str, Enum):
    """Taxed VAT tiers (the exempt base has no VAT amount)."""

    REDUCED = "reduced"
    INTERMEDIATE = "intermediate"
    STANDARD = "standard"


class RateTable(BaseModel):
    """VAT rates of one region, as fractions (0.23 = 23%)."""

    model_config = ConfigDict(frozen=True)

    reduced: Decimal
    intermediate: Decimal
    standard: Decimal

    def rate(self, tier: VatTier) -> Decimal:
        return getattr(self, tier.value)


VAT_RATES = MappingProxyType(
    {
        FiscalRegion.MAINLAND: RateTable(
            reduced=Decimal("0.06"), intermediate=Decimal("0.13"), standard=Decimal("0.23")
        ),
        FiscalRegion.AZORES: RateTable(
            reduced=Decimal("0.04"), intermediate=Decimal("0.09"), standard=Decimal("0.16")
        ),
        FiscalRegion.MADEIRA: RateTable(
            reduced=Decimal("0.05"), intermediate=Decimal("0.12"), standard=Decimal("0.22")
        ),
    }
)

_REGION_ALIASES = {
    "PT": FiscalRegion.MAINLAND,
    "PT-C": FiscalRegion.MAINLAND,
    "C": FiscalRegion.MAINLAND,
    "CONTINENTE": FiscalRegion.MAINLAND,
    "CONTINENTAL": FiscalRegion.MAINLAND,
    "MAINLAND": FiscalRegion.MAINLAND,
    "PT-AC": FiscalRegion.AZORES,
    "PT-20": FiscalRegion.AZORES,
    "RA": FiscalRegion.AZORES,
    "AZORES": FiscalRegion.AZORES,
    "ACORES": FiscalRegion.AZORES,
    "AÇORES": FiscalRegion.AZORES,
    "PT-MA": FiscalRegion.MADEIRA,
    "PT-30": FiscalRegion.MADEIRA,
    "RM": FiscalRegion.MADEIRA,
    "MADEIRA": FiscalRegion.MADEIRA,
}


def rate_table(region: FiscalRegion) -> RateTable:
    return VAT_RATES[region]


def parse_fiscal_region(value: object) -> FiscalRegion | None:
    """Map the many spellings used on documents to a FiscalRegion."""
    if isinstance(value, FiscalRegion):
        return value
    if not isinstance(value, str):
        return None
    return _REGION_ALIASES.get(value.strip().upper())


def infer_region_from_amounts(
    amounts: dict[VatTier, tuple[Decimal | None, Decimal | None]],
) -> FiscalRegion:
    """Infer the region whose rates best explain the (base, vat) pairs.

    The standard tier is most discriminating, so it is checked first. Falls
    back to MAINLAND when no tier has both a base and a VAT amount.
    """
    for tier in (VatTier.STANDARD, VatTier.INTERMEDIATE, VatTier.REDUCED):
        base, vat = amounts.get(tier, (None, None))
        if not base or vat is None:
            continue
        effective = vat / base
        return min(VAT_RATES, key=lambda region: abs(VAT_RATES[region].rate(tier) - effective))
    return FiscalRegion.MAINLAND
