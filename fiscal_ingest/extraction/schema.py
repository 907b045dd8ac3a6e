"""Invoice data models for structured extraction.

Field names follow the national invoice QR layout: four tax bases (exempt,
reduced, intermediate, standard), three VAT amounts, VAT total and document
total.
"""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field

from fiscal_ingest.fiscal.rates import FiscalRegion, VatTier

ZERO = Decimal("0.00")


class ExtractedInvoice(BaseModel):
    """Structured fiscal record produced for one document.

    Only built once the document date and total amount are known, so both
    are required here.
    """

    # Parties
    supplier_tax_id: str | None = Field(
        None, description="9-digit national tax identifier or a SEM-NIF- placeholder"
    )
    supplier_foreign_vat_id: str | None = Field(None, description="Foreign VAT identifier")
    supplier_name: str | None = Field(None, description="Supplier company name")
    customer_tax_id: str | None = Field(None, description="Customer national tax identifier")

    # Document identity
    document_date: date = Field(..., description="Issue date (never a due date)")
    document_number: str | None = Field(None, description="Document number, e.g. 'FT 2025/123'")
    document_type: str | None = Field(None, description="Document type code, e.g. FT, FS, FR, NC")
    atcud: str | None = Field(None, description="Unique document code")

    # Tax bases
    base_exempt: Decimal = Field(ZERO, ge=0)
    base_reduced: Decimal = Field(ZERO, ge=0)
    base_intermediate: Decimal = Field(ZERO, ge=0)
    base_standard: Decimal = Field(ZERO, ge=0)

    # VAT amounts
    vat_reduced: Decimal = Field(ZERO, ge=0)
    vat_intermediate: Decimal = Field(ZERO, ge=0)
    vat_standard: Decimal = Field(ZERO, ge=0)

    # Totals
    total_vat: Decimal | None = Field(None, ge=0, description="Document VAT total")
    total_amount: Decimal = Field(..., gt=0, description="Legal document total")
    regularization_vat: Decimal | None = Field(
        None, description="Same-document VAT regularization credit, excluded from total_vat"
    )

    # Derived
    fiscal_region: FiscalRegion = FiscalRegion.MAINLAND
    fiscal_period: str = Field(..., pattern=r"^\d{6}$", description="YYYYMM from document_date")
    confidence: int = Field(50, ge=0, le=100)

    qr_raw: str | None = Field(None, description="Raw QR payload when ingested from a QR code")

    def base_for(self, tier: VatTier) -> Decimal:
        return getattr(self, f"base_{tier.value}")

    def vat_for(self, tier: VatTier) -> Decimal:
        return getattr(self, f"vat_{tier.value}")

    @property
    def tier_vat_sum(self) -> Decimal:
        return sum((self.vat_for(tier) for tier in VatTier), ZERO)

    @property
    def bases_sum(self) -> Decimal:
        return self.base_exempt + sum((self.base_for(tier) for tier in VatTier), ZERO)

    @property
    def supplier_id(self) -> str | None:
        """Identifier used for duplicate detection and display."""
        return self.supplier_tax_id or self.supplier_foreign_vat_id
