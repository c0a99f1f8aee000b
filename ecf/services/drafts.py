"""Plain data carriers for parties and invoice drafts handed to the submission pipeline."""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal

from ecf.utils import to_decimal

DEFAULT_TAX_RATE = Decimal("0.18")


@dataclass(frozen=True)
class Party:
    """Issuer or recipient of an e-CF."""

    name: str
    fiscal_id: str
    address: str = ""
    phone: str = ""
    email: str = ""

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Party":
        return cls(
            name=(data.get("name") or "").strip(),
            fiscal_id=(data.get("fiscal_id") or data.get("fiscalId") or "").strip(),
            address=data.get("address") or "",
            phone=data.get("phone") or "",
            email=data.get("email") or "",
        )


@dataclass
class DraftLine:
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal = DEFAULT_TAX_RATE

    def __post_init__(self):
        self.quantity = to_decimal(self.quantity)
        self.unit_price = to_decimal(self.unit_price)
        self.tax_rate = to_decimal(self.tax_rate)


@dataclass
class InvoiceDraft:
    """
    Invoice as captured by the CRUD layer, before a fiscal number exists.
    Declared totals are checked against the lines; they are never trusted blindly.
    """

    recipient: Party
    lines: list[DraftLine]
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    document_type: str = "01"
    currency: str = "DOP"
    payment_method: str = "1"
    issued_at: datetime | None = None
    notes: str = ""

    def __post_init__(self):
        self.subtotal = to_decimal(self.subtotal)
        self.tax = to_decimal(self.tax)
        self.total = to_decimal(self.total)
