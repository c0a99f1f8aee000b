"""
e-CF document assembler: invoice + parties -> canonical XML bytes.

Output is exclusive C14N: no XML declaration, no whitespace between elements,
fixed element order. Identical input always yields identical bytes, which is
what the signer digests.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.utils import timezone
from lxml import etree

from ecf.errors import FieldError, ValidationError
from ecf.services import tax_calculator
from ecf.services.tax_calculator import compute_totals
from ecf.services.validation import collect_errors, normalize_fiscal_id
from ecf.utils import round2, to_decimal

logger = logging.getLogger("ecf")

ECF_NAMESPACE = "https://dgii.gov.do/etrib/schema/ECF/1"
_NSMAP = {None: ECF_NAMESPACE}


def _tag(name: str) -> str:
    return f"{{{ECF_NAMESPACE}}}{name}"


@dataclass(frozen=True)
class CanonicalDocument:
    content: bytes
    fiscal_number: str
    filename: str


def xml_filename(rnc: str, fiscal_number: str) -> str:
    """File name the authority expects: issuer RNC followed by the e-NCF."""
    return f"{normalize_fiscal_id(rnc)}{fiscal_number}.xml"


def _amount(value) -> str:
    return f"{round2(value):.2f}"


def _quantity(value) -> str:
    q = to_decimal(value).normalize()
    return format(q, "f")


def _rate_percent(rate) -> str:
    pct = (to_decimal(rate) * Decimal("100")).normalize()
    return format(pct, "f")


def _text(parent, name: str, value) -> etree._Element:
    el = etree.SubElement(parent, _tag(name))
    el.text = "" if value is None else str(value)
    return el


def _build_id_doc(parent, invoice):
    id_doc = etree.SubElement(parent, _tag("IdDoc"))
    _text(id_doc, "TipoeCF", invoice.document_type)
    _text(id_doc, "eNCF", invoice.fiscal_number)
    issued = timezone.localtime(invoice.issued_at) if timezone.is_aware(invoice.issued_at) else invoice.issued_at
    _text(id_doc, "FechaEmision", issued.strftime("%d-%m-%Y"))
    _text(id_doc, "TipoPago", invoice.payment_method)
    _text(id_doc, "Moneda", invoice.currency)


def _build_party(parent, name: str, id_tag: str, name_tag: str, party):
    node = etree.SubElement(parent, _tag(name))
    _text(node, id_tag, normalize_fiscal_id(party.fiscal_id))
    _text(node, name_tag, party.name)
    if party.address:
        _text(node, "Direccion", party.address)
    if party.phone:
        _text(node, "Telefono", party.phone)
    if party.email:
        _text(node, "CorreoElectronico", party.email)


def _build_totals(parent, totals):
    node = etree.SubElement(parent, _tag("Totales"))
    _text(node, "MontoGravadoTotal", _amount(totals.subtotal))
    _text(node, "ITBIS", _amount(totals.tax))
    _text(node, "MontoTotal", _amount(totals.total))


def _build_items(parent, lines):
    details = etree.SubElement(parent, _tag("DetallesItems"))
    for index, line in enumerate(lines, start=1):
        item = etree.SubElement(details, _tag("Item"))
        _text(item, "NumeroLinea", index)
        _text(item, "NombreItem", line.description)
        _text(item, "CantidadItem", _quantity(line.quantity))
        _text(item, "PrecioUnitarioItem", _amount(line.unit_price))
        _text(item, "TasaITBIS", _rate_percent(line.tax_rate))
        _text(item, "MontoItem", _amount(tax_calculator.line_amount(line.quantity, line.unit_price)))
        _text(item, "MontoITBIS", _amount(tax_calculator.line_tax(line.quantity, line.unit_price, line.tax_rate)))


def assemble(invoice, issuer, recipient, lines=None) -> CanonicalDocument:
    """
    Build the canonical e-CF XML for an invoice that already has a fiscal number.

    Args:
        invoice: Invoice with fiscal_number, document_type, issued_at, currency,
            payment_method and declared subtotal/tax/total.
        issuer: Party issuing the document.
        recipient: Party receiving it.
        lines: Ordered lines; defaults to invoice.lines ordered by line_number.

    Raises:
        ValidationError: every field violation found, including a missing fiscal number.
    """
    if lines is None:
        lines = list(invoice.lines.order_by("line_number"))

    errors = []
    if not invoice.fiscal_number:
        errors.append(FieldError("fiscalNumber", "must be allocated before assembly"))
    errors.extend(collect_errors(issuer, recipient, lines, invoice.subtotal, invoice.tax, invoice.total))
    if errors:
        raise ValidationError(errors)

    totals = compute_totals(lines)
    try:
        root = etree.Element(_tag("ECF"), nsmap=_NSMAP)
        header = etree.SubElement(root, _tag("Encabezado"))
        _build_id_doc(header, invoice)
        _build_party(header, "Emisor", "RNCEmisor", "RazonSocialEmisor", issuer)
        _build_party(header, "Comprador", "RNCComprador", "RazonSocialComprador", recipient)
        _build_totals(header, totals)
        _build_items(root, lines)
        if invoice.notes:
            extra = etree.SubElement(root, _tag("InformacionAdicional"))
            _text(extra, "Observaciones", invoice.notes)
        content = etree.tostring(root, method="c14n", exclusive=True, with_comments=False)
    except ValueError as e:
        # lxml rejects control characters and other non-XML text
        raise ValidationError([FieldError("document", str(e))]) from e

    logger.debug(
        "Assembled e-CF %s (%d bytes)", invoice.fiscal_number, len(content),
        extra={"fiscal_number": invoice.fiscal_number, "invoice_id": invoice.pk},
    )
    return CanonicalDocument(
        content=content,
        fiscal_number=invoice.fiscal_number,
        filename=xml_filename(issuer.fiscal_id, invoice.fiscal_number),
    )
