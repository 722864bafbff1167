from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from facturador.config import IVA_CODE, IVA_DESCRIPTION, IVA_RATE, SV_TZ
from facturador.models.document import DocumentType, LineItem, TaxTreatment, Totals
from facturador.models.emitter import Branch, Emitter
from facturador.models.receiver import DOC_TYPE_DUI, FSE_DOC_TYPES, Receiver
from facturador.services.exceptions import ValidationError
from facturador.utils.formatters import amount_in_words, round2, round4

ZERO = Decimal("0")
_DIVISOR = 1 + IVA_RATE

# Defaults MH accepts when a receiver has no activity or address on file
_DEFAULT_ACTIVITY = ("10005", "Otros")
_DEFAULT_ADDRESS = ("01", "01", "Sin dirección registrada")


@dataclass(frozen=True)
class BuiltDocument:
    document: dict[str, Any]
    totals: Totals
    version: int


@dataclass
class _Sums:
    not_subject: Decimal = ZERO
    exempt: Decimal = ZERO
    taxed: Decimal = ZERO
    not_taxed: Decimal = ZERO
    discount: Decimal = ZERO
    tax: Decimal = ZERO  # sum of 4-place line ivaItem values

    def add(self, treatment: TaxTreatment, net: Decimal) -> None:
        if treatment is TaxTreatment.NO_SUJETO:
            self.not_subject += net
        elif treatment is TaxTreatment.EXENTO:
            self.exempt += net
        elif treatment is TaxTreatment.NO_GRAVADO:
            self.not_taxed += net
        else:
            self.taxed += net


def _num(value: Decimal) -> float:
    """MH expects JSON numbers; values are already rounded."""
    return float(value)


def sv_now(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(SV_TZ)
    if now.tzinfo is None:
        return now.replace(tzinfo=SV_TZ)
    return now.astimezone(SV_TZ)


def line_net(item: LineItem) -> tuple[Decimal, Decimal]:
    """Return (net, discount) for one line, both rounded to 4 places."""
    gross = round4(item.quantity * item.unit_price)
    discount = round4(item.discount)
    return round4(gross - discount), discount


def backed_out_tax(net: Decimal) -> Decimal:
    """IVA contained in a tax-inclusive amount."""
    return round4(net - round4(net / _DIVISOR))


def _identification(
    doc_type: DocumentType,
    version: int,
    ambiente: str,
    control_number: str,
    generation_code: str,
    now: datetime,
) -> dict[str, Any]:
    return {
        "version": version,
        "ambiente": ambiente,
        "tipoDte": doc_type.value,
        "numeroControl": control_number,
        "codigoGeneracion": generation_code,
        "tipoModelo": 1,
        "tipoOperacion": 1,
        "tipoContingencia": None,
        "motivoContin": None,
        "fecEmi": now.strftime("%Y-%m-%d"),
        "horEmi": now.strftime("%H:%M:%S"),
        "tipoMoneda": "USD",
    }


def _emitter_block(doc_type: DocumentType, emitter: Emitter, branch: Branch) -> dict[str, Any]:
    block: dict[str, Any] = {
        "nit": emitter.nit_digits,
        "nrc": emitter.nrc,
        "nombre": emitter.nombre,
        "codActividad": emitter.cod_actividad,
        "descActividad": emitter.desc_actividad,
    }
    # FSE carries neither establishment type nor trade name
    if doc_type is not DocumentType.SUJETO_EXCLUIDO:
        block["nombreComercial"] = emitter.nombre_comercial
        block["tipoEstablecimiento"] = branch.tipo_establecimiento
    block["direccion"] = {
        "departamento": branch.departamento or emitter.departamento,
        "municipio": branch.municipio or emitter.municipio,
        "complemento": branch.complemento or emitter.complemento,
    }
    block["telefono"] = emitter.telefono
    block["correo"] = emitter.correo
    # Credit notes do not carry point-of-sale codes
    if doc_type is not DocumentType.NOTA_CREDITO:
        block["codEstableMH"] = branch.cod_estable_mh
        block["codEstable"] = branch.cod_estable
        block["codPuntoVentaMH"] = branch.cod_punto_venta_mh
        block["codPuntoVenta"] = branch.cod_punto_venta
    return block


def _address(receiver: Receiver) -> dict[str, str]:
    dep, mun, comp = _DEFAULT_ADDRESS
    return {
        "departamento": receiver.departamento or dep,
        "municipio": receiver.municipio or mun,
        "complemento": receiver.complemento or comp,
    }


def _consumer_receiver(receiver: Receiver) -> dict[str, Any]:
    if receiver.is_empty:
        return {
            "tipoDocumento": None,
            "numDocumento": None,
            "nrc": None,
            "nombre": None,
            "codActividad": None,
            "descActividad": None,
            "direccion": None,
            "telefono": None,
            "correo": None,
        }
    doc = receiver.identity_document
    has_address = bool(receiver.departamento and receiver.municipio)
    return {
        "tipoDocumento": doc[0] if doc else None,
        "numDocumento": doc[1] if doc else None,
        "nrc": None,
        "nombre": receiver.nombre,
        "codActividad": receiver.cod_actividad,
        "descActividad": receiver.desc_actividad,
        "direccion": {
            "departamento": receiver.departamento,
            "municipio": receiver.municipio,
            "complemento": receiver.complemento or "",
        } if has_address else None,
        "telefono": receiver.telefono,
        "correo": receiver.correo,
    }


def _fiscal_receiver(receiver: Receiver) -> dict[str, Any]:
    cod, desc = _DEFAULT_ACTIVITY
    return {
        "nit": receiver.nit,
        "nrc": receiver.nrc,
        "nombre": receiver.nombre,
        "codActividad": receiver.cod_actividad or cod,
        "descActividad": receiver.desc_actividad or desc,
        "nombreComercial": receiver.nombre_comercial,
        "direccion": _address(receiver),
        "telefono": receiver.telefono or "",
        "correo": receiver.correo or "",
    }


def _excluded_subject(receiver: Receiver) -> dict[str, Any]:
    cod, desc = _DEFAULT_ACTIVITY
    doc = receiver.identity_document
    if doc is None:
        raise ValidationError("El sujeto excluido requiere un documento de identidad")
    return {
        "tipoDocumento": FSE_DOC_TYPES.get(doc[0], DOC_TYPE_DUI),
        "numDocumento": doc[1],
        "nombre": receiver.nombre,
        "codActividad": receiver.cod_actividad or cod,
        "descActividad": receiver.desc_actividad or desc,
        "direccion": _address(receiver),
        "telefono": receiver.telefono,
        "correo": receiver.correo,
    }


def check_receiver(doc_type: DocumentType, receiver: Receiver) -> None:
    """Raise ValidationError when *receiver* lacks what *doc_type* requires."""
    if doc_type in (DocumentType.CREDITO_FISCAL, DocumentType.NOTA_CREDITO):
        if not receiver.has_fiscal_credit_ids:
            raise ValidationError(f"{doc_type.label} requiere NIT y NRC del receptor")
        if not receiver.nombre:
            raise ValidationError(f"{doc_type.label} requiere nombre del receptor")
    elif doc_type is DocumentType.SUJETO_EXCLUIDO:
        if receiver.identity_document is None:
            raise ValidationError("Factura de Sujeto Excluido requiere DUI o NIT del receptor")
        if not receiver.nombre:
            raise ValidationError("Factura de Sujeto Excluido requiere nombre del receptor")


def _sales_line(
    num: int,
    item: LineItem,
    net: Decimal,
    discount: Decimal,
    related_code: str | None,
) -> dict[str, Any]:
    column = {
        TaxTreatment.NO_SUJETO: "ventaNoSuj",
        TaxTreatment.EXENTO: "ventaExenta",
        TaxTreatment.GRAVADO: "ventaGravada",
    }
    line: dict[str, Any] = {
        "numItem": num,
        "tipoItem": item.item_type,
        "numeroDocumento": related_code,
        "codigo": item.code,
        "codTributo": None,
        "descripcion": item.description,
        "cantidad": _num(item.quantity),
        "uniMedida": item.unit,
        "precioUni": _num(round4(item.unit_price)),
        "montoDescu": _num(discount),
        "ventaNoSuj": 0.0,
        "ventaExenta": 0.0,
        "ventaGravada": 0.0,
        "tributos": None,
    }
    if item.treatment in column:
        line[column[item.treatment]] = _num(net)
    return line


def _payments(payments: Sequence[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    if not payments:
        return None
    return [
        {
            "codigo": p.get("codigo", "01"),
            "montoPago": _num(round2(Decimal(str(p["monto"])))),
            "referencia": p.get("referencia"),
            "plazo": p.get("plazo"),
            "periodo": p.get("periodo"),
        }
        for p in payments
    ]


def _extension(observations: str | None, *, with_plate: bool = True) -> dict[str, Any] | None:
    if not observations:
        return None
    ext: dict[str, Any] = {
        "nombEntrega": None,
        "docuEntrega": None,
        "nombRecibe": None,
        "docuRecibe": None,
        "observaciones": observations,
    }
    if with_plate:
        ext["placaVehiculo"] = None
    return ext


def _iva_tributes(tax: Decimal) -> list[dict[str, Any]] | None:
    if tax <= 0:
        return None
    return [{"codigo": IVA_CODE, "descripcion": IVA_DESCRIPTION, "valor": _num(tax)}]


def build_document(
    doc_type: DocumentType,
    *,
    emitter: Emitter,
    branch: Branch,
    receiver: Receiver,
    items: Sequence[LineItem],
    generation_code: str,
    control_number: str,
    ambiente: str,
    condition: int = 1,
    observations: str | None = None,
    related: Sequence[dict[str, Any]] | None = None,
    payments: Sequence[dict[str, Any]] | None = None,
    iva_withheld: Decimal | int = 0,
    income_withheld: Decimal | int = 0,
    now: datetime | None = None,
) -> BuiltDocument:
    """Build the MH JSON document for *doc_type* ready for signing.

    Line values are rounded to 4 places and summary values to 2. Discounts
    are applied once, at line level: summary subtotals are sums of line nets
    and ``totalDescu`` only reports them.
    """
    if not doc_type.is_buildable:
        raise ValidationError(f"Tipo de documento no soportado: {doc_type.value}")
    if not items:
        raise ValidationError("El documento debe tener al menos un ítem")
    check_receiver(doc_type, receiver)

    version = doc_type.version
    ts = sv_now(now)
    iva_withheld = round2(Decimal(iva_withheld))
    income_withheld = round2(Decimal(income_withheld))

    doc: dict[str, Any] = {
        "identificacion": _identification(
            doc_type, version, ambiente, control_number, generation_code, ts
        ),
    }

    if doc_type is DocumentType.SUJETO_EXCLUIDO:
        totals = _build_excluded_subject(
            doc, emitter, branch, receiver, items, condition, observations,
            payments, iva_withheld, income_withheld,
        )
        return BuiltDocument(document=doc, totals=totals, version=version)

    if doc_type is DocumentType.NOTA_CREDITO:
        if not related:
            raise ValidationError("La nota de crédito requiere un documento relacionado")
        related_code = related[0]["numeroDocumento"]
        doc["documentoRelacionado"] = [
            {
                "tipoDocumento": r["tipoDocumento"],
                "tipoGeneracion": r.get("tipoGeneracion", 2),
                "numeroDocumento": r["numeroDocumento"],
                "fechaEmision": r["fechaEmision"],
            }
            for r in related
        ]
    else:
        related_code = None
        doc["documentoRelacionado"] = list(related) if related else None

    doc["emisor"] = _emitter_block(doc_type, emitter, branch)
    if doc_type is DocumentType.FACTURA:
        doc["receptor"] = _consumer_receiver(receiver)
        doc["otrosDocumentos"] = None
    else:
        doc["receptor"] = _fiscal_receiver(receiver)
        if doc_type is DocumentType.CREDITO_FISCAL:
            doc["otrosDocumentos"] = None
    doc["ventaTercero"] = None

    sums = _Sums()
    body: list[dict[str, Any]] = []
    for num, item in enumerate(items, start=1):
        net, discount = line_net(item)
        if doc_type is DocumentType.NOTA_CREDITO and item.treatment is TaxTreatment.NO_GRAVADO:
            raise ValidationError("La nota de crédito no admite ítems no gravados")
        sums.add(item.treatment, net)
        sums.discount += discount
        line = _sales_line(num, item, net, discount, related_code)
        if doc_type is DocumentType.FACTURA:
            iva_item = backed_out_tax(net) if item.treatment is TaxTreatment.GRAVADO else ZERO
            sums.tax += iva_item
            line["psv"] = 0.0
            line["noGravado"] = _num(net) if item.treatment is TaxTreatment.NO_GRAVADO else 0.0
            line["ivaItem"] = _num(iva_item)
        else:
            if item.treatment is TaxTreatment.GRAVADO:
                line["tributos"] = [IVA_CODE]
            if doc_type is DocumentType.CREDITO_FISCAL:
                line["psv"] = 0.0
                line["noGravado"] = _num(net) if item.treatment is TaxTreatment.NO_GRAVADO else 0.0
        body.append(line)
    doc["cuerpoDocumento"] = body

    not_subject = round2(sums.not_subject)
    exempt = round2(sums.exempt)
    taxed = round2(sums.taxed)
    not_taxed = round2(sums.not_taxed)
    discount_total = round2(sums.discount)
    sub_total = not_subject + exempt + taxed

    resumen: dict[str, Any] = {
        "totalNoSuj": _num(not_subject),
        "totalExenta": _num(exempt),
        "totalGravada": _num(taxed),
        "subTotalVentas": _num(sub_total),
        "descuNoSuj": 0.0,
        "descuExenta": 0.0,
        "descuGravada": 0.0,
    }

    if doc_type is DocumentType.FACTURA:
        tax = round2(sums.tax)
        total_to_pay = sub_total + not_taxed
        resumen.update({
            "porcentajeDescuento": 0.0,
            "totalDescu": _num(discount_total),
            "tributos": None,
            "subTotal": _num(sub_total),
            "ivaRete1": 0.0,
            "reteRenta": 0.0,
            "montoTotalOperacion": _num(sub_total),
            "totalNoGravado": _num(not_taxed),
            "totalPagar": _num(total_to_pay),
            "totalLetras": amount_in_words(total_to_pay),
            "totalIva": _num(tax),
            "saldoFavor": 0.0,
            "condicionOperacion": condition,
            "pagos": _payments(payments),
            "numPagoElectronico": None,
        })
        doc["extension"] = _extension(observations)
    else:
        tax = round2(taxed * IVA_RATE)
        operation_total = sub_total + tax
        resumen.update({
            "totalDescu": _num(discount_total),
            "tributos": _iva_tributes(tax),
            "subTotal": _num(sub_total),
            "ivaPerci1": 0.0,
            "ivaRete1": _num(iva_withheld),
            "reteRenta": _num(income_withheld),
            "montoTotalOperacion": _num(operation_total),
        })
        if doc_type is DocumentType.CREDITO_FISCAL:
            total_to_pay = operation_total + not_taxed - iva_withheld - income_withheld
            resumen.update({
                "porcentajeDescuento": 0.0,
                "totalNoGravado": _num(not_taxed),
                "totalPagar": _num(total_to_pay),
                "totalLetras": amount_in_words(total_to_pay),
                "saldoFavor": 0.0,
                "condicionOperacion": condition,
                "pagos": _payments(payments),
                "numPagoElectronico": None,
            })
            doc["extension"] = _extension(observations)
        else:
            # Credit notes have no totalPagar; the operation total is what is credited
            total_to_pay = operation_total
            resumen.update({
                "totalLetras": amount_in_words(total_to_pay),
                "condicionOperacion": condition,
            })
            doc["extension"] = _extension(observations, with_plate=False)
    doc["resumen"] = resumen
    doc["apendice"] = None

    totals = Totals(
        not_subject=not_subject,
        exempt=exempt,
        taxed=taxed,
        not_taxed=not_taxed,
        discount=discount_total,
        tax=tax,
        sales_subtotal=sub_total,
        total_to_pay=total_to_pay,
        total_in_words=resumen["totalLetras"],
    )
    return BuiltDocument(document=doc, totals=totals, version=version)


def _build_excluded_subject(
    doc: dict[str, Any],
    emitter: Emitter,
    branch: Branch,
    receiver: Receiver,
    items: Sequence[LineItem],
    condition: int,
    observations: str | None,
    payments: Sequence[dict[str, Any]] | None,
    iva_withheld: Decimal,
    income_withheld: Decimal,
) -> Totals:
    doc["emisor"] = _emitter_block(DocumentType.SUJETO_EXCLUIDO, emitter, branch)
    doc["sujetoExcluido"] = _excluded_subject(receiver)

    sums = _Sums()
    body: list[dict[str, Any]] = []
    for num, item in enumerate(items, start=1):
        net, discount = line_net(item)
        sums.add(item.treatment, net)
        sums.discount += discount
        if item.treatment is TaxTreatment.GRAVADO:
            sums.tax += backed_out_tax(net)
        body.append({
            "numItem": num,
            "tipoItem": item.item_type,
            "codigo": item.code,
            "descripcion": item.description,
            "cantidad": _num(item.quantity),
            "uniMedida": item.unit,
            "precioUni": _num(round4(item.unit_price)),
            "montoDescu": _num(discount),
            "compra": _num(net),
        })
    doc["cuerpoDocumento"] = body

    purchase_total = round2(sums.not_subject + sums.exempt + sums.taxed + sums.not_taxed)
    discount_total = round2(sums.discount)
    total_to_pay = purchase_total - iva_withheld - income_withheld
    words = amount_in_words(total_to_pay)
    doc["resumen"] = {
        "totalCompra": _num(purchase_total),
        "descu": _num(discount_total),
        "totalDescu": _num(discount_total),
        "subTotal": _num(purchase_total),
        "ivaRete1": _num(iva_withheld),
        "reteRenta": _num(income_withheld),
        "totalPagar": _num(total_to_pay),
        "totalLetras": words,
        "condicionOperacion": condition,
        "pagos": _payments(payments),
        "observaciones": observations,
    }
    doc["apendice"] = None

    return Totals(
        not_subject=round2(sums.not_subject),
        exempt=round2(sums.exempt),
        taxed=round2(sums.taxed),
        not_taxed=round2(sums.not_taxed),
        discount=discount_total,
        tax=round2(sums.tax),
        sales_subtotal=purchase_total,
        total_to_pay=total_to_pay,
        total_in_words=words,
    )
