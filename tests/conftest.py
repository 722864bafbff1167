from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from facturador.models.document import LineItem, TaxTreatment
from facturador.models.emitter import Emitter
from facturador.models.receiver import Receiver
from facturador.services.context import Services
from facturador.services.mh_client import TransmissionResult
from facturador.utils.sequence import BlockStore

GEN_CODE = "0A1B2C3D-4E5F-4A6B-8C7D-9E0F1A2B3C4D"


def accepted(seal: str = "2025ABCDEF0123456789ABCDEF0123456789ABCD") -> TransmissionResult:
    return TransmissionResult(
        success=True,
        state="PROCESADO",
        seal=seal,
        processed_at="2025-03-10T10:15:00-06:00",
        message_code="001",
        message_description="RECIBIDO",
    )


def rejected(description: str = "[identificacion.numeroControl] YA EXISTE") -> TransmissionResult:
    return TransmissionResult(
        success=False,
        state="RECHAZADO",
        message_code="004",
        message_description=description,
        observations=["Campo numeroControl duplicado"],
    )


# --- Emitter fixtures ---


@pytest.fixture
def emitter_dict() -> dict:
    return {
        "nit": "0614-010190-101-3",
        "nrc": "1234567",
        "nombre": "REDES DEL PACIFICO, S.A. DE C.V.",
        "nombre_comercial": "RedPac",
        "cod_actividad": "61900",
        "desc_actividad": "Otras actividades de telecomunicación",
        "telefono": "22223333",
        "correo": "facturacion@redpac.com.sv",
        "direccion": {
            "departamento": "06",
            "municipio": "14",
            "complemento": "Col. Escalón, San Salvador",
        },
        "sucursales": [
            {
                "codigo": "CM",
                "nombre": "Casa matriz",
                "tipo_establecimiento": "01",
                "cod_estable_mh": "M001",
                "cod_estable": "0001",
                "cod_punto_venta_mh": "P001",
                "cod_punto_venta": "0001",
            },
            {
                "codigo": "SA",
                "nombre": "Santa Ana",
                "tipo_establecimiento": "02",
                "cod_estable_mh": "S002",
                "cod_punto_venta_mh": "P003",
                "departamento": "02",
                "municipio": "10",
                "complemento": "Av. Independencia Sur",
            },
        ],
    }


@pytest.fixture
def emitter(emitter_dict: dict) -> Emitter:
    return Emitter.from_dict(emitter_dict)


@pytest.fixture
def branch(emitter: Emitter):
    return emitter.branch("CM")


# --- Receiver fixtures ---


@pytest.fixture
def client_dict() -> dict:
    """A contract client with NIT and NRC (fiscal-credit receiver)."""
    return {
        "nombre": "DISTRIBUIDORA LA CEIBA, S.A. DE C.V.",
        "nit": "0614-250588-102-1",
        "nrc": "6543210",
        "cod_actividad": "46900",
        "desc_actividad": "Venta al por mayor",
        "telefono": "24401122",
        "correo": "pagos@laceiba.com.sv",
        "direccion": {"departamento": "05", "municipio": "11", "complemento": "Km 10"},
    }


@pytest.fixture
def consumer_dict() -> dict:
    """A residential client identified by DUI only."""
    return {
        "nombre": "María Hernández",
        "tipo_documento": "13",
        "num_documento": "01234567-8",
        "telefono": "77778888",
        "correo": "maria@example.com",
    }


@pytest.fixture
def fiscal_receiver(client_dict: dict) -> Receiver:
    return Receiver.from_dict(client_dict)


@pytest.fixture
def consumer_receiver(consumer_dict: dict) -> Receiver:
    return Receiver.from_dict(consumer_dict)


@pytest.fixture
def service_item() -> LineItem:
    return LineItem(
        description="Internet residencial 50 Mbps",
        quantity=Decimal("1"),
        unit_price=Decimal("25.00"),
    )


@pytest.fixture
def taxed_item() -> LineItem:
    return LineItem(
        description="Enlace dedicado 100 Mbps",
        quantity=Decimal("1"),
        unit_price=Decimal("100.00"),
        treatment=TaxTreatment.GRAVADO,
    )


# --- Config dir fixture ---


@pytest.fixture
def config_dir(tmp_path, emitter_dict, client_dict, consumer_dict):
    import yaml

    cfg = tmp_path / "config"
    cfg.mkdir()
    (cfg / "emitter.yaml").write_text(yaml.dump(emitter_dict, allow_unicode=True))
    clients = cfg / "clients"
    clients.mkdir()
    (clients / "la-ceiba.yaml").write_text(yaml.dump(client_dict, allow_unicode=True))
    (clients / "maria.yaml").write_text(yaml.dump(consumer_dict, allow_unicode=True))
    return cfg


# --- Services with fake collaborators ---


@pytest.fixture
def data_dir(tmp_path) -> Path:
    d = tmp_path / "data" / "pruebas"
    d.mkdir(parents=True)
    return d


@pytest.fixture
def blocks(data_dir: Path) -> BlockStore:
    store = BlockStore(data_dir / "blocks.json")
    for doc_type in ("01", "03", "05", "14"):
        store.add_block("CM", doc_type, 0, 100)
    return store


@pytest.fixture
def services(data_dir, blocks, emitter_dict, client_dict, consumer_dict) -> Services:
    from facturador.models.document import TaxDocument
    from facturador.models.void_event import VoidEvent
    from facturador.utils.registry import JsonStore

    clients = {"la-ceiba": client_dict, "maria": consumer_dict}

    def load_client(slug: str) -> dict:
        if slug not in clients:
            raise FileNotFoundError(slug)
        return clients[slug]

    return Services(
        env="pruebas",
        documents=JsonStore(data_dir / "documents.json", TaxDocument.from_dict),
        voids=JsonStore(data_dir / "voids.json", VoidEvent.from_dict),
        blocks=blocks,
        sign=MagicMock(return_value="eyJhbGciOiJSUzUxMiJ9.e30.c2lnbmF0dXJl"),
        transmit_document=MagicMock(return_value=accepted()),
        transmit_void=MagicMock(return_value=accepted("VOID0000000000000000000000000000000SEAL")),
        notify=MagicMock(),
        load_emitter=lambda: emitter_dict,
        load_client=load_client,
        query=MagicMock(return_value=accepted()),
        issued_dir=data_dir / "issued",
    )
