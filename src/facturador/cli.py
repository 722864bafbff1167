from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import stat
import sys
from collections.abc import Callable, Sequence
from datetime import date
from decimal import Decimal
from importlib.resources import files
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Exit codes: 0 accepted, 1 signed/transmitted but not accepted, 2 refused before any change
EXIT_OK = 0
EXIT_NOT_ACCEPTED = 1
EXIT_ERROR = 2


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tiene permisos abiertos.")
            print("  Recomendación: chmod 600", env_file)
    except OSError:
        pass


def _store_secret(config_dir: Path, env_var: str, keyring_username: str, label: str) -> bool:
    """Ask for one secret and store it in the keyring or the config dir .env.

    Returns True when the secret was stored somewhere.
    """
    from facturador.config import _delete_keyring_password, _set_keyring_password

    value = getpass.getpass(f"{label} (vacío para omitir): ")
    if not value:
        print("  Omitido.")
        return False

    env_file = config_dir / ".env"
    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Llavero del sistema (recomendado)"))
    options.append(("2", "Archivo .env en el directorio de configuración"))
    options.append(("3", "No almacenar (definir manualmente)"))
    for num, text in options:
        print(f"  {num}. {text}")
    if not keyring_ok:
        print("  Nota: llavero del sistema no disponible (sin backend configurado).")

    valid = {num for num, _ in options}
    choice = ""
    while choice not in valid:
        choice = input(f"Elija [{'/'.join(sorted(valid))}]: ").strip()

    if choice == "1":
        if _set_keyring_password(keyring_username, value):
            print("  Guardado en el llavero del sistema.")
            _remove_env_var(env_file, env_var)
            return True
        print("  ERROR: no se pudo guardar en el llavero. Se usará el .env.")
        choice = "2"
    if choice == "2":
        _upsert_env_var(env_file, env_var, value)
        print(f"  Guardado en {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password(keyring_username)
        return True

    _remove_env_var(env_file, env_var)
    _delete_keyring_password(keyring_username)
    print(f"  No almacenado. Defina {env_var} en su shell o .env antes de emitir.")
    return False


def _setup_credentials(config_dir: Path) -> bool:
    """Interactive setup of the MH API and signing-service passwords."""
    from facturador.config import KEYRING_FIRMADOR_PASSWORD, KEYRING_MH_PASSWORD

    print()
    print("Credenciales")
    print("────────────")
    print()
    mh = _store_secret(config_dir, "MH_PASSWORD", KEYRING_MH_PASSWORD, "Contraseña de la API de MH")
    print()
    signer = _store_secret(
        config_dir,
        "FIRMADOR_PASSWORD",
        KEYRING_FIRMADOR_PASSWORD,
        "Contraseña de la llave privada del firmador",
    )
    return mh and signer


_TEMPLATES = [
    "emitter.yaml.example",
    "clients/cliente-ejemplo.yaml.example",
]


def _init_config() -> None:
    """Copy bundled config templates to the user's config/data directories."""
    from facturador.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("facturador") / "templates"

    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "clients").mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    copied = 0
    for rel in _TEMPLATES:
        dest = config_dir / rel
        if dest.exists():
            print(f"  ya existe: {dest}")
            continue
        src = templates / rel
        with src.open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  creado: {dest}")
        copied += 1

    print()
    print(f"Configuración: {config_dir}")
    print(f"Datos:         {data_dir}")

    print()
    configured = False
    try:
        answer = input("¿Desea configurar las credenciales ahora? [S/n]: ").strip().lower()
        if answer in ("", "s", "si", "sí", "y", "yes"):
            configured = _setup_credentials(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    if copied:
        print("Próximos pasos:")
        print(f"  1. cp {config_dir / 'emitter.yaml.example'} {config_dir / 'emitter.yaml'}")
        print("  2. Edite emitter.yaml con los datos de su NIT y sucursales")
        print("  3. Registre un bloque de numeración: facturador bloque agregar ...")
        if not configured:
            print("  4. Defina MH_PASSWORD y FIRMADOR_PASSWORD en un .env")
    else:
        print("No se creó ningún archivo nuevo (todos existían).")


def _preflight() -> bool:
    """Verify minimal config before running a command.

    Auto-creates the data directory. Returns False with a helpful
    message when the config directory or emitter.yaml is missing.
    """
    from facturador.config import get_config_dir, get_data_dir

    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    config_dir = get_config_dir()
    if not config_dir.is_dir():
        print(f"Error: directorio de configuración no encontrado: {config_dir}")
        print("Ejecute 'facturador init' para crear los archivos de ejemplo.")
        return False
    if not (config_dir / "emitter.yaml").is_file():
        print(f"Error: emitter.yaml no encontrado en {config_dir}")
        print("Ejecute 'facturador init' y configure el emisor.")
        return False
    return True


def _configure_logging() -> None:
    level = os.environ.get("FACTURADOR_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --- Argument parsing helpers ---


def _parse_item(raw: str) -> Any:
    """``descripcion;cantidad;precio[;descuento[;tratamiento]]`` → LineItem."""
    from facturador.models.document import LineItem

    parts = [p.strip() for p in raw.split(";")]
    if len(parts) < 3:
        raise argparse.ArgumentTypeError(
            f"Ítem inválido {raw!r}: use descripcion;cantidad;precio[;descuento[;tratamiento]]"
        )
    data: dict[str, Any] = {
        "descripcion": parts[0],
        "cantidad": parts[1],
        "precio_unitario": parts[2],
    }
    if len(parts) > 3 and parts[3]:
        data["descuento"] = parts[3]
    if len(parts) > 4 and parts[4]:
        data["tratamiento"] = parts[4]
    try:
        return LineItem.from_dict(data)
    except (ValueError, KeyError) as exc:
        raise argparse.ArgumentTypeError(f"Ítem inválido {raw!r}: {exc}") from None


def _parse_credit_line(raw: str) -> Any:
    """``linea:cantidad`` → CreditNoteLine."""
    from facturador.services.issuance import CreditNoteLine

    line, sep, qty = raw.partition(":")
    try:
        if not sep:
            raise ValueError(raw)
        return CreditNoteLine(source_line=int(line), quantity=Decimal(qty))
    except (ValueError, ArithmeticError):
        raise argparse.ArgumentTypeError(f"Línea inválida {raw!r}: use linea:cantidad") from None


def _parse_identity(raw: str) -> tuple[str, str]:
    """``tipo:numero`` (e.g. ``13:012345678``)."""
    doc_type, sep, number = raw.partition(":")
    if not sep or not doc_type or not number:
        raise argparse.ArgumentTypeError(f"Documento inválido {raw!r}: use tipo:numero")
    return doc_type, number


def _load_items_file(path: str) -> list[Any]:
    from facturador.config import load_yaml
    from facturador.models.document import LineItem

    data = load_yaml(Path(path))
    raw = data.get("items", data) if isinstance(data, dict) else data
    return [LineItem.from_dict(d) for d in raw]


def _print_json(data: dict[str, Any] | list[Any]) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _result_exit(result: Any) -> int:
    _print_json(result.to_dict())
    return EXIT_OK if result.success else EXIT_NOT_ACCEPTED


# --- Commands ---


def _cmd_emitir(args: argparse.Namespace, services: Any) -> int:
    from facturador.config import load_yaml
    from facturador.models.document import DocumentType
    from facturador.models.receiver import Receiver
    from facturador.services.issuance import IssueRequest, issue_invoice

    items = list(args.item or [])
    if args.items_file:
        items.extend(_load_items_file(args.items_file))
    receiver = Receiver.from_dict(load_yaml(Path(args.receptor))) if args.receptor else None
    request = IssueRequest(
        items=items,
        client=args.cliente,
        receiver=receiver,
        doc_type=DocumentType(args.tipo) if args.tipo else None,
        branch=args.sucursal,
        condition=args.condicion,
        observations=args.observaciones,
        apply_late_fee=args.mora,
        iva_withheld=Decimal(args.iva_retenido),
        income_withheld=Decimal(args.renta_retenida),
    )
    return _result_exit(issue_invoice(request, services))


def _cmd_nota_credito(args: argparse.Namespace, services: Any) -> int:
    from facturador.services.issuance import CreditNoteRequest, issue_credit_note

    request = CreditNoteRequest(
        original_id=args.id,
        lines=list(args.linea),
        branch=args.sucursal,
        observations=args.observaciones,
    )
    return _result_exit(issue_credit_note(request, services))


def _cmd_anular(args: argparse.Namespace, services: Any) -> int:
    from facturador.models.void_event import VoidReason, VoidRequest
    from facturador.services.invalidation import void_document

    resp_type, resp_number = args.responsable_doc
    req_type, req_number = args.solicitante_doc or args.responsable_doc
    request = VoidRequest(
        reason=VoidReason(args.motivo),
        responsible_name=args.responsable,
        responsible_doc_type=resp_type,
        responsible_doc_number=resp_number,
        requester_name=args.solicitante or args.responsable,
        requester_doc_type=req_type,
        requester_doc_number=req_number,
        justification=args.justificacion,
        replacement_code=args.reemplazo,
    )
    return _result_exit(void_document(args.id, request, services))


def _cmd_reenviar(args: argparse.Namespace, services: Any) -> int:
    from facturador.services.issuance import resend_document

    return _result_exit(resend_document(args.id, services))


def _cmd_listar(args: argparse.Namespace, services: Any) -> int:
    from facturador.models.document import DocumentState, DocumentType
    from facturador.services.issuance import list_documents
    from facturador.utils.formatters import format_usd

    docs = list_documents(
        services,
        state=DocumentState(args.estado) if args.estado else None,
        doc_type=DocumentType(args.tipo) if args.tipo else None,
        client=args.cliente,
    )
    for doc in docs:
        print(
            f"{doc.id:>5}  {doc.doc_type.value}  {doc.state.value:<11}  "
            f"{doc.control_number:<31}  {format_usd(doc.totals.total_to_pay):>12}  "
            f"{doc.client or '-'}"
        )
    if not docs:
        print("Sin documentos.")
    return EXIT_OK


def _cmd_ver(args: argparse.Namespace, services: Any) -> int:
    from facturador.services.invalidation import list_voids
    from facturador.services.issuance import find_document

    doc = find_document(services, args.id)
    data = doc.to_dict()
    if not args.completo:
        data.pop("payload", None)
        data.pop("signed", None)
    data["voids"] = [v.to_dict() for v in list_voids(services, doc.id)]
    if not args.completo:
        for v in data["voids"]:
            v.pop("payload", None)
            v.pop("signed", None)
    _print_json(data)
    return EXIT_OK


def _cmd_consulta(args: argparse.Namespace, services: Any) -> int:
    from facturador.services.issuance import query_status

    result = query_status(args.id, services)
    _print_json(
        {
            "estado": result.state,
            "selloRecibido": result.seal,
            "fhProcesamiento": result.processed_at,
            "codigoMsg": result.message_code,
            "descripcionMsg": result.message_description,
            "observaciones": result.observations,
        }
    )
    return EXIT_OK


def _cmd_mora(args: argparse.Namespace, services: Any) -> int:
    from facturador.services.late_fee import compute_late_fee

    today = date.fromisoformat(args.fecha) if args.fecha else None
    result = compute_late_fee(
        args.cliente,
        services.documents.all(),
        today,
        load_client=services.load_client,
        load_emitter=services.load_emitter,
    )
    _print_json(result.to_dict())
    return EXIT_OK


def _cmd_bloque(args: argparse.Namespace, services: Any) -> int:
    blocks = services.blocks
    if args.accion == "agregar":
        block = blocks.add_block(
            args.sucursal, args.tipo, args.desde, args.hasta, serie=args.serie or ""
        )
        _print_json(block.to_dict())
    elif args.accion == "desactivar":
        _print_json(blocks.deactivate_block(args.id).to_dict())
    else:
        for block in blocks.list_blocks(branch=args.sucursal, doc_type=args.tipo):
            flag = "activo" if block.active else "inactivo"
            if block.exhausted:
                flag = "agotado"
            print(
                f"{block.id:>4}  {block.branch:<6} {block.doc_type}  "
                f"{block.lower}-{block.upper}  actual {block.current}  "
                f"quedan {block.remaining}  {flag}"
            )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facturador",
        description="Emisión de Documentos Tributarios Electrónicos (MH El Salvador)",
    )
    parser.add_argument(
        "--env",
        choices=["pruebas", "produccion"],
        help="Ambiente de MH (por defecto FACTURADOR_ENV o pruebas)",
    )
    sub = parser.add_subparsers(dest="command", metavar="comando")

    sub.add_parser("init", help="Crea los archivos de configuración de ejemplo")

    p = sub.add_parser("emitir", help="Emite una factura, CCF o FSE")
    p.add_argument("--cliente", help="Cliente registrado (clients/<cliente>.yaml)")
    p.add_argument("--receptor", help="YAML con los datos del receptor")
    p.add_argument("--tipo", choices=["01", "03", "14"], help="Tipo de DTE (por defecto según receptor)")
    p.add_argument("--sucursal", help="Código de sucursal (por defecto la primera)")
    p.add_argument(
        "--item", action="append", type=_parse_item,
        help="descripcion;cantidad;precio[;descuento[;tratamiento]] (repetible)",
    )
    p.add_argument("--items", dest="items_file", help="YAML con la lista de ítems")
    p.add_argument("--condicion", type=int, choices=[1, 2, 3], default=1,
                   help="1 contado, 2 crédito, 3 otro")
    p.add_argument("--observaciones")
    p.add_argument("--mora", action="store_true", help="Agrega la mora pendiente del cliente")
    p.add_argument("--iva-retenido", default="0")
    p.add_argument("--renta-retenida", default="0")
    p.set_defaults(func=_cmd_emitir)

    p = sub.add_parser("nota-credito", help="Emite una nota de crédito sobre un CCF")
    p.add_argument("id", type=int, help="ID del documento original")
    p.add_argument("--linea", action="append", type=_parse_credit_line, required=True,
                   help="linea:cantidad (repetible)")
    p.add_argument("--sucursal")
    p.add_argument("--observaciones")
    p.set_defaults(func=_cmd_nota_credito)

    p = sub.add_parser("anular", help="Invalida un documento procesado")
    p.add_argument("id", type=int)
    p.add_argument("--motivo", type=int, choices=[1, 2, 3], required=True,
                   help="1 error en datos, 2 rescindir operación, 3 otro")
    p.add_argument("--responsable", required=True)
    p.add_argument("--responsable-doc", type=_parse_identity, required=True, help="tipo:numero")
    p.add_argument("--solicitante")
    p.add_argument("--solicitante-doc", type=_parse_identity, help="tipo:numero")
    p.add_argument("--justificacion")
    p.add_argument("--reemplazo", help="Código de generación del documento que lo reemplaza")
    p.set_defaults(func=_cmd_anular)

    p = sub.add_parser("reenviar", help="Firma y transmite de nuevo un documento no procesado")
    p.add_argument("id", type=int)
    p.set_defaults(func=_cmd_reenviar)

    p = sub.add_parser("listar", help="Lista documentos")
    p.add_argument("--estado", choices=["BORRADOR", "FIRMADO", "PROCESADO", "RECHAZADO", "INVALIDADO"])
    p.add_argument("--tipo")
    p.add_argument("--cliente")
    p.set_defaults(func=_cmd_listar)

    p = sub.add_parser("ver", help="Muestra un documento y sus eventos de invalidación")
    p.add_argument("id", type=int)
    p.add_argument("--completo", action="store_true", help="Incluye el JSON y la firma")
    p.set_defaults(func=_cmd_ver)

    p = sub.add_parser("consulta", help="Consulta el estado de un documento en MH")
    p.add_argument("id", type=int)
    p.set_defaults(func=_cmd_consulta)

    p = sub.add_parser("mora", help="Calcula la mora pendiente de un cliente")
    p.add_argument("cliente")
    p.add_argument("--fecha", help="Fecha de cálculo (YYYY-MM-DD)")
    p.set_defaults(func=_cmd_mora)

    p = sub.add_parser("bloque", help="Administra bloques de numeración")
    bsub = p.add_subparsers(dest="accion", metavar="accion", required=True)
    b = bsub.add_parser("agregar", help="Registra un bloque")
    b.add_argument("--sucursal", required=True)
    b.add_argument("--tipo", required=True)
    b.add_argument("--desde", type=int, required=True, help="Último número ya usado (0 si es nuevo)")
    b.add_argument("--hasta", type=int, required=True)
    b.add_argument("--serie")
    b = bsub.add_parser("listar", help="Lista bloques")
    b.add_argument("--sucursal")
    b.add_argument("--tipo")
    b = bsub.add_parser("desactivar", help="Desactiva un bloque")
    b.add_argument("id", type=int)
    p.set_defaults(func=_cmd_bloque)

    return parser


def run(argv: Sequence[str] | None = None) -> int:
    """Parse *argv* and run the chosen command; returns the exit code."""
    from facturador.config import get_default_env
    from facturador.services.context import Services
    from facturador.services.exceptions import FacturadorError

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        _init_config()
        return EXIT_OK
    if not _preflight():
        return EXIT_ERROR

    func: Callable[[argparse.Namespace, Any], int] = args.func
    try:
        services = Services.default(args.env or get_default_env())
        return func(args, services)
    except FacturadorError as exc:
        print(f"Error ({exc.status_code}): {exc.message}", file=sys.stderr)
        return EXIT_ERROR
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


def main() -> None:
    """Entry point: subcommands when given, the TUI otherwise."""
    _configure_logging()
    if len(sys.argv) > 1:
        sys.exit(run(sys.argv[1:]))

    if not _preflight():
        sys.exit(1)

    from facturador.tui.app import FacturadorApp

    app = FacturadorApp()
    app.run()


if __name__ == "__main__":
    main()
