"""Collaborators of the issuance and invalidation flows.

The orchestrators never reach for module globals; they receive a
``Services`` instance. ``Services.default(env)`` wires the real stores and
clients, tests build one with fakes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any

from facturador import config as _config
from facturador.models.document import TaxDocument
from facturador.models.void_event import VoidEvent
from facturador.services import mh_client, notifier, signer_client
from facturador.services.mh_auth import TokenCache
from facturador.services.mh_client import TransmissionResult
from facturador.utils.registry import JsonStore, document_store, void_store
from facturador.utils.sequence import BlockStore


@dataclass
class Services:
    env: str
    documents: JsonStore[TaxDocument]
    voids: JsonStore[VoidEvent]
    blocks: BlockStore
    sign: Callable[[str, dict[str, Any]], str]
    transmit_document: Callable[..., TransmissionResult]
    transmit_void: Callable[..., TransmissionResult]
    notify: Callable[[TaxDocument], object]
    load_emitter: Callable[[], dict[str, Any]] = field(default_factory=lambda: _config.load_emitter)
    load_client: Callable[[str], dict[str, Any]] = field(default_factory=lambda: _config.load_client)
    query: Callable[..., TransmissionResult] = field(default_factory=lambda: mh_client.query_document)
    issued_dir: Path | None = None

    @property
    def ambiente(self) -> str:
        return _config.AMBIENTE[self.env]

    def issued_path(self) -> Path:
        return self.issued_dir or _config.get_issued_dir(self.env)

    @classmethod
    def default(cls, env: str) -> Services:
        """Real stores and clients for *env*, sharing one MH token cache."""
        if env not in _config.AMBIENTE:
            raise ValueError(f"Ambiente desconocido: {env!r}")
        tokens = TokenCache()
        return cls(
            env=env,
            documents=document_store(env),
            voids=void_store(env),
            blocks=BlockStore.for_env(env),
            sign=signer_client.sign_document,
            transmit_document=partial(mh_client.transmit_document, tokens=tokens),
            transmit_void=partial(mh_client.transmit_void, tokens=tokens),
            notify=notifier.dispatch,
            query=partial(mh_client.query_document, tokens=tokens),
        )
