"""Control-number blocks (``blocks.json``) and the reservation protocol.

A reservation holds the block file lock from the moment the next control
number is computed until the pointer is advanced, so two issuances against
the same block can never share a number.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from facturador import config as _config
from facturador.models.emitter import Branch
from facturador.models.sequence_block import SequenceBlock
from facturador.services.exceptions import CapacityError, NotFoundError
from facturador.utils.registry import JsonStore

logger = logging.getLogger(__name__)


def control_number(doc_type: str, branch: Branch, sequence: int) -> str:
    """DTE-{type}-{establishment}{point of sale}-{15-digit sequence}."""
    return f"DTE-{doc_type}-{branch.establishment_prefix}-{sequence:015d}"


@dataclass
class Reservation:
    block: SequenceBlock
    control_number: str
    consumed: bool = False

    def consume(self) -> None:
        """Mark the number as used; the block pointer advances on exit."""
        self.consumed = True


class BlockStore(JsonStore[SequenceBlock]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, SequenceBlock.from_dict)

    @classmethod
    def for_env(cls, env: str) -> BlockStore:
        return cls(_config.get_env_dir(env) / "blocks.json")

    def add_block(
        self,
        branch: str,
        doc_type: str,
        lower: int,
        upper: int,
        *,
        serie: str = "",
        current: int | None = None,
    ) -> SequenceBlock:
        """Register a new block. ``current`` defaults to ``lower`` (nothing consumed)."""
        block = SequenceBlock(
            branch=branch,
            doc_type=doc_type,
            serie=serie,
            lower=lower,
            upper=upper,
            current=lower if current is None else current,
        )
        self.add(block)
        logger.info(
            "Block %d added: branch=%s type=%s range=%d-%d",
            block.id, branch, doc_type, lower, upper,
        )
        return block

    def list_blocks(self, branch: str | None = None, doc_type: str | None = None) -> list[SequenceBlock]:
        return self.filter(
            lambda b: (branch is None or b.branch == branch)
            and (doc_type is None or b.doc_type == doc_type)
        )

    def find_active_block(self, branch: str, doc_type: str) -> SequenceBlock | None:
        """First active, non-exhausted block for the branch and type."""
        return self.find(
            lambda b: b.active and not b.exhausted and b.branch == branch and b.doc_type == doc_type
        )

    def _require_active(self, branch: str, doc_type: str) -> SequenceBlock:
        block = self.find_active_block(branch, doc_type)
        if block is None:
            raise CapacityError(
                f"No hay bloque de numeración activo con disponibilidad "
                f"para la sucursal {branch}, tipo {doc_type}"
            )
        return block

    def peek_control_number(self, branch: Branch, doc_type: str) -> str:
        """The control number the next issuance would get, without reserving it."""
        block = self._require_active(branch.code, doc_type)
        return control_number(doc_type, branch, block.current + 1)

    def deactivate_block(self, block_id: int) -> SequenceBlock:
        with self.locked():
            block = self.get(block_id)
            if block is None:
                raise NotFoundError(f"Bloque {block_id} no encontrado")
            block.active = False
            self.save(block)
        logger.info("Block %d deactivated", block_id)
        return block

    @contextmanager
    def reserve(self, branch: Branch, doc_type: str) -> Iterator[Reservation]:
        """Reserve the next control number of the active block.

        The lock is held for the whole ``with`` body. Call
        ``Reservation.consume()`` once the number has been used; the pointer
        then advances by one on exit, even if the body raises afterwards.
        """
        with self.locked():
            block = self._require_active(branch.code, doc_type)
            reservation = Reservation(
                block=block,
                control_number=control_number(doc_type, branch, block.current + 1),
            )
            try:
                yield reservation
            finally:
                if reservation.consumed:
                    block.current += 1
                    self.save(block)
                    logger.info(
                        "Block %d advanced to %d/%d", block.id, block.current, block.upper
                    )
