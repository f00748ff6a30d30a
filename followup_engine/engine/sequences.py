# followup_engine/engine/sequences.py
from __future__ import annotations
import logging
from typing import List, Optional, Sequence

from pydantic import ValidationError

from followup_engine.common.errors import InvalidSequence, UnknownSequence
from followup_engine.domain.models import SequenceTemplate, Step
from followup_engine.engine.rendering import KNOWN_PLACEHOLDERS, placeholders
from followup_engine.repo.base import EngineStore

log = logging.getLogger("followups.sequences")


def _check_placeholders(steps: Sequence[Step]) -> None:
    for step in steps:
        unknown = placeholders(step.content_template) - KNOWN_PLACEHOLDERS
        if unknown:
            raise InvalidSequence(
                f"step {step.order} uses unknown placeholder(s): {', '.join(sorted(unknown))}"
            )


class SequenceTemplateStore:
    """
    Versioned sequence definitions.
    Every edit bumps `version`; runs keep the step snapshot taken at activation,
    so an edit never changes what an in-flight run sends.
    """

    def __init__(self, store: EngineStore):
        self.store = store

    async def create(
        self,
        *,
        backend_name: str,
        display_name: str,
        steps: Sequence[Step | dict],
        subject: str = "",
    ) -> SequenceTemplate:
        try:
            seq = SequenceTemplate(
                backend_name=backend_name,
                display_name=display_name,
                subject=subject,
                steps=list(steps),
            )
        except ValidationError as e:
            raise InvalidSequence(str(e)) from e
        _check_placeholders(seq.steps)
        stored = await self.store.insert_sequence(seq)
        log.info("Created sequence %s (%s) with %d steps", stored.backend_name, stored.id, len(stored.steps))
        return stored

    async def update(
        self,
        sequence_id: str,
        *,
        display_name: Optional[str] = None,
        subject: Optional[str] = None,
        steps: Optional[Sequence[Step | dict]] = None,
        backend_name: Optional[str] = None,
    ) -> SequenceTemplate:
        current = await self.get(sequence_id)
        data = current.model_dump()
        if display_name is not None:
            data["display_name"] = display_name
        if subject is not None:
            data["subject"] = subject
        if backend_name is not None:
            data["backend_name"] = backend_name
        if steps is not None:
            data["steps"] = [s.model_dump() if isinstance(s, Step) else s for s in steps]
        data["version"] = current.version + 1
        try:
            seq = SequenceTemplate(**data)
        except ValidationError as e:
            raise InvalidSequence(str(e)) from e
        _check_placeholders(seq.steps)
        stored = await self.store.replace_sequence(seq)
        log.info("Sequence %s updated to version %d", stored.backend_name, stored.version)
        return stored

    async def get(self, sequence_id: str) -> SequenceTemplate:
        seq = await self.store.get_sequence(sequence_id)
        if seq is None:
            raise UnknownSequence(f"sequence {sequence_id} not found")
        return seq

    async def get_by_backend_name(self, backend_name: str) -> SequenceTemplate:
        seq = await self.store.get_sequence_by_backend_name(backend_name)
        if seq is None:
            raise UnknownSequence(f"sequence {backend_name!r} not found")
        return seq

    async def resolve(self, *, sequence_id: Optional[str] = None, backend_name: Optional[str] = None) -> SequenceTemplate:
        if sequence_id:
            return await self.get(sequence_id)
        if backend_name:
            return await self.get_by_backend_name(backend_name)
        raise UnknownSequence("a sequence id or backend name is required")

    async def list(self) -> List[SequenceTemplate]:
        return await self.store.list_sequences()
