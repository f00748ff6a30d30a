# followup_engine/engine/rendering.py
from __future__ import annotations
import re
from typing import Dict, Optional

from followup_engine.common.errors import TemplateRenderError
from followup_engine.domain.models import SequenceTemplate, Student

_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")


def template_context(student: Student, *, subject: str = "", sequence_name: str = "") -> Dict[str, str]:
    return {
        "first_name": student.first_name,
        "full_name": student.full_name,
        "email": student.email or "",
        "phone": student.phone or "",
        "subject": subject,
        "sequence_name": sequence_name,
    }


def placeholders(template: str) -> set[str]:
    return set(_PLACEHOLDER.findall(template))


def render(template: str, context: Dict[str, str]) -> str:
    """Replace {{ name }} placeholders; an unknown name is a permanent error."""
    missing = placeholders(template) - context.keys()
    if missing:
        raise TemplateRenderError(f"unknown placeholder(s): {', '.join(sorted(missing))}")
    return _PLACEHOLDER.sub(lambda m: context[m.group(1)], template)


def render_step(
    template: str,
    student: Student,
    sequence: Optional[SequenceTemplate] = None,
    *,
    subject: str = "",
    sequence_name: str = "",
) -> str:
    if sequence is not None:
        subject = subject or sequence.subject
        sequence_name = sequence_name or sequence.display_name
    return render(template, template_context(student, subject=subject, sequence_name=sequence_name))


KNOWN_PLACEHOLDERS = frozenset(template_context(Student(id="-", full_name="-")).keys())
