"""
Placeholder substitution for outbound message text.

Recognized tokens:
  {name}          subject display name
  {patient_id}    subject id
  {subject_id}    subject id (alias)
  {send_date}     supplied by the caller via ``extra`` (e.g. "2026/01/15")

Substitution is a single pass over the template: a value that itself
contains a token is inserted literally and never expanded again.
Unknown tokens are left untouched.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Mapping, Optional

from models.schemas import SubjectContext

_TOKEN = re.compile(r"\{(\w+)\}")


def context_values(context: SubjectContext) -> dict[str, Any]:
    return {
        "name": context.display_name,
        "patient_id": context.subject_id,
        "subject_id": context.subject_id,
    }


def format_send_date(when: datetime) -> str:
    return when.strftime("%Y/%m/%d")


def substitute(
    template: str,
    context: SubjectContext,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    """Expand known tokens in ``template``; missing values become ""."""
    if not template:
        return template or ""

    values = context_values(context)
    if extra:
        values.update(extra)

    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return "" if value is None else str(value)

    return _TOKEN.sub(replacer, template)
