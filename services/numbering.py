"""Tag-based invoice numbering service.

Supported tags:
  [YYYY]    4-digit year
  [YY]      2-digit year
  [MM]      month (01-12)
  [DD]      day (01-31)
  [C+]      counter, number of C's = digit width (resets per scope)

Everything outside brackets is literal text.
Example: ``INV-[YYYY]-[CCCCCC]`` -> ``INV-2026-000001``
"""

from __future__ import annotations

import datetime
import re
from typing import Optional

from errors import ValidationError
from extensions import db
from models import NumberingConfig, NumberSequence

_TAG_RE = re.compile(r"\[([A-Z]+)\]")

DEFAULT_PATTERN = "INV-[YYYY]-[CCCCCC]"


def _next_sequence(account_id: int, entity_type: str, scope_key: str) -> int:
    """Atomically increment and return the next sequence value."""
    seq = NumberSequence.query.filter_by(
        account_id=account_id, entity_type=entity_type, scope_key=scope_key
    ).with_for_update().first()
    if not seq:
        seq = NumberSequence(
            account_id=account_id,
            entity_type=entity_type,
            scope_key=scope_key,
            last_value=1,
        )
        db.session.add(seq)
        db.session.flush()
        return 1
    # Atomic increment via SQL expression to prevent race conditions
    seq.last_value = NumberSequence.last_value + 1
    db.session.flush()
    db.session.refresh(seq)
    return seq.last_value


def _has_counter(pattern: str) -> bool:
    return any(all(c == "C" for c in tag) for tag in _TAG_RE.findall(pattern))


def pattern_for(account_id: int, entity_type: str, default: Optional[str] = None) -> str:
    """Return the account's configured pattern, else *default*, else ``DEFAULT_PATTERN``.

    A pattern without a counter tag would hand out the same number twice,
    so it is rejected here rather than at the unique constraint.
    """
    config = NumberingConfig.query.filter_by(
        account_id=account_id, entity_type=entity_type
    ).first()
    if config and config.pattern:
        pattern = config.pattern
    else:
        pattern = default or DEFAULT_PATTERN
    if not _has_counter(pattern):
        raise ValidationError(
            "Numbering pattern needs a counter tag such as [CCCC]",
            details={"pattern": pattern, "entity_type": entity_type},
        )
    return pattern


def render_pattern(pattern: str, when: datetime.date, next_value) -> str:
    """Expand *pattern* for date *when*.

    *next_value* is called with the scope key (the joined date tags preceding
    the counter) only when the pattern has a counter tag.
    """
    scope_parts: list[str] = []
    result_parts: list[str | None] = []
    counter_digits = 0
    counter_pos = -1
    last_end = 0

    for match in _TAG_RE.finditer(pattern):
        tag = match.group(1)
        start, end = match.start(), match.end()

        if start > last_end:
            result_parts.append(pattern[last_end:start])

        if tag == "YYYY":
            val = str(when.year)
        elif tag == "YY":
            val = str(when.year % 100).zfill(2)
        elif tag == "MM":
            val = f"{when.month:02d}"
        elif tag == "DD":
            val = f"{when.day:02d}"
        elif all(c == "C" for c in tag):
            counter_digits = len(tag)
            counter_pos = len(result_parts)
            result_parts.append(None)  # placeholder
            last_end = end
            continue
        else:
            # Unknown tag, kept as literal
            result_parts.append(match.group(0))
            last_end = end
            continue

        result_parts.append(val)
        scope_parts.append(val)
        last_end = end

    if last_end < len(pattern):
        result_parts.append(pattern[last_end:])

    if counter_pos >= 0:
        scope_key = "-".join(scope_parts)
        seq = next_value(scope_key)
        result_parts[counter_pos] = str(seq).zfill(counter_digits)

    return "".join(p for p in result_parts if p is not None)


def generate_number(
    account_id: int,
    entity_type: str = "invoice",
    *,
    when: Optional[datetime.date] = None,
    default_pattern: Optional[str] = None,
) -> str:
    """Generate the next formatted number for *entity_type* in *account_id*."""
    pattern = pattern_for(account_id, entity_type, default_pattern)
    when = when or datetime.date.today()
    return render_pattern(
        pattern,
        when,
        lambda scope_key: _next_sequence(account_id, entity_type, scope_key),
    )
