"""
Filename metadata patterns.

A pattern is a literal string with '%x' placeholders, e.g. '%a_%t_%y.wav'.
Each placeholder captures one metadata field; literal text must match the
filename exactly. Two placeholders must always be separated by literal
text, otherwise the field boundary would be ambiguous.

Placeholders that form the tail of a pattern (pattern ends in a
placeholder) are optional: with '%a_%t_%y', 'Sting_Intro' still matches and
leaves the year unset.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .errors import InvalidPattern
from .metadata import MetadataRecord


logger = logging.getLogger(__name__)

PLACEHOLDERS = {
    "a": "artist",
    "b": "label",
    "c": "client",
    "e": "agency",
    "g": "group",
    "h": "bpm",
    "i": "description",
    "l": "album",
    "m": "composer",
    "n": "cart_number",
    "o": "outcue",
    "p": "publisher",
    "r": "conductor",
    "s": "song_id",
    "t": "title",
    "u": "user_defined",
    "y": "year",
}

# Token kinds
LITERAL = "literal"
FIELD = "field"

Token = Tuple[str, str]


@dataclass(frozen=True)
class CompiledPattern:
    """A validated pattern and the regular expression it compiles to."""
    pattern: str
    regex: "re.Pattern"
    fields: Tuple[str, ...]
    optional_fields: Tuple[str, ...] = ()

    def extract(self, filename: Union[str, Path]) -> Optional[MetadataRecord]:
        return extract(self, filename)


def _tokenize(pattern: str) -> List[Token]:
    tokens: List[Token] = []
    seen = set()
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char != "%":
            _append_literal(tokens, char)
            i += 1
            continue

        if i + 1 >= len(pattern):
            raise InvalidPattern(f"Pattern ends with a lone '%': {pattern!r}")
        code = pattern[i + 1]
        i += 2

        if code == "%":
            _append_literal(tokens, "%")
            continue
        if code not in PLACEHOLDERS:
            raise InvalidPattern(f"Unknown placeholder '%{code}' in {pattern!r}")
        if code in seen:
            raise InvalidPattern(f"Placeholder '%{code}' used more than once in {pattern!r}")
        if tokens and tokens[-1][0] == FIELD:
            raise InvalidPattern(
                f"Placeholder '%{code}' follows another placeholder without a separator in {pattern!r}",
                details={"pattern": pattern, "position": i - 2},
            )
        seen.add(code)
        tokens.append((FIELD, PLACEHOLDERS[code]))
    return tokens


def _append_literal(tokens: List[Token], text: str) -> None:
    if tokens and tokens[-1][0] == LITERAL:
        tokens[-1] = (LITERAL, tokens[-1][1] + text)
    else:
        tokens.append((LITERAL, text))


def _optional_tail_start(tokens: List[Token]) -> int:
    """
    Index of the first token of the optional tail, or len(tokens).

    The tail is the longest run of (literal, field) pairs at the end of the
    pattern. It never includes the first field.
    """
    if not tokens or tokens[-1][0] != FIELD:
        return len(tokens)
    start = len(tokens)
    index = len(tokens) - 2
    while index >= 1 and tokens[index][0] == LITERAL and tokens[index + 1][0] == FIELD:
        # Keep at least one mandatory field in front of the tail
        if not any(kind == FIELD for kind, _ in tokens[:index]):
            break
        start = index
        index -= 2
    return start


def _field_regex(name: str) -> str:
    return f"(?P<{name}>.+?)"


def compile_pattern(pattern: str) -> CompiledPattern:
    """
    Compile a metadata pattern.

    Raises:
        InvalidPattern: empty pattern, no placeholders, unknown or repeated
            placeholder, adjacent placeholders, or a trailing lone '%'
    """
    if not pattern:
        raise InvalidPattern("Metadata pattern is empty")

    tokens = _tokenize(pattern)
    fields = tuple(value for kind, value in tokens if kind == FIELD)
    if not fields:
        raise InvalidPattern(f"Pattern has no placeholders: {pattern!r}")

    tail = _optional_tail_start(tokens)
    parts = []
    for kind, value in tokens[:tail]:
        parts.append(re.escape(value) if kind == LITERAL else _field_regex(value))

    # Nest the optional (literal, field) pairs: (?:_A(?:_B)?)?
    optional = tokens[tail:]
    nested = ""
    for position in range(len(optional) - 2, -1, -2):
        literal = re.escape(optional[position][1])
        field = _field_regex(optional[position + 1][1])
        nested = f"(?:{literal}{field}{nested})?"
    parts.append(nested)

    optional_fields = tuple(value for kind, value in optional if kind == FIELD)
    regex = re.compile("".join(parts), re.DOTALL)
    logger.debug(f"Compiled pattern {pattern!r} to {regex.pattern!r}")
    return CompiledPattern(
        pattern=pattern,
        regex=regex,
        fields=fields,
        optional_fields=optional_fields,
    )


def verify_pattern(pattern: str) -> bool:
    """Return True if the pattern compiles."""
    try:
        compile_pattern(pattern)
    except InvalidPattern:
        return False
    return True


def extract(compiled: CompiledPattern, filename: Union[str, Path]) -> Optional[MetadataRecord]:
    """
    Extract metadata from a filename.

    Only the final path component is matched. Extraction is all-or-nothing:
    if the literal text does not line up, None is returned rather than a
    partial record. Numeric fields that fail to parse are left unset without
    failing the match.

    Returns:
        MetadataRecord, or None on a structural mismatch
    """
    name = Path(filename).name
    match = compiled.regex.fullmatch(name)
    if match is None:
        logger.debug(f"{name} does not match pattern {compiled.pattern!r}")
        return None

    record = MetadataRecord()
    for field_name, value in match.groupdict().items():
        if value is not None:
            record.set_value(field_name, value)
    return record
