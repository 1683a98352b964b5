"""
Structured parsers for model responses.

Each parser turns the free-form text of one tool's reply into a typed result.
Model output is not guaranteed to follow the requested format, so the
parsers are tolerant section scanners: they never raise, and a reply that
cannot be understood yields ``is_valid=False`` with the raw text kept for
display.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

MAX_EXAMPLES = 5

REGEX_HEADERS = ("PATTERN", "FLAGS", "EXPLANATION", "MATCHES", "NON-MATCHES")
SQL_HEADERS = ("QUERY", "EXPLANATION")

_FENCE_OPEN = re.compile(r"^```[\w+-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```$")
_FENCED_BLOCK = re.compile(r"```[\w+-]*[ \t]*\n(.*?)```", re.DOTALL)
_BULLET = re.compile(r"^[-*]\s*")

# Textual heuristics only: keywords inside string literals or comments match too.
DESTRUCTIVE_PATTERNS = (
    re.compile(r"\bDELETE\b", re.IGNORECASE),
    re.compile(r"\bDROP\b", re.IGNORECASE),
    re.compile(r"\bTRUNCATE\b", re.IGNORECASE),
    re.compile(r"\bUPDATE\b(?!.*\bWHERE\b)", re.IGNORECASE | re.DOTALL),
    re.compile(r"\bALTER\s+TABLE\b.*\bDROP\b", re.IGNORECASE | re.DOTALL),
)


@dataclass(frozen=True)
class RegexResult:
    """Parsed reply of the regex generator."""
    pattern: str = ""
    flags: str = ""
    explanation: str = ""
    matches: List[str] = field(default_factory=list)
    non_matches: List[str] = field(default_factory=list)
    is_valid: bool = False
    raw_text: str = ""

    @property
    def examples(self) -> Dict[str, List[str]]:
        return {"matches": list(self.matches), "non_matches": list(self.non_matches)}

    def formatted_pattern(self) -> str:
        """Pattern in ``/pattern/flags`` literal form."""
        return f"/{self.pattern}/{self.flags}"


@dataclass(frozen=True)
class SQLResult:
    """Parsed reply of the SQL generator."""
    query: str = ""
    explanation: str = ""
    is_destructive: bool = False
    is_valid: bool = False
    raw_text: str = ""


@dataclass(frozen=True)
class JSONResult:
    """Parsed reply of the JSON schema/sample generator.

    ``formatted`` is the pretty-printed value on success and the trimmed
    original text on failure, so there is always something to show.
    """
    value: Any = None
    formatted: str = ""
    error: Optional[str] = None
    is_valid: bool = False
    raw_text: str = ""


def _as_text(text: Any) -> str:
    return text if isinstance(text, str) else ""


def strip_code_fence(text: str) -> str:
    """Remove a leading ```lang line and a trailing ``` marker, if present."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
    if cleaned.endswith("```"):
        cleaned = _FENCE_CLOSE.sub("", cleaned, count=1)
    return cleaned.strip()


def split_sections(text: str, headers: Sequence[str]) -> Dict[str, str]:
    """Split text into sections introduced by ``HEADER:`` lines.

    A header line holds nothing but one of ``headers`` and a colon, matched
    case-insensitively; ``Matches: five digits`` inside an explanation is
    body text. Each section runs until the next known header or the end of
    the text. Text before the first header is ignored, and a header seen a
    second time stays in the open section as body text.

    Returns:
        Mapping of upper-case header to its stripped section body
    """
    header_line = re.compile(
        r"^\s*(" + "|".join(re.escape(h) for h in headers) + r")\s*:\s*$",
        re.IGNORECASE,
    )
    sections: Dict[str, List[str]] = {}
    current: Optional[List[str]] = None
    for line in text.splitlines():
        match = header_line.match(line)
        if match and match.group(1).upper() not in sections:
            current = sections[match.group(1).upper()] = []
        elif current is not None:
            current.append(line)
    return {name: "\n".join(lines).strip() for name, lines in sections.items()}


def _first_line(body: str) -> str:
    for line in body.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _list_items(body: str) -> List[str]:
    items = []
    for line in body.splitlines():
        item = _BULLET.sub("", line.strip()).strip()
        if item:
            items.append(item)
    return items[:MAX_EXAMPLES]


def _normalize_flags(raw: str) -> str:
    value = raw.strip().lower()
    if value == "none":
        return ""
    return "".join(dict.fromkeys(ch for ch in value if ch.isalpha()))


def parse_regex_response(text: Any) -> RegexResult:
    """Parse a regex generator reply.

    Expects PATTERN, FLAGS, EXPLANATION, MATCHES and NON-MATCHES sections.
    Missing sections keep their empty defaults; the result is valid when a
    pattern was found.
    """
    raw = _as_text(text)
    sections = split_sections(raw, REGEX_HEADERS)
    pattern = _first_line(sections.get("PATTERN", ""))
    result = RegexResult(
        pattern=pattern,
        flags=_normalize_flags(_first_line(sections.get("FLAGS", ""))),
        explanation=sections.get("EXPLANATION", ""),
        matches=_list_items(sections.get("MATCHES", "")),
        non_matches=_list_items(sections.get("NON-MATCHES", "")),
        is_valid=bool(pattern),
        raw_text=raw,
    )
    if not result.is_valid:
        logger.debug("Regex reply had no PATTERN section")
    return result


def is_destructive_query(query: str) -> bool:
    """Flag queries containing DELETE, DROP, TRUNCATE, ALTER TABLE ... DROP
    or an UPDATE with no WHERE after it. Advisory only.
    """
    if not isinstance(query, str):
        return False
    return any(pattern.search(query) for pattern in DESTRUCTIVE_PATTERNS)


def parse_sql_response(text: Any) -> SQLResult:
    """Parse a SQL generator reply with QUERY and EXPLANATION sections.

    When the QUERY header is missing but the reply contains a fenced code
    block, that block is taken as the query.
    """
    raw = _as_text(text)
    sections = split_sections(raw, SQL_HEADERS)
    if "QUERY" in sections:
        query = strip_code_fence(sections["QUERY"])
    else:
        block = _FENCED_BLOCK.search(raw)
        query = block.group(1).strip() if block else ""
    return SQLResult(
        query=query,
        explanation=sections.get("EXPLANATION", ""),
        is_destructive=is_destructive_query(query),
        is_valid=bool(query),
        raw_text=raw,
    )


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Invalid JSON value: {name}")


def parse_json_response(text: Any) -> JSONResult:
    """Parse a JSON generator reply.

    Strips an optional code fence, then parses strictly. On success the value
    is re-serialized with two-space indentation.
    """
    raw = _as_text(text)
    cleaned = strip_code_fence(raw)
    try:
        value = json.loads(cleaned, parse_constant=_reject_constant)
    except ValueError as e:
        return JSONResult(formatted=raw.strip(), error=str(e), raw_text=raw)
    return JSONResult(
        value=value,
        formatted=json.dumps(value, indent=2, ensure_ascii=False),
        is_valid=True,
        raw_text=raw,
    )


@dataclass(frozen=True)
class RegexTestResult:
    """Outcome of running a generated pattern against sample text."""
    is_match: bool = False
    matches: List[str] = field(default_factory=list)
    error: Optional[str] = None


# ``g`` selects all matches, ``u`` is implied for str patterns.
_TEST_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "u": 0, "g": 0}


def match_regex(pattern: str, flags: str, text: Any) -> RegexTestResult:
    """Run ``pattern`` with ``/flags`` against ``text``.

    With ``g`` every full match is returned; without it the first match and
    its groups (unmatched groups as ""). A pattern that does not compile or
    an unsupported flag yields ``error`` instead of raising.
    """
    if not isinstance(pattern, str) or not pattern:
        return RegexTestResult(error="Pattern is empty")
    flags = flags or ""
    unknown = sorted(set(flags) - set(_TEST_FLAGS))
    if unknown:
        return RegexTestResult(error=f"Unsupported flag(s): {''.join(unknown)}")
    compile_flags = 0
    for ch in flags:
        compile_flags |= _TEST_FLAGS[ch]
    try:
        compiled = re.compile(pattern, compile_flags)
    except re.error as e:
        return RegexTestResult(error=f"Invalid pattern: {e}")
    subject = _as_text(text)
    if "g" in flags:
        found = [m.group(0) for m in compiled.finditer(subject)]
    else:
        first = compiled.search(subject)
        found = [first.group(0), *(g or "" for g in first.groups())] if first else []
    return RegexTestResult(is_match=bool(found), matches=found)
