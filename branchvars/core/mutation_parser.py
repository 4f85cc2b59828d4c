"""
Variable mutation parser for generated roleplay text.

Extracts variable-change instructions from free-form model output, applies
them to a VariableStore and returns the text with the instructions removed.

Recognized notations:
  set('path', old, new[, 'reason'])    function call, optional ``_.`` prefix
  @path=old⇒new@  /  @path=new@         inline (``=>`` accepted for ``⇒``)
  <UpdateVariable> ... </UpdateVariable>  batch block, removed from the text
  |init-vars|  |初始化变量|  [InitVar]    initialize variables the text reads
                                         through getvar placeholders

Every notation produces the same MutationCommand shape.  Malformed
instructions are skipped and logged; nothing here raises on input.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from branchvars.config import settings
from branchvars.core.defaults import infer_default_value
from branchvars.core.paths import normalize_path
from branchvars.core.variable_store import VariableStore

logger = logging.getLogger(__name__)

_QUOTES = ("'", '"', "`")
_OPENERS = "([{"
_CLOSERS = ")]}"

# set( / _.set( not preceded by an identifier character or member access
_SET_CALL_RE = re.compile(r"(?<![\w.$])(?:_\.)?set\s*\(")

# @path=old⇒new@ or @path=new@, single line
_INLINE_RE = re.compile(
    r"@([^@=\n]+?)=(?:([^@\n]*?)(?:⇒|=>))?([^@\n]*?)@"
)

_INIT_MARKER_RE = re.compile(
    r"\|init-vars\||\|初始化变量\||\[InitVar\](?:初始化变量)?",
    re.IGNORECASE,
)

# Read placeholders: {{getvar::path}} and <%= getvar('path'[, default]) %>
_GETVAR_MACRO_RE = re.compile(r"\{\{\s*getvar::([^{}:]+?)\s*\}\}")
_GETVAR_EJS_RE = re.compile(
    r"<%[=-]?\s*getvar\(\s*(['\"`])(.+?)\1\s*(?:,\s*(.+?))?\s*\)\s*;?\s*%>"
)
# Write placeholders count as "set somewhere in the text"
_SETVAR_MACRO_RE = re.compile(r"\{\{\s*setvar::([^{}:]+?)::")

_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class CommandNotation(str, Enum):
    """Which notation a command was parsed from."""
    SET_CALL = "set_call"
    INLINE = "inline"
    TAGGED_BLOCK = "tagged_block"
    INIT_MARKER = "init_marker"


@dataclass(frozen=True)
class MutationCommand:
    """One normalized variable-change instruction.

    ``old_value`` is advisory: when it disagrees with the store the update is
    still applied and a warning is reported.
    """
    path: str
    old_value: Any
    new_value: Any
    reason: Optional[str] = None
    notation: CommandNotation = CommandNotation.SET_CALL
    span: tuple[int, int] = (0, 0)
    has_old_value: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "reason": self.reason,
            "notation": self.notation.value,
            "span": list(self.span),
            "hasOldValue": self.has_old_value,
        }


@dataclass
class ProcessedText:
    """Result of one parser pass over generated text."""
    text: str
    commands: list[MutationCommand] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    initialized: list[str] = field(default_factory=list)


# ─── Value literals ──────────────────────────────────────────────────────────


def coerce_value_literal(raw: Any) -> Any:
    """
    Turn an instruction argument into a value.

    Priority: quoted string → int → float → true/false → null/undefined →
    JSON array/object → the stripped raw string.
    """
    if not isinstance(raw, str):
        return raw
    s = raw.strip()
    if len(s) >= 2 and s[0] in _QUOTES and s[-1] == s[0]:
        if s[0] == '"':
            try:
                return json.loads(s)
            except ValueError:
                pass
        return s[1:-1]
    if _INT_RE.fullmatch(s):
        return int(s)
    if _FLOAT_RE.fullmatch(s):
        return float(s)
    lowered = s.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "undefined"):
        return None
    if s[:1] in ("[", "{"):
        try:
            return json.loads(s)
        except ValueError:
            pass
    return s


def _unquote(raw: str) -> Optional[str]:
    """Contents of a quoted literal, or ``None`` when *raw* is not quoted."""
    s = raw.strip()
    if len(s) >= 2 and s[0] in _QUOTES and s[-1] == s[0]:
        value = coerce_value_literal(s)
        return value if isinstance(value, str) else s[1:-1]
    return None


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


# ─── Bracket / quote aware scanning ──────────────────────────────────────────


def _find_closing(text: str, open_idx: int, end: int) -> int:
    """Index of the bracket closing ``text[open_idx]``, or -1."""
    depth = 0
    quote: Optional[str] = None
    i = open_idx
    while i < end:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
        elif ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _split_args(inner: str) -> list[str]:
    """Split call arguments at top-level commas."""
    if not inner.strip():
        return []
    args: list[str] = []
    depth = 0
    quote: Optional[str] = None
    start = 0
    i = 0
    while i < len(inner):
        ch = inner[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
        elif ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
        elif ch == "," and depth == 0:
            args.append(inner[start:i].strip())
            start = i + 1
        i += 1
    args.append(inner[start:].strip())
    return args


def _apply_edits(text: str, edits: list[tuple[int, int, str]]) -> str:
    """Replace spans in *text*; a span inside an earlier, wider one is dropped."""
    out: list[str] = []
    cursor = 0
    for start, end, replacement in sorted(edits, key=lambda e: (e[0], -e[1])):
        if start < cursor:
            cursor = max(cursor, end)
            continue
        out.append(text[cursor:start])
        out.append(replacement)
        cursor = end
    out.append(text[cursor:])
    return "".join(out)


def _mask(text: str, spans: list[tuple[int, int]]) -> str:
    """Blank out *spans* with spaces, keeping every offset valid."""
    if not spans:
        return text
    chars = list(text)
    for start, end in spans:
        chars[start:end] = " " * (end - start)
    return "".join(chars)


def _block_re(tags: Iterable[str]) -> Optional[re.Pattern[str]]:
    names = [re.escape(t) for t in tags if t]
    if not names:
        return None
    return re.compile(
        r"<(" + "|".join(names) + r")\s*>(.*?)</\1\s*>",
        re.IGNORECASE | re.DOTALL,
    )


# ─── Parser ──────────────────────────────────────────────────────────────────


class MutationCommandParser:
    """
    Extracts and applies variable mutations found in generated text.

    Usage:
        parser = MutationCommandParser()
        result = parser.process("She smiles. set('affinity', 3, 5, 'gift')", store)
        result.text        # "She smiles."
        store.get("affinity")   # 5
    """

    def __init__(
        self,
        *,
        update_block_tags: Optional[Iterable[str]] = None,
        hidden_block_tags: Optional[Iterable[str]] = None,
    ):
        self.update_block_tags = list(
            settings.update_block_tags if update_block_tags is None else update_block_tags
        )
        self.hidden_block_tags = list(
            settings.hidden_block_tags if hidden_block_tags is None else hidden_block_tags
        )
        self._update_block_re = _block_re(self.update_block_tags)
        self._hidden_block_re = _block_re(self.hidden_block_tags)

    # ── public API ──

    def parse_commands(
        self,
        text: str,
        *,
        reference_texts: Iterable[str] = (),
        store: Optional[VariableStore] = None,
    ) -> list[MutationCommand]:
        """All commands in *text*, in text order, without applying anything."""
        commands, _skipped, _edits = self._extract(text, store, list(reference_texts))
        return commands

    def process(
        self,
        text: str,
        store: VariableStore,
        *,
        reference_texts: Iterable[str] = (),
    ) -> ProcessedText:
        """Apply every instruction in *text* to *store* and return cleaned text."""
        if not isinstance(text, str) or not text:
            return ProcessedText(text=text if isinstance(text, str) else "")

        commands, skipped, edits = self._extract(text, store, list(reference_texts))
        result = ProcessedText(text=text, commands=commands, skipped=skipped)

        for command in commands:
            self._apply(command, store, result)

        if self._hidden_block_re is not None:
            edits.extend((m.start(), m.end(), "") for m in self._hidden_block_re.finditer(text))

        cleaned = _apply_edits(text, edits)
        result.text = _BLANK_LINES_RE.sub("\n\n", cleaned).strip()

        if commands:
            logger.info(
                "✅ Applied %d variable update(s), initialized %d on %s (%d warning(s), %d skipped)",
                self._count_updates(commands),
                len(result.initialized),
                store.conversation_id[:8],
                len(result.warnings),
                len(result.skipped),
            )
        return result

    # ── extraction ──

    def _extract(
        self,
        text: str,
        store: Optional[VariableStore],
        reference_texts: list[str],
    ) -> tuple[list[MutationCommand], list[str], list[tuple[int, int, str]]]:
        commands: list[MutationCommand] = []
        skipped: list[str] = []
        edits: list[tuple[int, int, str]] = []

        # Pass 1: tagged blocks; their contents are hidden from the outer passes
        blocks = list(self._update_block_re.finditer(text)) if self._update_block_re else []
        for block in blocks:
            inner_start, inner_end = block.span(2)
            calls: list[MutationCommand] = []
            self._scan_set_calls(
                text, inner_start, inner_end, CommandNotation.TAGGED_BLOCK, calls, skipped
            )
            inner = _mask(text, [c.span for c in calls])
            self._scan_inline(
                inner, inner_start, inner_end, CommandNotation.TAGGED_BLOCK, calls, skipped
            )
            commands.extend(calls)
            edits.append((block.start(), block.end(), ""))
        masked = _mask(text, [b.span() for b in blocks])

        # Pass 2: function-call and inline instructions outside blocks
        outer: list[MutationCommand] = []
        self._scan_set_calls(masked, 0, len(masked), CommandNotation.SET_CALL, outer, skipped)
        without_calls = _mask(masked, [c.span for c in outer])
        self._scan_inline(without_calls, 0, len(masked), CommandNotation.INLINE, outer, skipped)
        commands.extend(outer)
        edits.extend((c.span[0], c.span[1], "") for c in outer)

        # Pass 3: initialization markers
        markers = list(_INIT_MARKER_RE.finditer(masked))
        if markers:
            init_commands = self._initialization_commands(
                text, reference_texts, commands, store, markers[0].span()
            )
            commands.extend(init_commands)
            lines = "\n".join(
                f"{{{{setvar::{c.path}::{_render_value(c.new_value)}}}}}" for c in init_commands
            )
            edits.append((markers[0].start(), markers[0].end(), lines))
            edits.extend((m.start(), m.end(), "") for m in markers[1:])

        commands.sort(key=lambda c: c.span[0])
        return commands, skipped, edits

    def _scan_set_calls(
        self,
        text: str,
        start: int,
        end: int,
        notation: CommandNotation,
        commands: list[MutationCommand],
        skipped: list[str],
    ) -> None:
        resume = start
        for match in _SET_CALL_RE.finditer(text, start, end):
            if match.start() < resume:
                continue
            first = text[match.end():end].lstrip()[:1]
            if first not in _QUOTES:
                continue  # prose such as "set (the table)"

            close = _find_closing(text, match.end() - 1, end)
            if close < 0:
                self._skip(skipped, text[match.start():end], "unterminated call")
                continue

            span_end = close + 1
            tail = text[span_end:end]
            stripped_tail = tail.lstrip(" \t")
            if stripped_tail.startswith(";"):
                span_end += len(tail) - len(stripped_tail) + 1
            snippet = text[match.start():span_end]

            args = _split_args(text[match.end():close])
            path = _unquote(args[0]) if args else None
            if len(args) not in (3, 4) or path is None or normalize_path(path) is None:
                self._skip(skipped, snippet, f"expected set(path, old, new[, reason]), got {len(args)} argument(s)")
                resume = span_end
                continue

            reason = None
            if len(args) == 4:
                reason_value = coerce_value_literal(args[3])
                reason = None if reason_value is None else str(reason_value)

            commands.append(MutationCommand(
                path=path.strip(),
                old_value=coerce_value_literal(args[1]),
                new_value=coerce_value_literal(args[2]),
                reason=reason,
                notation=notation,
                span=(match.start(), span_end),
                has_old_value=True,
            ))
            resume = span_end

    def _scan_inline(
        self,
        text: str,
        start: int,
        end: int,
        notation: CommandNotation,
        commands: list[MutationCommand],
        skipped: list[str],
    ) -> None:
        for match in _INLINE_RE.finditer(text, start, end):
            raw_path, raw_old, raw_new = match.groups()
            path = raw_path.strip()
            if normalize_path(path) is None or any(ch.isspace() for ch in path):
                self._skip(skipped, match.group(0), "invalid variable path")
                continue
            commands.append(MutationCommand(
                path=path,
                old_value=coerce_value_literal(raw_old) if raw_old is not None else None,
                new_value=coerce_value_literal(raw_new),
                notation=notation,
                span=match.span(),
                has_old_value=raw_old is not None,
            ))

    def _initialization_commands(
        self,
        text: str,
        reference_texts: list[str],
        commands: list[MutationCommand],
        store: Optional[VariableStore],
        marker_span: tuple[int, int],
    ) -> list[MutationCommand]:
        """Commands for every variable read but never set."""
        sources = [text, *reference_texts]
        written = {c.path for c in commands}
        for source in sources:
            written.update(m.group(1).strip() for m in _SETVAR_MACRO_RE.finditer(source))

        reads: dict[str, Any] = {}
        for source in sources:
            for m in _GETVAR_MACRO_RE.finditer(source):
                reads.setdefault(m.group(1).strip(), None)
            for m in _GETVAR_EJS_RE.finditer(source):
                default = m.group(3)
                reads.setdefault(
                    m.group(2).strip(),
                    coerce_value_literal(default) if default is not None else None,
                )

        init: list[MutationCommand] = []
        for path, default in reads.items():
            if path in written or normalize_path(path) is None:
                continue
            if store is not None and store.has(path):
                continue
            value = default if default is not None else infer_default_value(path)
            init.append(MutationCommand(
                path=path,
                old_value=None,
                new_value=value,
                reason="initialize",
                notation=CommandNotation.INIT_MARKER,
                span=marker_span,
                has_old_value=False,
            ))
        return init

    # ── application ──

    @staticmethod
    def _count_updates(commands: list[MutationCommand]) -> int:
        return sum(1 for c in commands if c.notation is not CommandNotation.INIT_MARKER)

    def _apply(self, command: MutationCommand, store: VariableStore, result: ProcessedText) -> None:
        if command.notation is CommandNotation.INIT_MARKER:
            if store.has(command.path):
                return
            if store.set(command.path, command.new_value, reason=command.reason):
                result.initialized.append(command.path)
            return

        current = store.get(command.path)
        if command.has_old_value and command.old_value is not None and current != command.old_value:
            message = (
                f"Variable '{command.path}' expected old value {command.old_value!r} "
                f"but found {current!r}; applied anyway"
            )
            logger.warning("⚠️ %s", message)
            result.warnings.append(message)

        if not store.set(command.path, command.new_value, reason=command.reason):
            self._skip(result.skipped, command.path, "store rejected the path")

    @staticmethod
    def _skip(skipped: list[str], snippet: str, why: str) -> None:
        snippet = snippet[:120]
        logger.warning("⚠️ Skipping malformed variable instruction (%s): %s", why, snippet)
        skipped.append(snippet)
