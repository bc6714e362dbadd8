"""
Minimal anchor matcher for shell build scripts.

This is not a shell parser. It knows just enough to:
- find a named function and the line holding its closing brace
- skip quoted text, comments and here-documents while counting braces
- ignore lines inside existing checkpoint blocks
- report candidate code lines of a function body for anchor regexes
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Tuple
import re


SENTINEL_BEGIN = "# >>> kernforge checkpoint: {id} >>>"
SENTINEL_END = "# <<< kernforge checkpoint: {id} <<<"

BEGIN_PATTERN = re.compile(r'^\s*# >>> kernforge checkpoint: (\S+) >>>\s*$')
END_PATTERN = re.compile(r'^\s*# <<< kernforge checkpoint: (\S+) <<<\s*$')
HEREDOC_PATTERN = re.compile(r'<<(-?)[ \t]*([\'"]?)([A-Za-z_][A-Za-z0-9_]*)\2')


@dataclass(frozen=True)
class FunctionSpan:
    """Line indexes (0-based) of a function header and its closing brace."""
    name: str
    header_line: int
    end_line: int
    opaque_lines: FrozenSet[int]  # lines starting inside quotes or heredocs

    def body_lines(self) -> range:
        return range(self.header_line + 1, self.end_line)


@dataclass(frozen=True)
class Block:
    """An existing checkpoint block, begin and end lines inclusive."""
    checkpoint_id: str
    begin: int
    end: int


class UnterminatedBlock(ValueError):
    pass


def function_header_pattern(name: str) -> re.Pattern:
    return re.compile(
        rf'^[ \t]*(?:function[ \t]+)?{re.escape(name)}[ \t]*\(\)\s*\{{',
        re.MULTILINE,
    )


def find_blocks(lines: List[str]) -> Tuple[Block, ...]:
    blocks = []
    index = 0
    while index < len(lines):
        begin = BEGIN_PATTERN.match(lines[index])
        if not begin:
            index += 1
            continue
        checkpoint_id = begin.group(1)
        end = index + 1
        while end < len(lines):
            closing = END_PATTERN.match(lines[end])
            if closing and closing.group(1) == checkpoint_id:
                break
            end += 1
        if end >= len(lines):
            raise UnterminatedBlock(f"Checkpoint block {checkpoint_id} at line {index + 1} has no end marker")
        blocks.append(Block(checkpoint_id, index, end))
        index = end + 1
    return tuple(blocks)


def strip_blocks(lines: List[str]) -> Tuple[List[str], Tuple[Block, ...]]:
    """Remove every checkpoint block. Returns remaining lines and the blocks found."""
    blocks = find_blocks(lines)
    inside = set()
    for block in blocks:
        inside.update(range(block.begin, block.end + 1))
    return [line for i, line in enumerate(lines) if i not in inside], blocks


def find_function(text: str, name: str) -> Optional[FunctionSpan]:
    """
    Locate `name() {` and the matching closing brace.

    Returns None when the header is missing or the braces never balance.
    """
    match = function_header_pattern(name).search(text)
    if not match:
        return None

    header_line = text.count("\n", 0, match.start())
    # Header regex may swallow newlines before '{'
    position = match.end()
    line = text.count("\n", 0, position)
    depth = 1
    opaque = set()
    quote: Optional[str] = None
    pending_heredocs: List[Tuple[str, bool]] = []
    at_word_start = True

    while position < len(text):
        char = text[position]

        if char == "\n":
            line += 1
            position += 1
            if quote:
                opaque.add(line)
            if pending_heredocs:
                position, line = _skip_heredocs(text, position, line, pending_heredocs, opaque)
                pending_heredocs = []
            at_word_start = True
            continue

        if quote == "'":
            if char == "'":
                quote = None
            position += 1
            continue

        if quote == '"':
            if char == "\\":
                if text.startswith("\n", position + 1):
                    line += 1
                    opaque.add(line)
                position += 2
                continue
            if char == '"':
                quote = None
            position += 1
            continue

        if char == "\\":
            if text.startswith("\n", position + 1):
                line += 1
            position += 2
            at_word_start = False
            continue

        if char in ("'", '"'):
            quote = char
        elif char == "#" and at_word_start:
            newline = text.find("\n", position)
            position = len(text) if newline < 0 else newline
            continue
        elif char == "<" and text.startswith("<<", position) and not text.startswith("<<<", position):
            heredoc = HEREDOC_PATTERN.match(text, position)
            if heredoc:
                pending_heredocs.append((heredoc.group(3), heredoc.group(1) == "-"))
                position = heredoc.end()
                at_word_start = False
                continue
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return FunctionSpan(name, header_line, line, frozenset(opaque))

        at_word_start = char in " \t;&|()"
        position += 1

    return None


def _skip_heredocs(text, position, line, pending, opaque):
    """Advance past here-document bodies that start at position."""
    for delimiter, strip_tabs in pending:
        while position < len(text):
            newline = text.find("\n", position)
            end = len(text) if newline < 0 else newline
            body_line = text[position:end]
            opaque.add(line)
            candidate = body_line.lstrip("\t") if strip_tabs else body_line
            position = end + 1
            line += 1
            if candidate == delimiter:
                break
    return position, line


def is_code_line(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith("#")


def candidate_lines(lines: List[str], span: FunctionSpan) -> List[int]:
    """Body lines eligible for anchor matching."""
    return [
        i for i in span.body_lines()
        if i not in span.opaque_lines and is_code_line(lines[i])
    ]


def match_anchor(lines: List[str], span: FunctionSpan, anchor: str) -> List[int]:
    pattern = re.compile(anchor)
    return [i for i in candidate_lines(lines, span) if pattern.search(lines[i])]


def indentation(line: str) -> str:
    return line[:len(line) - len(line.lstrip(" \t"))]
