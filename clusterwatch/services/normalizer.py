"""Lexical normalization of SQL statement text.

Structurally identical statements that differ only in literal values,
positional parameters or the arity of an ``IN (...)`` list collapse to the
same canonical text and therefore the same signature. This is a token
rewriter, not a parser, and it never fails: on any internal error the
original text is returned unchanged.
"""

from __future__ import annotations

import hashlib
import logging
import re


logger = logging.getLogger(__name__)

PLACEHOLDER = "?"

# One left-to-right pass so quotes inside comments (and dashes inside strings) are never misread.
_TOKEN_RE = re.compile(
    r"""
    (?P<line_comment>--[^\n]*)
    | (?P<block_comment>/\*.*?\*/)
    | (?P<identifier>"(?:[^"]|"")*")
    | (?P<string>\b[eE]'(?:[^'\\]|\\.|'')*'|'(?:[^']|'')*')
    | (?P<param>\$\d+)
    | (?P<number>(?<![\w$.?])(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?(?![\w$]))
    """,
    re.VERBOSE | re.DOTALL,
)
# Any literal list after IN collapses to one placeholder; subqueries keep their shape.
_IN_LIST_RE = re.compile(r"\b(IN)\s*\((?!\s*SELECT\b)[^()]*\)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def _replace_token(match: re.Match[str]) -> str:
    kind = match.lastgroup
    if kind in ("line_comment", "block_comment"):
        return " "
    if kind == "identifier":
        return match.group(0)
    return PLACEHOLDER


def normalize(raw: str | None) -> str:
    if not raw or not isinstance(raw, str):
        return ""
    try:
        text = _TOKEN_RE.sub(_replace_token, raw)
        text = _IN_LIST_RE.sub(lambda m: f"{m.group(1)} ({PLACEHOLDER})", text)
        return _WHITESPACE_RE.sub(" ", text).strip()
    except Exception:  # noqa: BLE001 - normalization degrades to passthrough, never fails a cycle
        logger.exception("statement_normalization_failed")
        return raw


def signature(canonical: str) -> str:
    # 128-bit content hash; hex keeps it safe as an identifier and index key.
    return hashlib.md5(canonical.encode("utf-8"), usedforsecurity=False).hexdigest()


def raw_hash(raw: str) -> str:
    return signature(raw)


def normalize_and_hash(raw: str | None) -> tuple[str, str]:
    canonical = normalize(raw)
    return canonical, signature(canonical)
