"""Read-only statement classifier.

Decides whether caller-supplied SQL may be executed. Only a single
SELECT (optionally behind a WITH ... AS (...) prefix) is admitted.

The text is lexed with sqlparse first so that string literals, quoted
identifiers and dollar-quoted bodies are opaque: a keyword or semicolon
inside ``'...'`` neither triggers nor hides anything. Analysis runs on
scratch copies; the caller's text is never rewritten and is what gets
executed.

Three scratch copies are derived from the token stream:

* ``masked``   literals masked, comments kept verbatim. Used for the
  multi-statement check, so a semicolon behind ``--`` or ``#`` still
  counts.
* ``analysis`` literals masked, comments replaced by a single space.
  Used for the shape check.
* ``scan``     like ``analysis`` but ``#`` spans are kept verbatim, since
  PostgreSQL reads ``#`` as an operator and the rest of the line runs.
  Used for the keyword deny-list and the procedure check.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlparse import keywords
from sqlparse import tokens as T
from sqlparse.lexer import Lexer

from sqlgate.core.logging import excerpt, get_logger
from sqlgate.core.models import Verdict

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

FORBIDDEN_KEYWORDS: tuple[str, ...] = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "CREATE",
    "ALTER",
    "TRUNCATE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
    "CALL",
    "MERGE",
    "REPLACE",
    "RENAME",
    "COMMENT",
    "LOAD",
    "UNLOAD",
    "COMMIT",
    "ROLLBACK",
    "SAVEPOINT",
    "SET TRANSACTION",
    "START TRANSACTION",
    "BEGIN WORK",
    "LOCK",
    "UNLOCK",
)

REASON_EMPTY = "empty query"
REASON_MULTIPLE = "multiple statements not allowed"
REASON_SHAPE = "must start with SELECT or WITH...SELECT"
REASON_PROCEDURE = "procedure/function execution not allowed"

_KEYWORD_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (kw, re.compile(r"\b" + r"\s+".join(kw.split()) + r"\b", re.IGNORECASE))
    for kw in FORBIDDEN_KEYWORDS
)

# A semicolon followed by anything other than trailing whitespace.
_SEMICOLON_RE = re.compile(r";(?!\s*$)")
_PROCEDURE_RE = re.compile(r"\bEXECUTE\s+(PROCEDURE|FUNCTION)\b", re.IGNORECASE)

_STRING_MASK = "''"
_IDENT_MASK = '""'


class TokenKind(Enum):
    WORD = "word"
    QUOTED_IDENT = "quoted_ident"
    STRING = "string"
    COMMENT = "comment"
    WHITESPACE = "whitespace"
    PUNCT = "punct"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str

    @property
    def significant(self) -> bool:
        return self.kind not in (TokenKind.WHITESPACE, TokenKind.COMMENT)

    def is_word(self, *values: str) -> bool:
        return self.kind is TokenKind.WORD and self.text.upper() in values


# PostgreSQL literal rules tried ahead of sqlparse's generic ones. Only E''
# strings honour backslash escapes; plain strings and quoted identifiers
# end at the first lone quote.
_POSTGRES_RULES: list[tuple[str, Any]] = [
    (r"#[^\r\n]*", T.Comment.Single),
    (r"E'(?:''|\\[\s\S]|[^'\\])*'", T.String.Single),
    (r"'(?:''|[^'])*'", T.String.Single),
    (r'"(?:""|[^"])*"', T.String.Symbol),
]


def _build_lexer() -> Lexer:
    lexer = Lexer()
    lexer.clear()
    lexer.set_SQL_REGEX(_POSTGRES_RULES + keywords.SQL_REGEX)
    lexer.add_keywords(keywords.KEYWORDS_COMMON)
    lexer.add_keywords(keywords.KEYWORDS_PLPGSQL)
    lexer.add_keywords(keywords.KEYWORDS)
    return lexer


_LEXER = _build_lexer()


def _kind_of(ttype: Any) -> TokenKind:
    if ttype in T.Comment:
        return TokenKind.COMMENT
    if ttype in T.Whitespace:
        return TokenKind.WHITESPACE
    if ttype in T.String.Symbol:
        return TokenKind.QUOTED_IDENT
    # Dollar-quoted bodies come back as bare Literal.
    if ttype in T.String or ttype is T.Literal:
        return TokenKind.STRING
    if ttype in T.Keyword or ttype in T.Name or ttype in T.Number:
        return TokenKind.WORD
    return TokenKind.PUNCT


def tokenize(text: str) -> Iterator[Token]:
    """Split SQL text into tokens, keeping every character.

    ``"".join(t.text for t in tokenize(s)) == s`` always holds. Unterminated
    literals and comments are not opaque; their contents lex as live text.
    """
    for ttype, value in _LEXER.get_tokens(text):
        yield Token(_kind_of(ttype), value)


@dataclass(frozen=True)
class ScratchText:
    """Analysis-only renderings of one statement."""

    tokens: tuple[Token, ...]
    masked: str
    analysis: str
    scan: str
    had_comments: bool

    @property
    def significant(self) -> list[Token]:
        return [t for t in self.tokens if t.significant]


def scratch(text: str) -> ScratchText:
    tokens = tuple(tokenize(text))
    masked: list[str] = []
    analysis: list[str] = []
    scan: list[str] = []
    had_comments = False
    for tok in tokens:
        if tok.kind is TokenKind.STRING:
            rendered = [_STRING_MASK] * 3
        elif tok.kind is TokenKind.QUOTED_IDENT:
            rendered = [_IDENT_MASK] * 3
        elif tok.kind is TokenKind.COMMENT:
            had_comments = True
            rendered = [tok.text, " ", tok.text if tok.text.startswith("#") else " "]
        else:
            rendered = [tok.text] * 3
        masked.append(rendered[0])
        analysis.append(rendered[1])
        scan.append(rendered[2])
    return ScratchText(
        tokens=tokens,
        masked="".join(masked),
        analysis="".join(analysis).strip(),
        scan="".join(scan).strip(),
        had_comments=had_comments,
    )


# ---------------------------------------------------------------------------
# Individual checks. Each returns a denial Verdict or None.
# ---------------------------------------------------------------------------


def check_multiple_statements(sc: ScratchText) -> Verdict | None:
    if _SEMICOLON_RE.search(sc.masked.strip()):
        return Verdict.deny(REASON_MULTIPLE, had_comments=sc.had_comments)
    return None


def _skip_parens(tokens: list[Token], i: int) -> int | None:
    """Given tokens[i] == '(', return the index after its matching ')'."""
    depth = 0
    for j in range(i, len(tokens)):
        if tokens[j].kind is TokenKind.PUNCT:
            if tokens[j].text == "(":
                depth += 1
            elif tokens[j].text == ")":
                depth -= 1
                if depth == 0:
                    return j + 1
    return None


def _is_punct(tokens: list[Token], i: int, value: str) -> bool:
    return i < len(tokens) and tokens[i].kind is TokenKind.PUNCT and tokens[i].text == value


def _skip_cte_prefix(tokens: list[Token]) -> int | None:
    """Walk ``WITH [RECURSIVE] name [(cols)] AS [NOT] [MATERIALIZED] (...) [, ...]``.

    Returns the index of the token following the prefix, or None when the
    prefix is malformed.
    """
    i = 1
    if i < len(tokens) and tokens[i].is_word("RECURSIVE"):
        i += 1
    while True:
        if i >= len(tokens) or tokens[i].kind not in (
            TokenKind.WORD,
            TokenKind.QUOTED_IDENT,
        ):
            return None
        i += 1
        if _is_punct(tokens, i, "("):
            nxt = _skip_parens(tokens, i)
            if nxt is None:
                return None
            i = nxt
        if i >= len(tokens) or not tokens[i].is_word("AS"):
            return None
        i += 1
        if i < len(tokens) and tokens[i].is_word("NOT"):
            i += 1
        if i < len(tokens) and tokens[i].is_word("MATERIALIZED"):
            i += 1
        if not _is_punct(tokens, i, "("):
            return None
        nxt = _skip_parens(tokens, i)
        if nxt is None or nxt == i + 2:
            return None
        i = nxt
        if _is_punct(tokens, i, ","):
            i += 1
            continue
        return i


def _first_forbidden(text: str) -> str | None:
    for keyword, pattern in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return keyword
    return None


def _select_at(sc: ScratchText, tokens: list[Token], start: int | None) -> bool:
    """True when tokens[start] is SELECT, set apart by whitespace or a comment,
    and followed by something other than a semicolon."""
    if start is None or start + 1 >= len(tokens) or not tokens[start].is_word("SELECT"):
        return False
    if _is_punct(tokens, start + 1, ";"):
        return False
    position = next(i for i, tok in enumerate(sc.tokens) if tok is tokens[start])
    return sc.tokens[position + 1].kind in (TokenKind.WHITESPACE, TokenKind.COMMENT)


def check_statement_shape(sc: ScratchText) -> Verdict | None:
    tokens = sc.significant
    start: int | None = 0
    if tokens and tokens[0].is_word("WITH"):
        start = _skip_cte_prefix(tokens)
    if not _select_at(sc, tokens, start):
        keyword = _first_forbidden(sc.scan)
        reason = REASON_SHAPE
        if keyword is not None:
            reason = f"{REASON_SHAPE} (forbidden keyword: {keyword})"
        return Verdict.deny(reason, keyword=keyword, had_comments=sc.had_comments)
    return None


def check_forbidden_keywords(sc: ScratchText) -> Verdict | None:
    keyword = _first_forbidden(sc.scan)
    if keyword is not None:
        return Verdict.deny(
            f"forbidden keyword: {keyword}",
            keyword=keyword,
            had_comments=sc.had_comments,
        )
    return None


def check_procedure_call(sc: ScratchText) -> Verdict | None:
    # Overlaps the EXECUTE keyword rule on purpose; both stay.
    match = _PROCEDURE_RE.search(sc.scan)
    if match:
        return Verdict.deny(
            REASON_PROCEDURE,
            keyword=f"EXECUTE {match.group(1).upper()}",
            had_comments=sc.had_comments,
        )
    return None


CHECKS: tuple[Callable[[ScratchText], Verdict | None], ...] = (
    check_multiple_statements,
    check_statement_shape,
    check_forbidden_keywords,
    check_procedure_call,
)


class StatementClassifier:
    """Stateless admit/deny gate for caller-supplied SQL.

    ``classify`` is deterministic: the same text always yields the same
    verdict. The only side effect is logging.
    """

    def __init__(self, logger: Any | None = None) -> None:
        self._log = logger

    @property
    def log(self) -> Any:
        if self._log is None:
            self._log = get_logger("classifier")
        return self._log

    def classify(self, text: str | None) -> Verdict:
        if text is None or not text.strip():
            self.log.warning("query denied", reason=REASON_EMPTY)
            return Verdict.deny(REASON_EMPTY)

        sc = scratch(text)
        for check in CHECKS:
            verdict = check(sc)
            if verdict is not None:
                self.log.warning(
                    "query denied", reason=verdict.reason, query=excerpt(text)
                )
                return verdict

        if sc.had_comments:
            self.log.info(
                "query contained comments (ignored for validation)",
                query=excerpt(text),
            )
        self.log.debug("query admitted", query=excerpt(text))
        return Verdict.admit(had_comments=sc.had_comments)

    def is_admitted(self, text: str | None) -> bool:
        return self.classify(text).admitted


def classify(text: str | None) -> Verdict:
    """Classify with a default StatementClassifier."""
    return StatementClassifier().classify(text)
