"""
SQL statement classification.

Decides whether a SQL text is read-only. Anything the parser cannot place
with confidence is treated as a write, so it is never auto-executed.
"""

import sqlparse
from sqlparse import tokens as T
from sqlparse.sql import Statement

from dbcopilot.connectors.base import QuerySyntaxError
from dbcopilot.models.execution import QueryClassification

_READ_LEADING_KEYWORDS = {"SHOW", "DESCRIBE", "DESC"}


def _is_meaningful(statement: Statement) -> bool:
    for token in statement.flatten():
        if token.is_whitespace or token.ttype in T.Comment or token.ttype in T.Punctuation:
            continue
        return True
    return False


def _has_keyword(statement: Statement, keyword: str) -> bool:
    return any(
        (token.ttype in T.Keyword or token.ttype in T.Name) and token.value.upper() == keyword
        for token in statement.flatten()
    )


def split_statements(query: str) -> list[Statement]:
    """Parse ``query`` and drop empty statements (stray semicolons, comments)."""
    return [statement for statement in sqlparse.parse(query) if _is_meaningful(statement)]


def classify_sql(query: str) -> QueryClassification:
    """
    Classify SQL text as read or write.

    Read: SELECT, WITH ... SELECT, SHOW, DESCRIBE/DESC, EXPLAIN without
    ANALYZE. Everything else, including multi-statement text and
    SELECT ... INTO, is a write.

    Raises:
        QuerySyntaxError: If the text holds no statement at all
    """
    statements = split_statements(query or "")
    if not statements:
        raise QuerySyntaxError("Query is empty")
    if len(statements) > 1:
        return QueryClassification.WRITE

    statement = statements[0]
    if statement.get_type() == "SELECT":
        if _has_keyword(statement, "INTO"):
            return QueryClassification.WRITE
        return QueryClassification.READ

    first = statement.token_first(skip_ws=True, skip_cm=True)
    leading = first.normalized.upper() if first is not None else ""
    if leading in _READ_LEADING_KEYWORDS:
        return QueryClassification.READ
    if leading == "EXPLAIN":
        if _has_keyword(statement, "ANALYZE"):
            return QueryClassification.WRITE
        return QueryClassification.READ
    return QueryClassification.WRITE
