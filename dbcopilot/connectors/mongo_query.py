"""
MongoDB shell-style query parsing.

Queries arrive in shell syntax, for example::

    db.orders.find({status: "shipped", total: {$gt: 100}}).sort({total: -1}).limit(10)
    db.users.aggregate([{$group: {_id: "$country", n: {$sum: 1}}}])
    db.users.deleteMany({lastLogin: {$lt: ISODate("2023-01-01")}})

Arguments are rewritten into Extended JSON (unquoted keys quoted, single
quotes normalised, ``ObjectId``/``ISODate``/``new Date`` helpers mapped to
``$oid``/``$date``) and decoded with ``bson.json_util``.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from bson import json_util
from bson.errors import BSONError

from dbcopilot.connectors.base import QuerySyntaxError
from dbcopilot.models.execution import QueryClassification

READ_OPERATIONS = frozenset(
    {"find", "findOne", "aggregate", "countDocuments", "distinct", "estimatedDocumentCount"}
)
WRITE_OPERATIONS = frozenset(
    {
        "insertOne",
        "insertMany",
        "updateOne",
        "updateMany",
        "replaceOne",
        "deleteOne",
        "deleteMany",
    }
)
CURSOR_MODIFIERS = frozenset({"sort", "limit", "skip", "project"})
_AGGREGATE_WRITE_STAGES = ("$out", "$merge")

_HEAD = re.compile(r"^\s*db\.([A-Za-z_][\w\-]*)\.([A-Za-z]+)\s*\(")
_MODIFIER = re.compile(r"^\s*\.([A-Za-z]+)\s*\(")
_OBJECT_ID = re.compile(r"""ObjectId\(\s*['"]([0-9a-fA-F]{24})['"]\s*\)""")
_DATE = re.compile(r"""(?:new\s+Date|ISODate)\(\s*['"]([^'"]+)['"]\s*\)""")
_DATE_ONLY = re.compile(r"\d{4}-\d{2}-\d{2}")
_SINGLE_QUOTED = re.compile(r"'((?:[^'\\]|\\.)*)'")
_UNQUOTED_KEY = re.compile(r"([{,]\s*)([A-Za-z_$][\w$.]*)\s*:")


@dataclass
class MongoQuery:
    """One parsed ``db.<collection>.<operation>(...)`` call."""

    collection: str
    operation: str
    args: list[Any] = field(default_factory=list)
    modifiers: dict[str, Any] = field(default_factory=dict)

    def arg(self, index: int, default: Any = None) -> Any:
        return self.args[index] if index < len(self.args) else default

    @property
    def is_read(self) -> bool:
        if self.operation not in READ_OPERATIONS:
            return False
        if self.operation == "aggregate":
            pipeline = self.arg(0, [])
            return not any(
                isinstance(stage, dict) and any(key in stage for key in _AGGREGATE_WRITE_STAGES)
                for stage in pipeline
            )
        return True


def _find_closing_paren(text: str, open_index: int) -> int:
    depth = 0
    quote: str | None = None
    escaped = False
    for index in range(open_index, len(text)):
        char = text[index]
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in "\"'":
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
            if depth == 0:
                if char != ")":
                    break
                return index
    raise QuerySyntaxError("Unbalanced parentheses in MongoDB query")


def _date_literal(match: re.Match) -> str:
    value = match.group(1)
    if _DATE_ONLY.fullmatch(value):
        value += "T00:00:00Z"
    return '{"$date": "' + value + '"}'


def to_extended_json(text: str) -> str:
    """Rewrite shell-style literal text into Extended JSON."""
    text = _OBJECT_ID.sub(r'{"$oid": "\1"}', text)
    text = _DATE.sub(_date_literal, text)
    text = _SINGLE_QUOTED.sub(lambda m: '"' + m.group(1).replace('"', '\\"') + '"', text)
    return _UNQUOTED_KEY.sub(r'\1"\2":', text)


def _parse_args(text: str) -> list[Any]:
    if not text.strip():
        return []
    try:
        return json_util.loads("[" + to_extended_json(text) + "]")
    except (ValueError, TypeError, BSONError) as exc:
        raise QuerySyntaxError(f"Could not parse MongoDB arguments: {exc}") from exc


def parse_mongo_query(query: str) -> MongoQuery:
    """
    Parse shell syntax into a MongoQuery.

    Raises:
        QuerySyntaxError: Malformed call, unknown operation or undecodable arguments
    """
    text = (query or "").strip().rstrip(";").strip()
    if not text:
        raise QuerySyntaxError("Query is empty")

    head = _HEAD.match(text)
    if not head:
        raise QuerySyntaxError(
            "Invalid MongoDB query format. Expected: db.collection.operation({...})"
        )
    collection, operation = head.group(1), head.group(2)
    if operation not in READ_OPERATIONS | WRITE_OPERATIONS:
        raise QuerySyntaxError(f"Unsupported MongoDB operation: {operation}")

    close = _find_closing_paren(text, head.end() - 1)
    parsed = MongoQuery(
        collection=collection,
        operation=operation,
        args=_parse_args(text[head.end() : close]),
    )

    rest = text[close + 1 :]
    while rest.strip():
        modifier = _MODIFIER.match(rest)
        if not modifier or modifier.group(1) not in CURSOR_MODIFIERS:
            raise QuerySyntaxError(f"Unsupported cursor modifier near: {rest.strip()[:40]}")
        if operation != "find":
            raise QuerySyntaxError(
                f"Cursor modifiers are only valid after find(), not {operation}()"
            )
        end = _find_closing_paren(rest, modifier.end() - 1)
        values = _parse_args(rest[modifier.end() : end])
        parsed.modifiers[modifier.group(1)] = values[0] if values else None
        rest = rest[end + 1 :]

    return parsed


def classify_mongo(query: str) -> QueryClassification:
    """Classify a shell-style MongoDB query as read or write."""
    if parse_mongo_query(query).is_read:
        return QueryClassification.READ
    return QueryClassification.WRITE
