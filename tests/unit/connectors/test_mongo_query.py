"""Unit tests for MongoDB shell-syntax parsing and classification."""

from datetime import datetime

import pytest
from bson import ObjectId

from dbcopilot.connectors.base import QuerySyntaxError
from dbcopilot.connectors.mongo_query import classify_mongo, parse_mongo_query, to_extended_json
from dbcopilot.models.execution import QueryClassification


class TestParse:
    def test_find_with_modifiers(self):
        parsed = parse_mongo_query(
            'db.orders.find({status: "shipped", total: {$gt: 100}}).sort({total: -1}).limit(10)'
        )

        assert parsed.collection == "orders"
        assert parsed.operation == "find"
        assert parsed.args == [{"status": "shipped", "total": {"$gt": 100}}]
        assert parsed.modifiers == {"sort": {"total": -1}, "limit": 10}

    def test_single_quotes_and_trailing_semicolon(self):
        parsed = parse_mongo_query("db.users.findOne({name: 'Ada'});")

        assert parsed.args == [{"name": "Ada"}]

    def test_object_id_and_dates(self):
        parsed = parse_mongo_query(
            'db.users.find({_id: ObjectId("64b7f0c2a1b2c3d4e5f60718"), '
            'created: {$gte: ISODate("2024-01-01")}})'
        )

        query = parsed.arg(0)
        assert query["_id"] == ObjectId("64b7f0c2a1b2c3d4e5f60718")
        assert isinstance(query["created"]["$gte"], datetime)

    def test_aggregate_pipeline(self):
        parsed = parse_mongo_query(
            'db.users.aggregate([{$group: {_id: "$country", n: {$sum: 1}}}])'
        )

        assert parsed.arg(0) == [{"$group": {"_id": "$country", "n": {"$sum": 1}}}]

    def test_empty_arguments(self):
        parsed = parse_mongo_query("db.users.estimatedDocumentCount()")

        assert parsed.args == []

    def test_parentheses_inside_strings(self):
        parsed = parse_mongo_query('db.notes.find({text: "hello (world)"})')

        assert parsed.arg(0) == {"text": "hello (world)"}

    @pytest.mark.parametrize(
        "query",
        [
            "",
            "show collections",
            "db.users.drop()",
            "db.users.find({name: 'Ada'}",
            "db.users.find({name: })",
            "db.users.aggregate([]).limit(5)",
            "db.users.find({}).explain()",
        ],
    )
    def test_malformed_queries_rejected(self, query):
        with pytest.raises(QuerySyntaxError):
            parse_mongo_query(query)


class TestClassify:
    @pytest.mark.parametrize(
        "query",
        [
            "db.users.find({})",
            "db.users.countDocuments({active: true})",
            "db.users.distinct('country')",
            'db.users.aggregate([{$match: {active: true}}])',
        ],
    )
    def test_reads(self, query):
        assert classify_mongo(query) == QueryClassification.READ

    @pytest.mark.parametrize(
        "query",
        [
            "db.users.insertOne({name: 'Ada'})",
            "db.users.updateMany({}, {$set: {active: false}})",
            "db.users.deleteOne({name: 'Ada'})",
            'db.users.aggregate([{$match: {}}, {$out: "backup"}])',
            'db.users.aggregate([{$merge: {into: "summary"}}])',
        ],
    )
    def test_writes(self, query):
        assert classify_mongo(query) == QueryClassification.WRITE


def test_extended_json_quotes_keys():
    assert to_extended_json("{a: 1, b: {c: 'x'}}") == '{"a": 1, "b": {"c": "x"}}'
