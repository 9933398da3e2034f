"""Тесты фильтрации, сортировки и группировки событий"""
from datetime import datetime, timezone

from app.services.events.event_filter import EventFilter, MISSING, resolve_path
from app.services.events.models import EventFilters
from tests.conftest import NOW, make_event


def _uids(events):
    return [e.uid for e in events]


class TestResolvePath:

    def test_dot_and_bracket_paths(self):
        data = {"file": {"name": "a.pdf"}, "sharedWith": [{"email": "x@y.z"}]}
        assert resolve_path(data, "file.name") == "a.pdf"
        assert resolve_path(data, "sharedWith[0].email") == "x@y.z"
        assert resolve_path(data, "$.file.name") == "a.pdf"

    def test_unresolvable_path_is_missing(self):
        data = {"file": {"name": "a.pdf"}, "items": []}
        assert resolve_path(data, "file.size") is MISSING
        assert resolve_path(data, "items[3]") is MISSING
        assert resolve_path(data, "file.name.first") is MISSING

    def test_explicit_null_is_not_missing(self):
        assert resolve_path({"owner": None}, "owner") is None


class TestFilterEvents:

    def test_empty_filters_return_same_list(self):
        events = [make_event("e1"), make_event("e2")]
        assert EventFilter.filter_events(events, None) is events
        assert EventFilter.filter_events(events, {}) is events
        assert EventFilter.filter_events(events, EventFilters()) is events

    def test_event_type_scenario(self):
        events = [
            make_event("e1", event_type="file.share"),
            make_event("e2", event_type="comment.create"),
            make_event("e3", event_type="file.share"),
        ]
        result = EventFilter.filter_events(events, {"eventTypes": ["file.share"]})
        assert _uids(result) == ["e1", "e3"]

    def test_allow_lists_are_conjunctive(self):
        events = [
            make_event("e1", account_id="acc-1", application="drive", user_id="u1"),
            make_event("e2", account_id="acc-2", application="drive", user_id="u1"),
            make_event("e3", account_id="acc-1", application="mail", user_id="u1"),
            make_event("e4", account_id="acc-1", application="drive"),
        ]
        filters = {"accountIds": ["acc-1"], "sourceApplications": ["drive"], "userIds": ["u1"]}
        assert _uids(EventFilter.filter_events(events, filters)) == ["e1"]

    def test_source_environment(self):
        events = [make_event("e1", environment="staging"), make_event("e2")]
        result = EventFilter.filter_events(events, {"sourceEnvironments": ["production"]})
        assert _uids(result) == ["e2"]

    def test_max_age_hours(self):
        events = [
            make_event("fresh", timestamp="2025-03-10T07:00:00Z"),
            make_event("old", timestamp="2025-03-08T07:00:00Z"),
            make_event("broken", timestamp="not-a-date"),
        ]
        result = EventFilter.filter_events(events, {"maxAgeHours": 24}, now=NOW)
        assert _uids(result) == ["fresh", "broken"]

    def test_data_filter_operators(self):
        events = [
            make_event("e1", data={"file": {"name": "report.pdf"}, "public": True}),
            make_event("e2", data={"file": {"name": "notes.txt"}, "public": 1}),
            make_event("e3", data={"file": {}}),
        ]

        def run(operator, path, value=None):
            filters = {"dataFilters": [{"path": path, "operator": operator, "value": value}]}
            return _uids(EventFilter.filter_events(events, filters))

        assert run("equals", "file.name", "report.pdf") == ["e1"]
        assert run("equals", "public", True) == ["e1"]
        assert run("not_equals", "file.name", "report.pdf") == ["e2", "e3"]
        assert run("contains", "file.name", ".txt") == ["e2"]
        assert run("not_contains", "file.name", ".txt") == ["e1", "e3"]
        assert run("exists", "file.name") == ["e1", "e2"]
        assert run("not_exists", "file.name") == ["e3"]

    def test_unknown_operator_is_ignored(self):
        events = [make_event("e1", data={"a": 1})]
        filters = {"dataFilters": [{"path": "a", "operator": "regex", "value": ".*"}]}
        assert _uids(EventFilter.filter_events(events, filters)) == ["e1"]


class TestSortEvents:

    def test_desc_by_timestamp(self):
        events = [
            make_event("mid", timestamp="2025-03-10T06:00:00Z"),
            make_event("new", timestamp="2025-03-10T08:00:00Z"),
            make_event("old", timestamp="2025-03-10T04:00:00Z"),
        ]
        assert _uids(EventFilter.sort_events(events)) == ["new", "mid", "old"]
        assert _uids(EventFilter.sort_events(events, order="asc")) == ["old", "mid", "new"]

    def test_returns_new_list(self):
        events = [make_event("b", timestamp="2025-03-10T01:00:00Z"), make_event("a")]
        result = EventFilter.sort_events(events)
        assert result is not events
        assert _uids(events) == ["b", "a"]

    def test_ties_keep_input_order_in_both_directions(self):
        events = [make_event("first"), make_event("second"), make_event("third")]
        assert _uids(EventFilter.sort_events(events, order="desc")) == ["first", "second", "third"]
        assert _uids(EventFilter.sort_events(events, order="asc")) == ["first", "second", "third"]

    def test_unparsable_timestamp_goes_last(self):
        events = [
            make_event("old", timestamp="2025-03-10T01:00:00Z"),
            make_event("bad", timestamp="not-a-date"),
            make_event("new", timestamp="2025-03-10T08:00:00Z"),
        ]
        assert _uids(EventFilter.sort_events(events, order="desc")) == ["new", "old", "bad"]
        assert _uids(EventFilter.sort_events(events, order="asc")) == ["old", "new", "bad"]

    def test_missing_and_mixed_keys(self):
        events = [
            make_event("e1", data={"rank": "b"}),
            make_event("e2"),
            make_event("e3", data={"rank": 3}),
            make_event("e4", data={"rank": None}),
            make_event("e5", data={"rank": "a"}),
        ]
        # Разнотипные значения сравниваются как строки, отсутствующие - в конце
        assert _uids(EventFilter.sort_events(events, "data.rank", "asc")) == ["e3", "e5", "e1", "e2", "e4"]

    def test_sort_by_nested_path(self):
        events = [
            make_event("e1", data={"size": 20}),
            make_event("e2", data={"size": 5}),
            make_event("e3", data={"size": 10}),
        ]
        assert _uids(EventFilter.sort_events(events, "data.size", "asc")) == ["e2", "e3", "e1"]


class TestGroupAndStats:

    def test_group_by_type_and_date(self):
        events = [
            make_event("e1", event_type="file.share", timestamp="2025-03-09T23:30:00Z"),
            make_event("e2", event_type="comment.create", timestamp="2025-03-10T00:30:00Z"),
            make_event("e3", event_type="file.share", timestamp="2025-03-10T08:00:00Z"),
        ]
        by_type = EventFilter.group_events(events, "eventType")
        assert {k: _uids(v) for k, v in by_type.items()} == {"file.share": ["e1", "e3"], "comment.create": ["e2"]}

        by_date = EventFilter.group_events(events, "date")
        assert {k: _uids(v) for k, v in by_date.items()} == {"2025-03-09": ["e1"], "2025-03-10": ["e2", "e3"]}

    def test_missing_group_key_is_unknown(self):
        events = [make_event("e1", user_id="u1"), make_event("e2")]
        groups = EventFilter.group_events(events, "userId")
        assert _uids(groups["unknown"]) == ["e2"]
        fallback = EventFilter.group_events(events, "data.folder")
        assert list(fallback) == ["unknown"]

    def test_event_stats(self):
        events = [
            make_event("e1", event_type="file.share", timestamp="2025-03-10T05:00:00Z"),
            make_event("e2", event_type="file.share", account_id="acc-2", timestamp="2025-03-10T08:00:00Z"),
            make_event("e3", event_type="comment.create", application="mail", timestamp="bad"),
        ]
        stats = EventFilter.get_event_stats(events)
        assert stats.total == 3
        assert stats.by_type == {"file.share": 2, "comment.create": 1}
        assert stats.by_account == {"acc-1": 2, "acc-2": 1}
        assert stats.by_application == {"drive": 2, "mail": 1}
        assert stats.earliest == datetime(2025, 3, 10, 5, 0, tzinfo=timezone.utc)
        assert stats.latest == datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)
        assert stats.to_dict()["timeRange"]["latest"] == "2025-03-10T08:00:00+00:00"

    def test_empty_stats(self):
        stats = EventFilter.get_event_stats([]).to_dict()
        assert stats["total"] == 0
        assert stats["timeRange"] == {"earliest": None, "latest": None}
