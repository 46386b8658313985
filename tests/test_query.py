"""Tests for the query engine."""

import sqlite3

from dcbstore.models import Event, Query
from dcbstore.query import compile_highest_sequence, compile_query, matches


def make_event(sequence: int, event_type: str, **tags: str) -> Event:
    return Event(sequence=sequence, type=event_type, tags=tags)


# ─────────────────────────────────────────────────────────────────────────────
# matches()
# ─────────────────────────────────────────────────────────────────────────────


def test_matches_type_and_tag():
    event = make_event(1, "CourseDefined", courseId="c1")
    query = Query(types={"CourseDefined", "CourseCapacityChanged"}, tags={"courseId": "c1"})
    assert matches(event, query)


def test_type_outside_set_does_not_match():
    event = make_event(1, "StudentSubscribed", courseId="c1")
    assert not matches(event, Query(types={"CourseDefined"}, tags={"courseId": "c1"}))


def test_tag_value_must_be_exact():
    event = make_event(1, "CourseDefined", courseId="c10")
    assert not matches(event, Query(tags={"courseId": "c1"}))


def test_missing_tag_never_matches_empty_value():
    """A missing key is not the same as an empty value."""
    event = make_event(1, "CourseDefined")
    assert not matches(event, Query(tags={"courseId": ""}))

    tagged_empty = make_event(2, "CourseDefined", courseId="")
    assert matches(tagged_empty, Query(tags={"courseId": ""}))


def test_tag_predicates_are_and_combined():
    event = make_event(1, "StudentSubscribed", courseId="c1", studentId="s1")
    assert matches(event, Query(tags={"courseId": "c1", "studentId": "s1"}))
    assert not matches(event, Query(tags={"courseId": "c1", "studentId": "s2"}))


def test_extra_event_tags_are_ignored():
    event = make_event(1, "StudentSubscribed", courseId="c1", studentId="s1")
    assert matches(event, Query(tags={"studentId": "s1"}))


def test_empty_query_matches_everything():
    assert matches(make_event(1, "Anything"), Query())
    assert matches(make_event(2, "Other", k="v"), Query.all())


# ─────────────────────────────────────────────────────────────────────────────
# compile_query()
# ─────────────────────────────────────────────────────────────────────────────


def test_compile_empty_query():
    assert compile_query(Query()) == ("1", [])


def test_compile_is_deterministic():
    """Types and tags are sorted so equal queries compile identically."""
    a = compile_query(Query(types={"B", "A"}, tags={"y": "2", "x": "1"}))
    b = compile_query(Query(types={"A", "B"}, tags={"x": "1", "y": "2"}))
    assert a == b
    assert a[1] == ["A", "B", "x", "1", "y", "2"]


def _memory_db(events: list[Event]) -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.executescript("""
        CREATE TABLE events (sequence INTEGER PRIMARY KEY, type TEXT NOT NULL);
        CREATE TABLE event_tags (sequence INTEGER, key TEXT, value TEXT);
    """)
    for event in events:
        conn.execute("INSERT INTO events VALUES (?, ?)", (event.sequence, event.type))
        conn.executemany(
            "INSERT INTO event_tags VALUES (?, ?, ?)",
            [(event.sequence, k, v) for k, v in event.tags.items()],
        )
    return conn


def test_compiled_query_agrees_with_matches():
    """The SQL predicate selects exactly what matches() selects."""
    events = [
        make_event(1, "CourseDefined", courseId="c1"),
        make_event(2, "CourseDefined", courseId="c2"),
        make_event(3, "StudentSubscribed", courseId="c1", studentId="s1"),
        make_event(4, "CourseCapacityChanged", courseId="c1"),
        make_event(5, "CourseDefined"),
    ]
    conn = _memory_db(events)
    queries = [
        Query(),
        Query(types={"CourseDefined"}),
        Query(tags={"courseId": "c1"}),
        Query(types={"CourseDefined", "CourseCapacityChanged"}, tags={"courseId": "c1"}),
        Query(tags={"courseId": "c1", "studentId": "s1"}),
        Query(tags={"courseId": ""}),
    ]

    for query in queries:
        where, params = compile_query(query)
        rows = conn.execute(
            f"SELECT e.sequence FROM events e WHERE {where} ORDER BY e.sequence", params
        ).fetchall()
        expected = [e.sequence for e in events if matches(e, query)]
        assert [r[0] for r in rows] == expected, query


def test_compiled_highest_sequence_subquery():
    """The high-water mark compiles to a scalar usable inside other statements."""
    events = [
        make_event(1, "CourseDefined", courseId="c1"),
        make_event(2, "CourseDefined", courseId="c2"),
    ]
    conn = _memory_db(events)

    sub_sql, params = compile_highest_sequence(Query(tags={"courseId": "c1"}))
    assert conn.execute(f"SELECT {sub_sql}", params).fetchone()[0] == 1

    sub_sql, params = compile_highest_sequence(Query(tags={"courseId": "c9"}))
    assert conn.execute(f"SELECT {sub_sql}", params).fetchone()[0] == 0
