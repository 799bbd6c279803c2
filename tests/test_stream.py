"""Tests for the resumable stream reader.

Tests cover:
- Row order across references and batches of rows
- Reconnect with replay to the last delivered row
- Replay mismatch detection
- Retry budget exhaustion
- Failures before any row was delivered
- Empty references
"""

import pytest
from bulkextract.errors import PermanentError, RepositionMismatch, TransientStreamError
from bulkextract.models import ResultReference
from bulkextract.stream import ExtractionCursor, ResumableStreamReader, csv_to_record

HEADER = ["Id", "Name"]
# "Id,Name\n" is 8 bytes, every "n,x\n" row is 4 bytes
HEADER_BYTES = 8
ROW_BYTES = 4


def rows_of(*ids):
    return [[str(i), chr(ord("a") + i - 1)] for i in ids]


def ids(records):
    return [r["Id"] for r in records]


@pytest.fixture
def results(csv_text):
    return {
        "r1": csv_text(HEADER, rows_of(1, 2, 3, 4)),
        "r2": csv_text(HEADER, rows_of(5, 6)),
    }


def make_cursor(connection, batch_id="B0"):
    batch = connection.batches[0]
    refs = [ResultReference(batch_id, r) for r in batch.results]
    return ExtractionCursor(connection.job_id, refs, entity="Account")


class TestCsvToRecord:
    def test_pairs_header_with_values(self):
        assert csv_to_record(["a", "b"], ["1", "2"]) == {"a": "1", "b": "2"}

    def test_empty_field_is_none(self):
        assert csv_to_record(["a", "b"], ["", "2"]) == {"a": None, "b": "2"}

    def test_short_row_padded_with_none(self):
        assert csv_to_record(["a", "b", "c"], ["1"]) == {"a": "1", "b": None, "c": None}

    def test_extra_fields_dropped(self):
        assert csv_to_record(["a"], ["1", "2"]) == {"a": "1"}


class TestFetchOrdering:
    """Rows come out in reference order, bounded by max_rows."""

    def test_reads_across_references(self, fake_connection, scripted_batch, results):
        connection = fake_connection([scripted_batch("B0", results=results)])
        cursor = make_cursor(connection)
        reader = ResumableStreamReader(connection)

        first = reader.fetch(cursor, 3)
        second = reader.fetch(cursor, 3)
        third = reader.fetch(cursor, 3)

        assert ids(first) == ["1", "2", "3"]
        assert ids(second) == ["4", "5", "6"]
        assert third == []
        assert cursor.finished is True
        assert cursor.total_rows == 6
        assert cursor.columns == HEADER
        assert connection.opened == ["r1", "r2"]

    def test_short_read_sets_finished(self, fake_connection, scripted_batch, results):
        connection = fake_connection([scripted_batch("B0", results=results)])
        cursor = make_cursor(connection)

        rows = ResumableStreamReader(connection).fetch(cursor, 100)

        assert ids(rows) == ["1", "2", "3", "4", "5", "6"]
        assert cursor.finished is True
        assert cursor.stream is None

    def test_empty_references_skipped(self, fake_connection, scripted_batch, csv_text):
        batch = scripted_batch(
            "B0",
            results={
                "r0": "",
                "r1": csv_text(HEADER, []),
                "r2": csv_text(HEADER, rows_of(1)),
            },
        )
        connection = fake_connection([batch])
        cursor = make_cursor(connection)

        rows = ResumableStreamReader(connection).fetch(cursor, 10)

        assert ids(rows) == ["1"]
        assert connection.opened == ["r0", "r1", "r2"]

    def test_no_references(self, fake_connection, scripted_batch):
        connection = fake_connection([scripted_batch("B0")])
        cursor = ExtractionCursor("750J", [])
        assert ResumableStreamReader(connection).fetch(cursor, 10) == []
        assert cursor.finished is True

    def test_max_rows_must_be_positive(self, fake_connection, scripted_batch):
        reader = ResumableStreamReader(fake_connection([scripted_batch("B0")]))
        with pytest.raises(ValueError):
            reader.fetch(ExtractionCursor("750J", []), 0)

    def test_cursors_are_independent(self, fake_connection, scripted_batch, results):
        """One reader serves two jobs without sharing position."""
        connection = fake_connection([scripted_batch("B0", results=results)])
        reader = ResumableStreamReader(connection)
        a = make_cursor(connection)
        b = make_cursor(connection)

        assert ids(reader.fetch(a, 2)) == ["1", "2"]
        assert ids(reader.fetch(b, 3)) == ["1", "2", "3"]
        assert ids(reader.fetch(a, 2)) == ["3", "4"]
        assert a.total_rows == 4
        assert b.total_rows == 3

    def test_csv_error_is_permanent(self, fake_connection, scripted_batch):
        """A field over the csv module size limit is not retried."""
        oversized = "x" * 200_000
        batch = scripted_batch("B0", results={"r1": f"Id,Name\n1,{oversized}\n"})
        connection = fake_connection([batch])
        cursor = make_cursor(connection)

        with pytest.raises(PermanentError) as excinfo:
            ResumableStreamReader(connection).fetch(cursor, 10)

        assert excinfo.value.result_id == "r1"
        assert cursor.stream is None

    def test_invalid_utf8_is_permanent_with_context(self, fake_connection, scripted_batch):
        """Undecodable bytes surface as a PermanentError naming the result."""
        batch = scripted_batch("B0", results={"r1": b"Id\n\xff\xfe\n"})
        connection = fake_connection([batch])
        cursor = make_cursor(connection)

        with pytest.raises(PermanentError) as excinfo:
            ResumableStreamReader(connection).fetch(cursor, 10)

        assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)
        assert excinfo.value.context == {
            "entity": "Account",
            "job_id": "750J",
            "batch_id": "B0",
            "result_id": "r1",
        }
        assert connection.opened == ["r1"]
        assert cursor.stream is None


class TestReconnect:
    """Reconnect and replay after I/O failures."""

    def test_replays_to_last_delivered_row(self, fake_connection, scripted_batch, results):
        """A reset after two rows resumes at the third without duplicates."""
        connection = fake_connection(
            [scripted_batch("B0", results=results)],
            stream_failures={"r1": [HEADER_BYTES + 2 * ROW_BYTES]},
        )
        cursor = make_cursor(connection)

        rows = ResumableStreamReader(connection).fetch(cursor, 100)

        assert ids(rows) == ["1", "2", "3", "4", "5", "6"]
        assert connection.opened == ["r1", "r1", "r2"]
        assert cursor.total_rows == 6

    def test_failure_across_fetch_calls(self, fake_connection, scripted_batch, results):
        """Rows handed out by an earlier fetch are skipped on replay."""
        connection = fake_connection(
            [scripted_batch("B0", results=results)],
            stream_failures={"r1": [HEADER_BYTES + 3 * ROW_BYTES]},
        )
        cursor = make_cursor(connection)
        reader = ResumableStreamReader(connection)

        assert ids(reader.fetch(cursor, 2)) == ["1", "2"]
        assert ids(reader.fetch(cursor, 2)) == ["3", "4"]
        assert connection.opened == ["r1", "r1"]

    def test_mismatch_raises(self, fake_connection, scripted_batch, results, csv_text):
        connection = fake_connection(
            [scripted_batch("B0", results=results)],
            stream_failures={"r1": [HEADER_BYTES + 2 * ROW_BYTES]},
            reopen_results={"r1": csv_text(HEADER, rows_of(1, 9, 3, 4))},
        )
        cursor = make_cursor(connection)

        with pytest.raises(RepositionMismatch) as excinfo:
            ResumableStreamReader(connection).fetch(cursor, 100)

        assert excinfo.value.skipped == 2
        assert excinfo.value.result_id == "r1"
        assert cursor.stream is None

    def test_failure_after_header_before_rows(self, fake_connection, scripted_batch, results, csv_text):
        """Nothing delivered yet: reopen, skip the header, compare nothing."""
        connection = fake_connection(
            [scripted_batch("B0", results=results)],
            stream_failures={"r1": [HEADER_BYTES]},
            reopen_results={"r1": csv_text(HEADER, rows_of(7, 8))},
        )
        cursor = make_cursor(connection)

        rows = ResumableStreamReader(connection).fetch(cursor, 100)

        assert ids(rows) == ["7", "8", "5", "6"]

    def test_open_failure_is_retried(self, fake_connection, scripted_batch, results):
        connection = fake_connection(
            [scripted_batch("B0", results=results)],
            stream_failures={"r1": [ConnectionRefusedError("refused")]},
        )
        cursor = make_cursor(connection)

        rows = ResumableStreamReader(connection).fetch(cursor, 100)

        assert ids(rows) == ["1", "2", "3", "4", "5", "6"]
        assert connection.opened == ["r1", "r1", "r2"]

    def test_retry_budget_exhausted(self, fake_connection, scripted_batch, results):
        connection = fake_connection(
            [scripted_batch("B0", results=results)],
            stream_failures={"r1": [HEADER_BYTES + ROW_BYTES, 0, 0, 0]},
        )
        cursor = make_cursor(connection)

        with pytest.raises(TransientStreamError) as excinfo:
            ResumableStreamReader(connection, retry_limit=3).fetch(cursor, 100)

        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.__cause__, ConnectionResetError)
        assert excinfo.value.job_id == "750J"
        assert connection.opened == ["r1"] * 4
        assert cursor.stream is None

    def test_zero_retry_limit_fails_immediately(self, fake_connection, scripted_batch, results):
        connection = fake_connection(
            [scripted_batch("B0", results=results)],
            stream_failures={"r1": [HEADER_BYTES]},
        )
        with pytest.raises(TransientStreamError):
            ResumableStreamReader(connection, retry_limit=0).fetch(make_cursor(connection), 100)
        assert connection.opened == ["r1"]
