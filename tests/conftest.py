"""Shared fixtures: a scripted in-memory bulk API and REST query API."""

import io
from dataclasses import dataclass, field, replace
from typing import Optional

import pytest

from bulkextract.config import BulkConfig
from bulkextract.models import BatchInfo, BatchState, JobInfo, JobState, ResultReference


def make_csv(header: list[str], rows: list[list[str]]) -> str:
    lines = [",".join(header)] + [",".join(row) for row in rows]
    return "\n".join(lines) + "\n"


class FlakyStream(io.BytesIO):
    """BytesIO that raises ConnectionResetError once ``fail_after`` bytes were read."""

    def __init__(self, data: bytes, fail_after: Optional[int] = None):
        super().__init__(data)
        self.fail_after = fail_after

    def _limit(self, size):
        if self.fail_after is None:
            return size
        remaining = self.fail_after - self.tell()
        if remaining <= 0:
            raise ConnectionResetError("Connection reset by peer")
        if size is None or size < 0:
            return remaining
        return min(size, remaining)

    def read(self, size=-1):
        return super().read(self._limit(size))

    def read1(self, size=-1):
        return super().read1(self._limit(size))


@dataclass
class ScriptedBatch:
    """A batch whose status polls walk through ``states``; the last state sticks."""
    id: str
    states: list[BatchState] = field(default_factory=lambda: [BatchState.COMPLETED])
    results: dict[str, str] = field(default_factory=dict)
    state_message: Optional[str] = None
    polls: int = 0

    def observed_state(self) -> BatchState:
        return self.states[max(0, min(self.polls, len(self.states)) - 1)]

    def poll(self) -> BatchState:
        state = self.states[min(self.polls, len(self.states) - 1)]
        self.polls += 1
        return state


class FakeBulkConnection:
    """
    In-memory BulkConnection.

    The first scripted batch is the one returned by submit_batch; the rest
    show up in list_batches as PK chunks. ``stream_failures`` maps a result
    id to one entry per open: None (no failure), a byte count after which
    the stream resets, or an exception raised by the open itself.
    ``reopen_results`` maps a result id to the text served when it is
    opened again.
    """

    def __init__(self, batches: list[ScriptedBatch], *, job_id: str = "750J", stream_failures=None, reopen_results=None):
        self.batches = list(batches)
        self.job_id = job_id
        self.stream_failures = {k: list(v) for k, v in (stream_failures or {}).items()}
        self.reopen_results = dict(reopen_results or {})
        self.calls: list[str] = []
        self.submitted: list[bytes] = []
        self.opened: list[str] = []
        self.pk_chunk_size: Optional[int] = None
        self.job: Optional[JobInfo] = None

    def _batch(self, batch_id: str) -> ScriptedBatch:
        return next(b for b in self.batches if b.id == batch_id)

    def _info(self, batch: ScriptedBatch, state: BatchState) -> BatchInfo:
        message = batch.state_message if state == BatchState.FAILED else None
        return BatchInfo(id=batch.id, job_id=self.job_id, state=state, state_message=message)

    def create_job(self, job: JobInfo) -> JobInfo:
        self.calls.append("create_job")
        self.job = replace(job, id=self.job_id)
        return self.job

    def enable_pk_chunking(self, chunk_size: int) -> None:
        self.calls.append("enable_pk_chunking")
        self.pk_chunk_size = chunk_size

    def get_job_status(self, job_id: str) -> JobInfo:
        self.calls.append("get_job_status")
        return self.job

    def close_job(self, job_id: str) -> JobInfo:
        self.calls.append("close_job")
        self.job = replace(self.job, state=JobState.CLOSED)
        return self.job

    def submit_batch(self, job_id: str, query: bytes) -> BatchInfo:
        self.calls.append("submit_batch")
        self.submitted.append(query)
        return self._info(self.batches[0], BatchState.QUEUED)

    def get_batch_status(self, job_id: str, batch_id: str) -> BatchInfo:
        self.calls.append("get_batch_status")
        batch = self._batch(batch_id)
        return self._info(batch, batch.poll())

    def list_batches(self, job_id: str) -> list[BatchInfo]:
        self.calls.append("list_batches")
        return [self._info(b, b.observed_state()) for b in self.batches]

    def list_result_references(self, job_id: str, batch_id: str) -> list[ResultReference]:
        self.calls.append("list_result_references")
        return [ResultReference(batch_id, result_id) for result_id in self._batch(batch_id).results]

    def open_result_stream(self, job_id: str, batch_id: str, result_id: str):
        self.opened.append(result_id)
        failures = self.stream_failures.get(result_id)
        fail_after = failures.pop(0) if failures else None
        if isinstance(fail_after, BaseException):
            raise fail_after
        text = self._batch(batch_id).results[result_id]
        if self.opened.count(result_id) > 1 and result_id in self.reopen_results:
            text = self.reopen_results[result_id]
        data = text if isinstance(text, bytes) else text.encode("utf-8")
        return FlakyStream(data, fail_after)


class FakeQueryApi:
    """In-memory QueryApi returning scripted responses in call order."""

    def __init__(self, responses=None, more=None):
        self.responses = list(responses or [])
        self.more = dict(more or {})
        self.queries: list[tuple[str, bool]] = []
        self.followed: list[str] = []

    def query(self, soql: str, include_deleted: bool = False) -> dict:
        self.queries.append((soql, include_deleted))
        return self.responses.pop(0)

    def query_more(self, next_records_url: str) -> dict:
        self.followed.append(next_records_url)
        return self.more[next_records_url]


class SleepRecorder:
    """Stands in for time.sleep and records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def csv_text():
    return make_csv


@pytest.fixture
def fake_connection():
    """Factory for FakeBulkConnection."""
    return FakeBulkConnection


@pytest.fixture
def scripted_batch():
    """Factory for ScriptedBatch."""
    return ScriptedBatch


@pytest.fixture
def fake_query_api():
    """Factory for FakeQueryApi."""
    return FakeQueryApi


@pytest.fixture
def bulk_config():
    return BulkConfig()


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config lookups away from the real ~/.config/bulkextract."""
    home = tmp_path / "bulkextract_home"
    monkeypatch.setenv("BULKEXTRACT_HOME", str(home))
    return home
