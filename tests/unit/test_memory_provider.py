"""Unit tests for the in-memory provider."""

import threading
from datetime import timedelta

from conftest import FakeClock, RecordingJob

from jobdrain.providers.memory import MemoryProvider
from jobdrain.queue import InspectsJobs, JobStatus, Provider, ReportsAvailability


def _fill(provider: MemoryProvider, count: int, queue: str = "q") -> None:
    for index in range(count):
        provider.push(RecordingJob(label=f"job-{index}", queue=queue))


def test_memory_provider_satisfies_contracts(provider: MemoryProvider) -> None:
    """The reference provider should implement every optional capability."""
    assert isinstance(provider, Provider)
    assert isinstance(provider, ReportsAvailability)
    assert isinstance(provider, InspectsJobs)


def test_pop_returns_available_jobs_then_nothing(provider: MemoryProvider) -> None:
    """Popping more than is available should lease all, then none."""
    _fill(provider, 3)

    first = provider.pop("q", 5)
    second = provider.pop("q", 5)

    assert [job.job.label for job in first] == ["job-0", "job-1", "job-2"]
    assert all(provider.find(job.id).status == JobStatus.RUNNING for job in first)
    assert all(job.attempts == 1 for job in first)
    assert second == []
    assert provider.pending_count("q") == 0


def test_pop_only_reads_requested_queue(provider: MemoryProvider) -> None:
    """Jobs on other queues should not be claimed or counted."""
    _fill(provider, 2, queue="a")
    _fill(provider, 1, queue="b")

    assert provider.pending_count("a") == 2
    assert provider.pending_count("b") == 1
    assert len(provider.pop("b", 10)) == 1
    assert provider.pending_count("a") == 2


def test_concurrent_pops_never_overlap(provider: MemoryProvider) -> None:
    """Two callers popping at once should receive disjoint jobs."""
    _fill(provider, 50)
    results: list[list[str]] = [[], []]
    barrier = threading.Barrier(2)

    def _pop(slot: int) -> None:
        barrier.wait()
        for _ in range(10):
            results[slot].extend(job.id for job in provider.pop("q", 3))

    threads = [threading.Thread(target=_pop, args=(slot,)) for slot in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert set(results[0]).isdisjoint(results[1])
    assert len(results[0]) + len(results[1]) == 50


def test_expired_lease_makes_job_claimable_again(
    provider: MemoryProvider, clock: FakeClock
) -> None:
    """A crashed run's job should come back once its lease runs out."""
    _fill(provider, 1)
    (leased,) = provider.pop("q", 1)

    clock.advance(59)
    assert provider.pop("q", 1) == []

    clock.advance(2)
    (reclaimed,) = provider.pop("q", 1)
    assert reclaimed.id == leased.id
    assert reclaimed.attempts == 2


def test_job_timeout_sets_lease_length(provider: MemoryProvider, clock: FakeClock) -> None:
    """A job's own timeout should replace the provider lease length."""
    provider.push(RecordingJob(label="slow", queue="q", timeout=5))
    (leased,) = provider.pop("q", 1)

    assert leased.record.lease.locked_until == clock.now + timedelta(seconds=5)


def test_renew_restarts_lease_when_job_starts(provider: MemoryProvider, clock: FakeClock) -> None:
    """A job reached late in a batch should get its full timeout from start time."""
    provider.push(RecordingJob(label="late-in-batch", queue="q", timeout=30))
    (leased,) = provider.pop("q", 1)

    clock.advance(20)
    assert leased.renew() is True

    expected = clock.now + timedelta(seconds=30)
    assert leased.record.lease.locked_until == expected
    assert provider.find(leased.id).lease.locked_until == expected


def test_renew_refuses_after_another_claim(provider: MemoryProvider, clock: FakeClock) -> None:
    """Once a lapsed job is claimed again, the earlier claim no longer owns it."""
    provider.push(RecordingJob(label="contested", queue="q", timeout=5))
    (first,) = provider.pop("q", 1)

    clock.advance(6)
    (second,) = provider.pop("q", 1)

    assert first.renew() is False
    assert second.renew() is True
    assert provider.find(first.id).attempts == 2


def test_delayed_job_waits_until_available(provider: MemoryProvider, clock: FakeClock) -> None:
    """Delayed jobs should be invisible until their delay passes."""
    provider.push(RecordingJob(label="later", queue="q").with_delay(30))

    assert provider.pending_count("q") == 0
    assert provider.next_available_at("q") == clock.now + timedelta(seconds=30)

    clock.advance(30)
    assert provider.pending_count("q") == 1
    assert provider.next_available_at("q") is None


def test_pop_orders_by_availability(provider: MemoryProvider, clock: FakeClock) -> None:
    """Jobs should drain oldest-available first, insertion order breaking ties."""
    provider.push(RecordingJob(label="delayed", queue="q").with_delay(10))
    provider.push(RecordingJob(label="first", queue="q"))
    provider.push(RecordingJob(label="second", queue="q"))
    clock.advance(10)

    labels = [job.job.label for job in provider.pop("q", 3)]

    assert labels == ["first", "second", "delayed"]


def test_failure_with_retries_left_releases_job(
    provider: MemoryProvider, clock: FakeClock
) -> None:
    """A failed attempt with retries left should wait retry_after, then return."""
    provider.push(RecordingJob(label="flaky", queue="q", tries=2, retry_after=15))
    (leased,) = provider.pop("q", 1)

    final = leased.fail(RuntimeError("temporary"))
    record = provider.find(leased.id)

    assert final is False
    assert record.status == JobStatus.PENDING
    assert record.lease.failed is True
    assert record.last_error == "RuntimeError: temporary"
    assert provider.pending_count("q") == 0

    clock.advance(15)
    (retried,) = provider.pop("q", 1)
    assert retried.attempts == 2
    assert retried.record.lease.failed is False


def test_final_failure_retains_failed_record_and_runs_hook(
    provider: MemoryProvider,
) -> None:
    """Running out of tries should keep a failed record and call failure callbacks."""
    seen: list[str] = []
    provider.push(RecordingJob(label="doomed", queue="q").catch(lambda exc: seen.append(str(exc))))
    (leased,) = provider.pop("q", 1)

    final = leased.fail(RuntimeError("fatal"))
    record = provider.find(leased.id)

    assert final is True
    assert seen == ["fatal"]
    assert record.status == JobStatus.FAILED
    assert record.lease.failed is True
    assert record.lease.locked_until is None
    assert provider.failed_jobs("q") == [record]
    assert provider.pop("q", 1) == []


def test_retry_and_forget_failed_records(provider: MemoryProvider) -> None:
    """Operators should be able to requeue or drop failed records."""
    provider.push(RecordingJob(label="doomed", queue="q"))
    (leased,) = provider.pop("q", 1)
    leased.fail(RuntimeError("fatal"))

    revived = provider.retry(leased.id)

    assert revived is not None
    assert revived.status == JobStatus.PENDING
    assert revived.attempts == 0
    assert provider.retry(leased.id) is None
    assert provider.pending_count("q") == 1
    assert provider.forget(leased.id) is True
    assert provider.forget(leased.id) is False
    assert provider.find(leased.id) is None


def test_in_queue_matches_equal_waiting_jobs(provider: MemoryProvider) -> None:
    """Equal jobs should be detected until the record is deleted."""
    provider.push(RecordingJob(label="same", queue="q"))

    assert provider.in_queue(RecordingJob(label="same", queue="q")) is True
    assert provider.in_queue(RecordingJob(label="other", queue="q")) is False
    assert provider.in_queue(RecordingJob(label="same", queue="q"), "elsewhere") is False

    (leased,) = provider.pop("q", 1)
    leased.delete()
    assert provider.in_queue(RecordingJob(label="same", queue="q")) is False
