import pytest

from falcon_client.api.schemas import AnalysisFilters
from falcon_client.core.errors import TransientNotFound, TransportFailure
from falcon_client.core.poller import JobPoller, PollerState

PROCESSING = {"status": "processing", "progress": 40}
COMPLETE = {
    "status": "complete",
    "summary": {"total_streams": 10, "issues_found": 2},
    "streams": [
        {"id": "s-1", "client_ip": "10.0.0.5", "server_ip": "10.0.0.9", "protocol": "TCP", "severity": "critical"},
        {"id": "s-2", "client_ip": "10.0.0.5", "server_ip": "10.0.0.9", "protocol": "TLS", "severity": "warning"},
    ],
}


def _states(events):
    return [event.state for event in events]


def test_completes_after_processing(scripted, scheduler, clock):
    backend = scripted(PROCESSING, PROCESSING, COMPLETE)
    poller = JobPoller(backend, scheduler)
    events = []
    poller.subscribe(events.append)

    poller.start("abc123")
    scheduler.run_until_idle()

    assert len(backend.calls) == 3
    assert _states(events).count(PollerState.COMPLETE) == 1
    assert events[-1].state == PollerState.COMPLETE
    assert events[-1].job.summary.total_streams == 10
    assert len(events[-1].job.streams) == 2
    assert 40 in [event.progress for event in events if event.state == PollerState.POLLING]
    assert clock.now == pytest.approx(2.0)
    assert scheduler.pending() == 0


def test_not_found_gives_up_after_five_attempts(scripted, scheduler, clock):
    backend = scripted(TransientNotFound("xyz"))
    poller = JobPoller(backend, scheduler)

    poller.start("xyz")
    scheduler.run_until_idle()

    assert len(backend.calls) == 5
    assert poller.state == PollerState.FAILED
    assert "not found" in poller.snapshot.error
    assert poller.snapshot.not_found_attempts == 5
    assert clock.now == pytest.approx(4.0)
    assert scheduler.pending() == 0


def test_not_found_counter_resets_once_job_appears(scripted, scheduler):
    backend = scripted(TransientNotFound("j"), TransientNotFound("j"), PROCESSING, COMPLETE)
    poller = JobPoller(backend, scheduler)
    events = []
    poller.subscribe(events.append)

    poller.start("j")
    scheduler.run_until_idle()

    assert PollerState.RETRYING_NOT_FOUND in _states(events)
    assert poller.state == PollerState.COMPLETE
    assert poller.snapshot.not_found_attempts == 0


def test_transport_failure_is_not_retried(scripted, scheduler):
    backend = scripted(TransportFailure("connection refused"))
    poller = JobPoller(backend, scheduler)

    poller.start("j")
    scheduler.run_until_idle()

    assert len(backend.calls) == 1
    assert poller.state == PollerState.FAILED
    assert poller.snapshot.error == "connection refused"


def test_transport_failure_without_message_uses_fallback(scripted, scheduler):
    poller = JobPoller(scripted(TransportFailure()), scheduler)
    poller.start("j")
    scheduler.run_until_idle()
    assert poller.snapshot.error == "Failed to load analysis"


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"status": "failed", "error": "pcap: unknown link type"}, "pcap: unknown link type"),
        ({"status": "failed"}, "Analysis failed"),
    ],
)
def test_backend_failure_message(scripted, scheduler, payload, message):
    poller = JobPoller(scripted(payload), scheduler)
    poller.start("j")
    scheduler.run_until_idle()
    assert poller.state == PollerState.FAILED
    assert poller.snapshot.error == message


def test_active_filters_pause_polling_while_processing(scripted, scheduler):
    backend = scripted(PROCESSING)
    poller = JobPoller(backend, scheduler)
    filters = AnalysisFilters(protocol="TLS")

    poller.start("j", filters)
    scheduler.run_until_idle()

    assert backend.calls == [("j", filters)]
    assert poller.state == PollerState.POLLING
    assert poller.snapshot.progress == 40
    assert scheduler.pending() == 0


def test_filter_edits_are_debounced(scripted, scheduler, clock):
    backend = scripted(PROCESSING)
    poller = JobPoller(backend, scheduler)
    poller.start("j")
    scheduler.advance(0)
    assert len(backend.calls) == 1

    poller.set_filters(AnalysisFilters(src_ip="10."))
    scheduler.advance(200)
    poller.set_filters(AnalysisFilters(src_ip="10.0"))
    scheduler.advance(200)
    last = AnalysisFilters(src_ip="10.0.0")
    poller.set_filters(last)
    scheduler.run_until_idle()

    assert len(backend.calls) == 2
    assert backend.calls[1] == ("j", last)
    assert clock.now == pytest.approx(0.9)


def test_filter_edit_while_retrying_not_found_is_debounced(scripted, scheduler, clock):
    backend = scripted(TransientNotFound("j"))
    poller = JobPoller(backend, scheduler)
    poller.start("j")
    scheduler.advance(0)
    assert poller.state == PollerState.RETRYING_NOT_FOUND

    filters = AnalysisFilters(protocol="TLS")
    poller.set_filters(filters)
    scheduler.advance(499)
    assert len(backend.calls) == 1

    scheduler.advance(2)
    assert backend.calls[1] == ("j", filters)
    assert poller.snapshot.not_found_attempts == 2

    scheduler.run_until_idle()
    assert len(backend.calls) == 5
    assert poller.state == PollerState.FAILED
    assert clock.now == pytest.approx(3.5)


def test_progress_can_go_back_to_zero(scripted, scheduler):
    backend = scripted(PROCESSING, {"status": "processing", "progress": 0}, COMPLETE)
    poller = JobPoller(backend, scheduler)
    events = []
    poller.subscribe(events.append)

    poller.start("j")
    scheduler.run_until_idle()

    assert [event.progress for event in events if event.state == PollerState.POLLING] == [0, 40, 0]


def test_cancel_prevents_scheduled_ticks(scripted, scheduler):
    backend = scripted(PROCESSING)
    poller = JobPoller(backend, scheduler)

    poller.start("j")
    poller.cancel()
    poller.cancel()
    scheduler.run_until_idle()

    assert backend.calls == []
    assert poller.state == PollerState.IDLE


def test_cancel_mid_sequence_stops_polling(scripted, scheduler):
    backend = scripted(PROCESSING)
    poller = JobPoller(backend, scheduler)

    poller.start("j")
    scheduler.advance(1500)
    poller.cancel()
    scheduler.run_until_idle()

    assert len(backend.calls) == 2
    assert poller.state == PollerState.IDLE


def test_cancel_on_fresh_poller_is_safe(scripted, scheduler):
    poller = JobPoller(scripted(PROCESSING), scheduler)
    poller.cancel()
    assert poller.state == PollerState.IDLE


def test_rapid_restarts_issue_a_single_query(scripted, scheduler):
    backend = scripted(COMPLETE)
    poller = JobPoller(backend, scheduler)

    poller.start("a")
    poller.start("b")
    poller.set_filters(None)
    poller.start("c")
    scheduler.run_until_idle()

    assert backend.calls == [("c", None)]
    assert poller.snapshot.job.id == "c"


def test_restart_during_query_discards_stale_response(scripted, scheduler):
    backend = scripted(COMPLETE)
    poller = JobPoller(backend, scheduler)
    events = []
    poller.subscribe(events.append)

    def restart(call_number):
        if call_number == 1:
            poller.start("job-b")

    backend.on_call = restart
    poller.start("job-a")
    scheduler.run_until_idle()

    assert [call[0] for call in backend.calls] == ["job-a", "job-b"]
    assert backend.max_in_flight == 1
    completes = [event for event in events if event.state == PollerState.COMPLETE]
    assert len(completes) == 1
    assert completes[0].job.id == "job-b"


def test_filters_on_complete_job_requery(scripted, scheduler):
    backend = scripted(COMPLETE)
    poller = JobPoller(backend, scheduler)
    events = []
    poller.start("j")
    scheduler.run_until_idle()
    first_job = poller.snapshot.job

    poller.subscribe(events.append)
    poller.set_filters(AnalysisFilters(protocol="TLS"))
    assert poller.state == PollerState.POLLING
    assert poller.snapshot.job == first_job
    scheduler.run_until_idle()

    assert len(backend.calls) == 2
    assert backend.calls[1][1] == AnalysisFilters(protocol="TLS")
    assert _states(events) == [PollerState.POLLING, PollerState.COMPLETE]


def test_start_requires_job_id(scripted, scheduler):
    poller = JobPoller(scripted(PROCESSING), scheduler)
    with pytest.raises(ValueError):
        poller.start("")


def test_unsubscribe(scripted, scheduler):
    poller = JobPoller(scripted(COMPLETE), scheduler)
    events = []
    unsubscribe = poller.subscribe(events.append)
    unsubscribe()
    unsubscribe()
    poller.start("j")
    scheduler.run_until_idle()
    assert events == []


def test_polls_stub_backend_until_job_is_registered(backend, stub_backend, scheduler):
    _, state = stub_backend
    poller = JobPoller(backend, scheduler)

    def register(snapshot):
        if snapshot.state == PollerState.RETRYING_NOT_FOUND and snapshot.not_found_attempts == 2:
            state["jobs"]["job-1"] = COMPLETE

    poller.subscribe(register)
    poller.start("job-1")
    scheduler.run_until_idle()

    assert poller.state == PollerState.COMPLETE
    assert len(state["requests"]) == 3
    assert [s.protocol for s in poller.snapshot.job.streams] == ["TCP", "TLS"]
