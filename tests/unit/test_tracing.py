import logging

from followup_engine.common.tracing import get_run_id, get_trace_id, setup_logging, trace_scope


def test_trace_scope_binds_and_restores():
    assert get_trace_id() is None
    with trace_scope("outer") as outer:
        assert outer == "outer"
        with trace_scope(run_id="run-1") as inner:
            assert get_trace_id() == inner != "outer"
            assert get_run_id() == "run-1"
        assert get_trace_id() == "outer"
        assert get_run_id() is None
    assert get_trace_id() is None


def test_log_records_carry_trace_and_run(caplog):
    setup_logging()
    log = logging.getLogger("followups.test")
    with caplog.at_level(logging.INFO, logger="followups.test"):
        with trace_scope("t-42", run_id="r-7"):
            log.info("inside")
        log.info("outside")
    inside, outside = caplog.records
    assert (inside.trace_id, inside.run_id) == ("t-42", "r-7")
    assert (outside.trace_id, outside.run_id) == ("-", "-")
