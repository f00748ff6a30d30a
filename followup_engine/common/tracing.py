# followup_engine/common/tracing.py
from __future__ import annotations
import contextlib
import logging, uuid
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

_TRACE_ID: ContextVar[Optional[str]] = ContextVar("_TRACE_ID", default=None)
# follow-up run being dispatched, so worker logs can be grepped per run
_RUN_ID: ContextVar[Optional[str]] = ContextVar("_RUN_ID", default=None)
_FACTORY_INSTALLED = False

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [trace=%(trace_id)s run=%(run_id)s]: %(message)s"


def new_trace_id() -> str:
    return str(uuid.uuid4())

def get_trace_id() -> Optional[str]:
    return _TRACE_ID.get()

def get_run_id() -> Optional[str]:
    return _RUN_ID.get()


@contextlib.contextmanager
def trace_scope(trace_id: Optional[str] = None, *, run_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a trace id (minted when not given) and optionally a run id for the
    duration of the block; previous values are restored on exit.

        with trace_scope(run_id=item.run_id):
            await dispatch(item)
    """
    tid = trace_id or new_trace_id()
    trace_token = _TRACE_ID.set(tid)
    run_token = _RUN_ID.set(run_id) if run_id is not None else None
    try:
        yield tid
    finally:
        if run_token is not None:
            _RUN_ID.reset(run_token)
        _TRACE_ID.reset(trace_token)


def _install_logrecord_factory() -> None:
    """Every LogRecord gets .trace_id and .run_id, third-party loggers included."""
    global _FACTORY_INSTALLED
    if _FACTORY_INSTALLED:
        return
    old_factory: Callable[..., logging.LogRecord] = logging.getLogRecordFactory()  # type: ignore

    def record_factory(*args, **kwargs) -> logging.LogRecord:  # type: ignore
        record = old_factory(*args, **kwargs)
        if not hasattr(record, "trace_id"):
            record.trace_id = get_trace_id() or "-"
        if not hasattr(record, "run_id"):
            record.run_id = get_run_id() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    _FACTORY_INSTALLED = True


def setup_logging(level: int | str = logging.INFO) -> None:
    _install_logrecord_factory()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # one line per provider call is enough; httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
