from querystream.config import get_settings
from querystream.utils.logging import configure_logging, get_logger, get_module_logger
from querystream.utils.tracing import current_trace_id, generate_trace_id, reset_trace_id, set_trace_id, get_trace_id


def test_logger_configuration(monkeypatch):
    monkeypatch.setenv("LLM__OPENROUTER_API_KEY", "test-key")
    get_settings.cache_clear()
    configure_logging()
    logger = get_logger("test")
    assert logger is not None
    get_settings.cache_clear()


def test_module_logger():
    assert get_module_logger() is not None


def test_trace_id_generation():
    trace_id = generate_trace_id()
    assert len(trace_id) == 36  # UUID format
    assert '-' in trace_id


def test_trace_id_context():
    test_id = "test-trace-123"
    token = set_trace_id(test_id)
    assert current_trace_id() == test_id
    assert get_trace_id() == test_id
    reset_trace_id(token)


def test_trace_id_reset():
    outer = set_trace_id("outer")
    inner = set_trace_id("inner")
    reset_trace_id(inner)
    assert current_trace_id() == "outer"
    reset_trace_id(outer)
