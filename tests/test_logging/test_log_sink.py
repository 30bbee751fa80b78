import json

from converse_agent.config import get_config, set_config
from converse_agent.logging import configure_logging, conversation_context, get_logger, set_log_sink


def test_log_lines_are_routed_to_sink_as_json():
    old_cfg = get_config().model_copy(deep=True)
    cfg = old_cfg.model_copy(deep=True)
    cfg.logging.format = "json"
    set_config(cfg)
    lines: list[str] = []
    set_log_sink(lines.append)
    try:
        configure_logging("INFO")
        logger = get_logger("converse_agent.tests.sink")
        logger.debug("Hidden detail")
        logger.info("Tool executed", tool="lookup", success=True)
    finally:
        set_log_sink(None)
        set_config(old_cfg)
        configure_logging()

    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "Tool executed"
    assert record["tool"] == "lookup"
    assert record["level"] == "info"


def test_conversation_context_tags_lines_with_session_id():
    old_cfg = get_config().model_copy(deep=True)
    cfg = old_cfg.model_copy(deep=True)
    cfg.logging.format = "json"
    set_config(cfg)
    lines: list[str] = []
    set_log_sink(lines.append)
    try:
        configure_logging("INFO")
        logger = get_logger("converse_agent.tests.context")
        with conversation_context("s-42", turn=3):
            logger.info("Calling model")
        logger.info("Outside turn")
    finally:
        set_log_sink(None)
        set_config(old_cfg)
        configure_logging()

    inside, outside = (json.loads(line) for line in lines)
    assert inside["session_id"] == "s-42"
    assert inside["turn"] == 3
    assert "session_id" not in outside
