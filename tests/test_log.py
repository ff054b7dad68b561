"""Unit tests for execution-scoped logging."""

import logging

from lza_orchestrator.core.log import execution_logger


def test_execution_id_prefix(caplog):
    logger = execution_logger('exec-42')

    with caplog.at_level(logging.INFO, logger='lza_orchestrator'):
        logger.info("Created %s", "Sandbox")

    assert caplog.records[-1].getMessage() == "[exec-42] Created Sandbox"


def test_executions_do_not_share_ids():
    first = execution_logger('a')
    second = execution_logger('b')

    assert first.process("m", {})[0] == "[a] m"
    assert second.process("m", {})[0] == "[b] m"
    assert first.logger is second.logger
