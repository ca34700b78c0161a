# ============================================================================
# STRUCTURED LOGGING TESTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Tests - Logging context
# PURPOSE: Verify task-local log context, formatters and checkpoints
# CREATED: 17 OCT 2026
# ============================================================================
"""
Structured Logging Tests

Covers:
1. log_context nesting and restoration
2. Concurrent asyncio tasks keep separate contexts
3. StructuredFormatter / HumanFormatter output
4. log_checkpoint payload

Run with:
    pytest tests/test_logging.py -v
"""

import asyncio
import json
import logging

from core.logging import (
    ComponentType,
    HumanFormatter,
    StructuredFormatter,
    get_current_context,
    get_logger,
    log_checkpoint,
    log_context,
)


def make_record(message="Acquiring lock", **extra):
    record = logging.LogRecord("infrastructure.locking", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ============================================================================
# CONTEXT
# ============================================================================

class TestLogContext:

    def test_nesting_inherits_and_restores(self):
        with log_context(resource_id="inst-1", operation="backup"):
            with log_context(phase="BOSH_STOP"):
                inner = get_current_context()
                assert (inner.resource_id, inner.operation, inner.phase) == ("inst-1", "backup", "BOSH_STOP")
            assert get_current_context().phase is None
        assert get_current_context().to_dict() == {}

    def test_tasks_do_not_share_context(self):
        async def worker(resource_id, seen):
            with log_context(resource_id=resource_id):
                await asyncio.sleep(0.01)
                seen[resource_id] = get_current_context().resource_id

        async def scenario():
            seen = {}
            await asyncio.gather(worker("inst-1", seen), worker("inst-2", seen))
            return seen

        assert asyncio.run(scenario()) == {"inst-1": "inst-1", "inst-2": "inst-2"}


# ============================================================================
# FORMATTERS
# ============================================================================

class TestFormatters:

    def test_structured_output(self):
        with log_context(resource_id="inst-1", resource_type="deploymentlocks"):
            output = json.loads(StructuredFormatter().format(make_record(extra={"attempt": 1})))

        assert output["message"] == "Acquiring lock"
        assert output["level"] == "INFO"
        assert output["context"] == {"resource_id": "inst-1", "resource_type": "deploymentlocks"}
        assert output["data"] == {"attempt": 1}
        assert output["source"]["line"] == 10

    def test_human_output(self):
        with log_context(resource_id="inst-1", phase="PUT_FILE"):
            line = HumanFormatter().format(make_record())

        assert "INFO" in line
        assert "[id=inst-1, phase=PUT_FILE]" in line
        assert line.endswith("infrastructure.locking [id=inst-1, phase=PUT_FILE]: Acquiring lock")

    def test_context_logger_tags_component(self, caplog):
        logger = get_logger("services.control_plane", ComponentType.SERVICE)
        with caplog.at_level(logging.INFO, logger="services.control_plane"):
            with log_context(owner_id="replica-1"):
                logger.info("Control plane started")

        record = caplog.records[-1]
        assert record.extra == {"owner_id": "replica-1", "component": "service"}


# ============================================================================
# CHECKPOINTS
# ============================================================================

class TestCheckpoint:

    def test_checkpoint_carries_context(self, caplog):
        with caplog.at_level(logging.INFO, logger="checkpoint"):
            with log_context(resource_id="restore-1", phase="ATTACH_DISK"):
                log_checkpoint("phase_advanced", {"to": "trigger_PUT_FILE"})

        record = caplog.records[-1]
        assert record.getMessage() == "CHECKPOINT: phase_advanced"
        assert record.extra["checkpoint"] == "phase_advanced"
        assert record.extra["resource_id"] == "restore-1"
        assert record.extra["phase"] == "ATTACH_DISK"
        assert record.extra["data"] == {"to": "trigger_PUT_FILE"}
