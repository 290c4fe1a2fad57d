from __future__ import annotations

import json
import logging

from core.logging import JsonFormatter, instance_logger


def test_instance_logger_tags_records(caplog) -> None:
    log = instance_logger("bridge.test", "G1")
    with caplog.at_level(logging.INFO, logger="bridge.test"):
        log.info("session ready")

    record = caplog.records[-1]
    assert record.getMessage() == "[G1] session ready"
    assert record.instance_id == "G1"

    payload = json.loads(JsonFormatter().format(record))
    assert payload["instance"] == "G1"
    assert payload["level"] == "INFO"
