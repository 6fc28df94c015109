import json
import logging

from prometheus_client.parser import text_string_to_metric_families

from shipyard import metrics
from shipyard.logging_config import ConsoleFormatter, JSONFormatter


def make_record(msg, level=logging.INFO, **extra):
    record = logging.LogRecord("deploy.orchestrator", level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context():
    line = JSONFormatter().format(make_record("Switching traffic", target="app1", state="traffic_switched"))
    entry = json.loads(line)
    assert entry["event"] == "Switching traffic"
    assert entry["level"] == "INFO"
    assert entry["target"] == "app1"
    assert entry["state"] == "traffic_switched"
    assert "image" not in entry


def test_console_formatter_plain():
    line = ConsoleFormatter(use_color=False).format(make_record("hello", level=logging.WARNING))
    assert line.endswith("[WARNING] hello")
    assert "\033[" not in line


def test_metrics_textfile(tmp_path):
    path = tmp_path / "shipyard.prom"
    metrics.record_attempt("app9", "direct", "success", 12.5)
    metrics.write_metrics(str(path))
    samples = {
        (s.name, tuple(sorted(s.labels.items()))): s.value
        for family in text_string_to_metric_families(path.read_text())
        for s in family.samples
    }
    key = ("shipyard_deployments_total", (("outcome", "success"), ("strategy", "direct"), ("target", "app9")))
    assert samples[key] >= 1


def test_metrics_textfile_unwritable(tmp_path):
    # logs a warning, does not raise
    metrics.write_metrics(str(tmp_path / "missing-dir" / "shipyard.prom"))
