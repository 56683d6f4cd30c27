import argparse
import json
import logging
import sys

from common.events import GenerationDeltaEvent, NoticeEvent
from wordsmith import cli


def test_json_formatter_emits_one_object_per_record():
    record = logging.LogRecord(
        name="wordsmith.scheduler",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Dropping save for %s",
        args=("s1",),
        exc_info=None,
    )

    payload = json.loads(cli.JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "wordsmith.scheduler"
    assert payload["message"] == "Dropping save for s1"
    assert "ts" in payload


def test_print_event_routes_deltas_and_notices(capsys):
    cli.print_event(GenerationDeltaEvent(session_id="s1", text="abc"))
    cli.print_event(NoticeEvent(level="error", message="Session changed on the server."))

    captured = capsys.readouterr()
    assert captured.out == "abc"
    assert captured.err == "[error] Session changed on the server.\n"


def test_main_without_command_prints_help(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["wordsmith"])

    assert cli.main() == 0
    assert "usage: wordsmith" in capsys.readouterr().out


def test_missing_configuration_fails_fast(monkeypatch, capsys):
    monkeypatch.delenv("WRITING_SERVER_URL", raising=False)
    args = argparse.Namespace(verbose=False, quiet=True, log_format="text")

    async def action(workspace):
        raise AssertionError("should not run")

    assert cli.run_with_workspace(args, action) == 1
    assert "WRITING_SERVER_URL" in capsys.readouterr().out
