"""
Tests for the CLI entry point.
"""

import json
import sys
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import structlog

from services.giving_sync.ledger_client import TokenStore
from services.giving_sync.main import create_parser, main
from services.giving_sync.mappings import MappingTable
from services.giving_sync.models import SyncType
from services.giving_sync.watermark import RefundWatermarkStore

from .factories import FakeClock


@pytest.fixture(autouse=True)
def _logs_to_stderr():
    """Route structlog to stderr (as ``main`` does) so stdout carries only the CLI's JSON."""
    structlog.configure(logger_factory=lambda *args: structlog.PrintLogger(sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli(config, engine):
    """Run ``main`` against the test settings and engine; returns (exit code, stdout JSON)."""

    def invoke(capsys, *argv):
        with patch("services.giving_sync.main.settings", return_value=config), \
                patch("services.giving_sync.main.build_engine", return_value=engine), \
                patch("services.giving_sync.main.configure_logging"):
            code = main(list(argv))
        out = capsys.readouterr().out
        return code, json.loads(out) if out.strip() else None

    return invoke


class TestParser:
    def test_run_options(self):
        args = create_parser().parse_args(["run", "batch", "--days", "30", "--reset-window"])

        assert args.command == "run"
        assert args.sync_type == "batch"
        assert args.days == 30
        assert args.reset_window is True
        assert args.preview is False

    def test_unknown_sync_type_is_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["run", "paypal"])

    def test_mapping_set_requires_class(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["mapping", "set", "F1"])


class TestCommands:
    def test_mapping_set_and_list(self, cli, capsys, engine):
        code, saved = cli(capsys, "mapping", "set", "F1", "--class", " General ", "--location", "North", "--name", "General Fund")

        assert code == 0
        assert saved["class_name"] == "General"
        assert MappingTable(engine).get("F1").location_name == "North"

        code, listed = cli(capsys, "mapping", "list")
        assert [m["category_id"] for m in listed] == ["F1"]

    def test_store_token(self, cli, capsys, engine):
        code, out = cli(
            capsys,
            "store-token", "--realm-id", "123", "--access-token", "a", "--refresh-token", "r", "--expires-in", "60",
        )

        assert code == 0
        assert out["realm_id"] == "123"
        stored = TokenStore(engine).load("123")
        assert stored.refresh_token == "r"

    def test_prune_refunds(self, cli, capsys, engine):
        store = RefundWatermarkStore(engine, clock=FakeClock(datetime(2020, 1, 1, tzinfo=timezone.utc)))
        store.set(SyncType.REGISTRATIONS, "R1", 500)

        code, out = cli(capsys, "prune-refunds", "--older-than-days", "30")

        assert code == 0
        assert out["removed"] == 1
        assert store.get(SyncType.REGISTRATIONS, "R1") is None

    def test_logs_empty(self, cli, capsys):
        code, out = cli(capsys, "logs", "--type", "stripe")

        assert code == 0
        assert out == []

    def test_run_initializes_and_reports(self, cli, capsys, source, ledger):
        with patch("services.giving_sync.main.SourceClient") as source_cls, \
                patch("services.giving_sync.main.make_ledger_factory", return_value=lambda: ledger):
            source_cls.return_value.__enter__.return_value = source
            code, out = cli(capsys, "run", "stripe")

        assert code == 0
        assert out["status"] == "success"
        assert out["initialized"] is True

    def test_configuration_error_exits_nonzero(self, config, capsys):
        broken = config.model_copy(update={"database_url": None})
        with patch("services.giving_sync.main.settings", return_value=broken), \
                patch("services.giving_sync.main.configure_logging"):
            code = main(["logs"])

        out = json.loads(capsys.readouterr().out)
        assert code == 1
        assert out["status"] == "error"
        assert out["error"]["kind"] == "configuration"
