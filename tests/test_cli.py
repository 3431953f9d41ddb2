"""
Tests for the scheduler command line
"""

import json
import pytest

from program_payments.__main__ import build_parser, main


class TestCommandLine:
    """Test the cron entry point against an in-memory database"""

    def test_sweep_overdue(self, capsys):
        assert main(["--database-url", "memory://", "sweep-overdue", "--now", "2024-03-01T00:00:00Z"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["sweep"] == "overdue"
        assert output["examined"] == 0

    def test_sweep_reminders(self, capsys):
        assert main(["--database-url", "memory://", "sweep-reminders", "--today", "2024-02-15"]) == 0

        assert json.loads(capsys.readouterr().out)["sweep"] == "reminders"

    def test_verify_audit(self, capsys):
        assert main(["--database-url", "memory://", "verify-audit"]) == 0

        assert json.loads(capsys.readouterr().out)["valid"] is True

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
