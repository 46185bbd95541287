"""
CLI Tests
"""

import json
from unittest.mock import patch

import pytest

from deploygate import cli

BASE_ARGS = [
    "run",
    "--image", "registry.example.com/payments-api:1.4.2",
    "--revision", "9f1c2ab",
    "--environment", "staging",
    "--job", "payments-api",
    "--build", "118",
    "--dry-run",
    "--poll-interval", "0.01",
    "--monitoring-timeout", "2",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("RISK_MODEL_URL", "REDIS_URL", "RISK_THRESHOLD", "SCORER_RETRY_BACKOFF_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    with patch.object(cli, "setup_logging"):
        yield


class TestCLI:
    """Test suite for `deploygate run`"""

    def test_successful_dry_run(self, capsys):
        code = cli.main(BASE_ARGS + ["--feed-script", "running,success"])

        output = json.loads(capsys.readouterr().out)
        assert code == 0
        assert output["state"] == "succeeded"
        assert output["backend_handle"].startswith("dryrun-")
        print("✓ Dry run succeeded")

    def test_failed_build_exits_nonzero(self, capsys):
        code = cli.main(BASE_ARGS + ["--feed-script", "failure"])

        output = json.loads(capsys.readouterr().out)
        assert code == 1
        assert output["state"] == "rolled_back"

    def test_zero_threshold_aborts(self, capsys):
        code = cli.main(BASE_ARGS + ["--threshold", "0"])

        output = json.loads(capsys.readouterr().out)
        assert code == 1
        assert output["state"] == "aborted"

    def test_labels_and_command(self, capsys):
        code = cli.main(BASE_ARGS + ["--label", "files_changed=3", "--", "serve", "--port", "80"])

        output = json.loads(capsys.readouterr().out)
        assert code == 0
        assert output["change"]["labels"] == {"files_changed": "3"}
        assert output["change"]["command"] == ["serve", "--port", "80"]

    def test_bad_label_is_usage_error(self):
        assert cli.main(BASE_ARGS + ["--label", "no-equals-sign"]) == 2

    def test_bad_feed_script_is_usage_error(self):
        assert cli.main(BASE_ARGS + ["--feed-script", "green"]) == 2

    def test_invalid_config_is_usage_error(self):
        assert cli.main(BASE_ARGS + ["--threshold", "3"]) == 2

    def test_requires_subcommand(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])
