"""Tests for the CLI."""

import json
import os
import re
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from connekt_fulfillment.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "CF_DB_PATH": str(Path(tmp) / "test.db"),
            "CF_ACTOR": None,
            "SLACK_BOT_TOKEN": None,
            "CF_SLACK_CHANNEL": None,
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v

        yield CliRunner()

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def cf(runner, actor, *args):
    return runner.invoke(main, ["--as", actor, *args])


def _setup_project(runner):
    result = cf(runner, "olivia", "project", "create", "site", "Website", "--budget", "1000")
    assert result.exit_code == 0, result.output
    result = cf(runner, "olivia", "task", "add", "site", "Landing page", "--price", "150")
    assert result.exit_code == 0, result.output


def _offer(runner, *extra):
    result = cf(
        runner, "olivia", "contract", "offer", "wendy",
        "--type", "task_assignment", "--task", "landing-page", "--budget", "150", *extra,
    )
    assert result.exit_code == 0, result.output
    return re.search(r"Offered (ctr_\w+)", result.output).group(1)


class TestCLI:
    def test_help(self, cli_env):
        result = cli_env.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Connekt fulfillment engine" in result.output

    def test_missing_actor(self, cli_env):
        result = cli_env.invoke(main, ["wallet", "show"])
        assert result.exit_code == 2
        assert "acting user" in result.output

    def test_actor_from_env(self, cli_env):
        os.environ["CF_ACTOR"] = "olivia"
        result = cli_env.invoke(main, ["wallet", "deposit", "25"])
        assert result.exit_code == 0, result.output
        assert "Balance: GMD 25.00" in result.output


class TestWalletCommands:
    def test_deposit_and_show(self, cli_env):
        result = cf(cli_env, "olivia", "wallet", "deposit", "1234.567")
        assert result.exit_code == 0
        assert "Balance: GMD 1,234.57" in result.output

        result = cf(cli_env, "olivia", "wallet", "show")
        assert result.exit_code == 0
        assert "Available: GMD 1,234.57" in result.output
        assert "In escrow: GMD 0.00" in result.output

    def test_withdraw(self, cli_env):
        cf(cli_env, "olivia", "wallet", "deposit", "100")
        result = cf(cli_env, "olivia", "wallet", "withdraw", "40")
        assert result.exit_code == 0
        assert "Balance: GMD 60.00" in result.output

    def test_withdraw_too_much(self, cli_env):
        result = cf(cli_env, "olivia", "wallet", "withdraw", "10")
        assert result.exit_code == 1
        assert "Error: Insufficient funds" in result.output
        assert "Current state: 0" in result.output

    def test_bad_amount(self, cli_env):
        result = cf(cli_env, "olivia", "wallet", "deposit", "ten")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_history_json(self, cli_env):
        cf(cli_env, "olivia", "wallet", "deposit", "100")
        cf(cli_env, "olivia", "wallet", "withdraw", "30")
        result = cf(cli_env, "olivia", "wallet", "history", "--json")
        assert result.exit_code == 0
        txns = json.loads(result.output)
        assert [t["type"] for t in txns] == ["deposit", "withdrawal"]
        assert [t["amount"] for t in txns] == [10000, -3000]


class TestProjectAndTaskCommands:
    def test_create_project(self, cli_env):
        result = cf(cli_env, "olivia", "project", "create", "site", "Website", "--budget", "1000")
        assert result.exit_code == 0
        assert "Project created: site (Website)" in result.output
        assert "Budget: GMD 1,000.00" in result.output

    def test_add_task_and_list(self, cli_env):
        _setup_project(cli_env)
        result = cli_env.invoke(main, ["task", "list", "--project", "site"])
        assert result.exit_code == 0
        assert "landing-page" in result.output

        result = cli_env.invoke(main, ["task", "show", "landing-page"])
        assert result.exit_code == 0
        assert "Status: todo (version 1)" in result.output
        assert "Price: GMD 150.00 (unpaid)" in result.output

    def test_task_over_budget(self, cli_env):
        cf(cli_env, "olivia", "project", "create", "site", "Website", "--budget", "100")
        result = cf(cli_env, "olivia", "task", "add", "site", "Big job", "--price", "150")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_outsider_cannot_add_tasks(self, cli_env):
        _setup_project(cli_env)
        result = cf(cli_env, "mallory", "task", "add", "site", "Sneaky", "--price", "1")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_assign(self, cli_env):
        _setup_project(cli_env)
        result = cf(cli_env, "olivia", "task", "assign", "landing-page", "wendy")
        assert result.exit_code == 1
        assert "Error: Insufficient funds" in result.output

        cf(cli_env, "olivia", "wallet", "deposit", "200")
        result = cf(cli_env, "olivia", "task", "assign", "landing-page", "wendy")
        assert result.exit_code == 0, result.output
        assert "assigned to wendy (in-progress)" in result.output

        result = cli_env.invoke(main, ["escrow", "list", "--task", "landing-page"])
        assert "held" in result.output

        result = cf(cli_env, "olivia", "wallet", "show")
        assert "Available: GMD 50.00" in result.output
        assert "In escrow: GMD 150.00" in result.output


class TestContractFlow:
    def test_offer_accept_prove_and_get_paid(self, cli_env):
        _setup_project(cli_env)
        cf(cli_env, "olivia", "wallet", "deposit", "500")
        contract_id = _offer(cli_env)

        result = cf(cli_env, "wendy", "contract", "accept", contract_id)
        assert result.exit_code == 0, result.output
        assert f"Contract {contract_id} is accepted" in result.output
        assert "Task: landing-page (in-progress, wendy)" in result.output
        assert "GMD 150.00" in result.output

        result = cf(
            cli_env, "wendy", "proof", "submit", "landing-page",
            "-e", "image:https://cdn.example.com/landing.png#2048",
            "-e", "link:https://staging.example.com",
        )
        assert result.exit_code == 0, result.output
        assert "(2 item(s))" in result.output

        result = cli_env.invoke(main, ["proof", "pending"])
        assert "landing-page" in result.output

        result = cf(cli_env, "olivia", "proof", "review", "landing-page", "approved")
        assert result.exit_code == 0, result.output
        assert "approved; task is paid" in result.output

        result = cf(cli_env, "wendy", "wallet", "show")
        assert "Available: GMD 150.00" in result.output
        assert "Received: GMD 150.00" in result.output

        result = cf(cli_env, "olivia", "wallet", "show")
        assert "Available: GMD 350.00" in result.output

        result = cli_env.invoke(main, ["reconcile"])
        assert result.exit_code == 0
        assert "repaired: 0" in result.output
        assert "anomalies: 0" in result.output

    def test_unfunded_accept_then_fulfill(self, cli_env):
        _setup_project(cli_env)
        contract_id = _offer(cli_env)
        result = cf(cli_env, "wendy", "contract", "accept", contract_id)
        assert result.exit_code == 1
        assert "Error: Insufficient funds" in result.output

        cf(cli_env, "olivia", "wallet", "deposit", "150")
        result = cf(cli_env, "olivia", "contract", "fulfill", contract_id)
        assert result.exit_code == 0, result.output
        assert f"Contract {contract_id} fulfilled" in result.output

    def test_reject(self, cli_env):
        _setup_project(cli_env)
        contract_id = _offer(cli_env)
        result = cf(cli_env, "wendy", "contract", "reject", contract_id)
        assert result.exit_code == 0
        assert "is rejected" in result.output

        result = cf(cli_env, "wendy", "contract", "accept", contract_id)
        assert result.exit_code == 1
        assert "Current state: rejected" in result.output

    def test_only_recipient_accepts(self, cli_env):
        _setup_project(cli_env)
        contract_id = _offer(cli_env)
        result = cf(cli_env, "mallory", "contract", "accept", contract_id)
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_list_and_show(self, cli_env):
        result = cf(cli_env, "wendy", "contract", "list")
        assert "No contracts found." in result.output

        _setup_project(cli_env)
        contract_id = _offer(cli_env)
        result = cf(cli_env, "wendy", "contract", "list")
        assert contract_id in result.output
        assert "olivia -> wendy" in result.output

        result = cli_env.invoke(main, ["contract", "show", contract_id])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "pending"
        assert data["terms"]["taskId"] == "landing-page"

    def test_invalid_terms(self, cli_env):
        _setup_project(cli_env)
        result = cf(cli_env, "olivia", "contract", "offer", "wendy", "--type", "task_assignment")
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestNotificationCommands:
    def test_inbox(self, cli_env):
        _setup_project(cli_env)
        _offer(cli_env)
        result = cf(cli_env, "wendy", "notifications", "list", "--unread")
        assert result.exit_code == 0
        assert "contract_offered" in result.output

        notification_id = re.search(r"\*\s*(\d+)", result.output).group(1)
        result = cf(cli_env, "wendy", "notifications", "read", notification_id)
        assert result.exit_code == 0
        assert f"Marked {notification_id} as read" in result.output

        result = cf(cli_env, "wendy", "notifications", "list", "--unread")
        assert "No notifications." in result.output

    def test_read_someone_elses(self, cli_env):
        _setup_project(cli_env)
        _offer(cli_env)
        result = cf(cli_env, "mallory", "notifications", "read", "1")
        assert result.exit_code == 1
