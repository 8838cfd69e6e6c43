"""Tests for the command-line interface."""

import logging

import pytest

from fake_ledger import run
from goalstake.cli import GoalStakeCLI, build_parser, dispatch, main, print_status
from goalstake.client.orchestrator import ActionStatus, Phase
from goalstake.config import Config
from goalstake.programs.escrow import goal_hash_from_identifier


@pytest.fixture(autouse=True)
def reset_logging():
    """main() configures the goalstake logger; undo it after each test."""
    yield
    logger = logging.getLogger("goalstake")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Config and wallet paths inside tmp_path."""
    monkeypatch.setenv("GOALSTAKE_WALLET", str(tmp_path / "id.json"))
    return ["--config", str(tmp_path / "config.json")]


def exit_code(argv) -> int:
    with pytest.raises(SystemExit) as info:
        main(argv)
    return info.value.code


class RecordingCLI(GoalStakeCLI):
    """CLI whose write actions are recorded instead of sent."""

    def __init__(self, tmp_path):
        super().__init__(Config(), assume_yes=True, pending_path=tmp_path / "pending.json")
        self.calls = []

    async def run_action(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        return True


class TestParser:
    """Tests for argument parsing."""

    def test_window_defaults(self):
        """Should default to a start in a minute and a one hour goal."""
        args = build_parser().parse_args(["init-goal", "run-10k"])
        assert (args.start_delay, args.duration, args.starts_on) == (60, 3600, None)

    def test_global_flags(self):
        """Should accept global flags before the command."""
        args = build_parser().parse_args(["-y", "-v", "resolve-failure", "run-10k", "SomeStaker"])
        assert args.yes and args.verbose
        assert args.staker == "SomeStaker"


class TestDispatch:
    """Tests for mapping commands to actions."""

    def test_open_stake_converts_amount(self, tmp_path):
        """Should convert whole tokens to minor units."""
        cli = RecordingCLI(tmp_path)
        args = build_parser().parse_args(["open-stake", "run-10k", "1.5"])
        assert run(dispatch(cli, args))
        assert cli.calls == [("open_stake", (goal_hash_from_identifier("run-10k"), 1_500_000), {})]

    def test_absolute_window(self, tmp_path):
        """Should pass explicit times through instead of the relative window."""
        cli = RecordingCLI(tmp_path)
        args = build_parser().parse_args(["init-goal", "g", "--starts-on", "10", "--ends-on", "20"])
        run(dispatch(cli, args))
        assert cli.calls[0][2] == {"starts_on": 10, "ends_on": 20}

    def test_cancel(self, tmp_path):
        """Should map cancel to cancel_stake."""
        cli = RecordingCLI(tmp_path)
        run(dispatch(cli, build_parser().parse_args(["cancel", "g"])))
        assert cli.calls[0][0] == "cancel_stake"


class TestMain:
    """Tests for the entry point."""

    def test_keygen_then_address(self, cli_env, capsys):
        """Should create a wallet and derive addresses offline."""
        assert exit_code(cli_env + ["keygen"]) == 0
        assert "New wallet" in capsys.readouterr().out

        assert exit_code(cli_env + ["address", "run-10k"]) == 0
        out = capsys.readouterr().out
        assert goal_hash_from_identifier("run-10k").hex() in out
        assert "Stake:" in out

    def test_keygen_refuses_overwrite(self, cli_env, capsys):
        """Should not clobber an existing wallet."""
        exit_code(cli_env + ["keygen"])
        assert exit_code(cli_env + ["keygen"]) == 1
        assert "already exists" in capsys.readouterr().out

    def test_invalid_amount(self, cli_env, capsys):
        """Should report validation errors with their kind."""
        assert exit_code(cli_env + ["open-stake", "run-10k", "0"]) == 1
        out = capsys.readouterr().out
        assert "greater than 0" in out
        assert "validation" in out

    def test_missing_wallet(self, cli_env, capsys):
        """Should explain that a wallet is needed for write actions."""
        assert exit_code(cli_env + ["cancel", "run-10k"]) == 1
        assert "signer_unavailable" in capsys.readouterr().out


class TestPrintStatus:
    """Tests for the phase observer."""

    def test_terminal_error(self, capsys):
        """Should print the signature and error kind on failure."""
        print_status(ActionStatus("deposit_stake", Phase.ERROR, "boom", signature="sig",
                                  error_kind="on_chain_rejection", error_message="boom"))
        out = capsys.readouterr().out
        assert "deposit_stake: boom" in out
        assert "Signature: sig" in out
        assert "on_chain_rejection" in out
