#!/usr/bin/env python3
"""
Goal Stake CLI

A command-line interface for the goal staking escrow: derive addresses,
inspect goals and stakes, and run every stake action against a ledger RPC
endpoint (devnet by default).

Usage:
    goalstake keygen                                  # Create a wallet keypair
    goalstake init-goal run-10k --start-delay 60 --duration 3600
    goalstake one-click-stake run-10k 1.5             # Open + fund 1.5 tokens
    goalstake stake run-10k                           # Show your stake
    goalstake cancel run-10k                          # Cancel before start
    goalstake resolve-success run-10k <staker>        # Settle as resolver

Goals are named by an identifier (hashed to 32 bytes) or a 64-char hex hash.
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from .client.actions import EscrowActions
from .client.orchestrator import ActionRun, ActionStatus, ConfirmationPolicy, Phase, PendingSignatures
from .client.signer import ApprovalSigner, KeypairSigner, load_keypair_file, prompt_approval, save_keypair_file
from .config import PENDING_PATH, Config, load_config
from .core.accounts import Pubkey
from .errors import EscrowError
from .logging import setup_logging
from .networking.rpc import LedgerRPC
from .programs.escrow import from_minor_units, goal_hash_from_identifier, to_minor_units

PHASE_ICONS = {
    Phase.BUILDING: "🔧",
    Phase.SIGNING: "✍️ ",
    Phase.BROADCASTING: "📡",
    Phase.CONFIRMING: "⏳",
    Phase.SUCCESS: "✅",
    Phase.ERROR: "❌",
}


def print_status(status: ActionStatus):
    """Observer that prints each phase change."""
    icon = PHASE_ICONS.get(status.phase, "•")
    line = f"{icon} {status.action}: {status.message}"
    if status.phase.is_terminal and status.signature:
        line += f"\n   Signature: {status.signature}"
    if status.error_kind:
        line += f"\n   Kind: {status.error_kind}"
    print(line)


class GoalStakeCLI:
    """
    Command-line front end over EscrowActions.

    One RPC session per command; timed-out signatures from earlier sessions
    are reconciled at the start of every session.
    """

    def __init__(self, config: Config, assume_yes: bool = False, pending_path: Path = PENDING_PATH):
        self.config = config
        self.assume_yes = assume_yes
        self.pending = PendingSignatures(pending_path)

    def load_signer(self, required: bool = True) -> Optional[KeypairSigner]:
        """Wallet keypair from the configured path."""
        if not required and not self.config.wallet.exists():
            return None
        return load_keypair_file(self.config.wallet)

    def _approval_signer(self, signer):
        if signer is None or self.assume_yes:
            return signer
        return ApprovalSigner(signer, prompt_approval)

    @asynccontextmanager
    async def session(self, signer=None):
        config = self.config
        async with LedgerRPC(config.rpc_url, config.commitment, config.request_timeout) as rpc:
            actions = EscrowActions(
                rpc,
                signer=self._approval_signer(signer),
                program_id=config.program_pubkey,
                token_mint=config.mint_pubkey,
                policy=ConfirmationPolicy(config.confirm_attempts, config.confirm_interval,
                                          config.commitment),
                pending=self.pending,
            )
            actions.subscribe(print_status)
            await self._reconcile(actions)
            yield actions

    async def _reconcile(self, actions: EscrowActions):
        if not len(self.pending):
            return
        print(f"🔍 Re-checking {len(self.pending)} unconfirmed transaction(s)...")
        for result in await actions.reconcile():
            icon = {"confirmed": "✅", "failed": "❌", "expired": "⌛"}.get(result.outcome, "⏳")
            print(f"   {icon} {result.action} {result.signature[:16]}...: {result.outcome}")

    def amount(self, text: str) -> int:
        return to_minor_units(text, self.config.token_decimals)

    def tokens(self, minor: int) -> str:
        return f"{from_minor_units(minor, self.config.token_decimals)}"

    # Commands

    def keygen(self, force: bool = False) -> bool:
        path = self.config.wallet
        if path.exists() and not force:
            print(f"❌ Wallet already exists at {path} (use --force to overwrite)")
            return False
        signer = KeypairSigner.generate()
        save_keypair_file(signer, path)
        print(f"🔑 New wallet: {signer.address}")
        print(f"   Saved to {path}")
        return True

    def address(self, identifier: str, staker: Optional[str]) -> bool:
        goal_hash = goal_hash_from_identifier(identifier)
        signer = self.load_signer(required=False)
        staker_key = Pubkey.from_string(staker) if staker else (signer.address if signer else None)

        actions = EscrowActions(None, signer, self.config.program_pubkey, self.config.mint_pubkey)
        print(f"🎯 Goal hash:  {goal_hash.hex()}")
        print(f"   Goal:       {actions.goal_address(goal_hash)}")
        print(f"   Goal vault: {actions.goal_vault_address(goal_hash, self.config.mint_pubkey)}")
        if staker_key is not None:
            print(f"   Stake:      {actions.stake_address(goal_hash, staker_key)}  (staker {staker_key})")
        return True

    async def goal(self, identifier: str) -> bool:
        goal_hash = goal_hash_from_identifier(identifier)
        async with self.session() as actions:
            goal = await actions.fetch_goal(goal_hash)
        if goal is None:
            print(f"🔍 Goal {identifier!r} has not been created yet")
            return False
        print(f"🎯 Goal {actions.goal_address(goal_hash)}")
        print(f"   Authority:   {goal.authority}")
        print(f"   Resolver:    {goal.resolver}")
        print(f"   Group vault: {goal.group_vault}")
        print(f"   Token mint:  {goal.token_mint}")
        print(f"   Window:      {goal.starts_on} → {goal.ends_on} ({goal.duration}s)")
        return True

    async def stake(self, identifier: str, staker: Optional[str]) -> bool:
        goal_hash = goal_hash_from_identifier(identifier)
        signer = self.load_signer(required=staker is None)
        staker_key = Pubkey.from_string(staker) if staker else signer.address
        async with self.session(signer) as actions:
            goal = await actions.fetch_goal(goal_hash)
            stake = await actions.fetch_stake(goal_hash, staker_key)
        options = []
        if goal is not None:
            options = actions.rules.available_actions(goal, stake, actions.now(),
                                                      signer.address if signer else None)
        if stake is None:
            print(f"🔍 No stake for {staker_key} on {identifier!r}")
        else:
            print(f"💰 Stake {actions.stake_address(goal_hash, staker_key)}")
            print(f"   Status:  {stake.status.label}")
            print(f"   Amount:  {self.tokens(stake.amount)} tokens ({stake.amount:,} units)")
            print(f"   Created: {stake.created_at}")
        if options:
            print(f"💡 Available: {', '.join(options)}")
        return stake is not None

    async def balance(self, owner: Optional[str]) -> bool:
        signer = self.load_signer(required=owner is None)
        owner_key = Pubkey.from_string(owner) if owner else signer.address
        async with self.session(signer) as actions:
            amount = await actions.token_balance(owner_key)
            lamports = await actions.ledger.get_balance(owner_key)
        print(f"💰 Balance for {owner_key}:")
        print(f"   Tokens: {self.tokens(amount)} ({amount:,} units)")
        print(f"   SOL:    {lamports / 1_000_000_000:.6f} ({lamports:,} lamports)")
        return True

    async def run_action(self, name: str, *args, **kwargs) -> bool:
        """Run one EscrowActions write method with the wallet as signer."""
        signer = self.load_signer()
        async with self.session(signer) as actions:
            run: ActionRun = await getattr(actions, name)(*args, **kwargs)
        return run.succeeded


def _window_kwargs(args) -> dict:
    if args.starts_on is not None or args.ends_on is not None:
        return {"starts_on": args.starts_on, "ends_on": args.ends_on}
    return {"start_delay": args.start_delay, "duration": args.duration}


def _add_window_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('--start-delay', type=int, default=60, help='Seconds until the goal starts')
    parser.add_argument('--duration', type=int, default=3600, help='Goal length in seconds')
    parser.add_argument('--starts-on', type=int, help='Absolute start (Unix seconds)')
    parser.add_argument('--ends-on', type=int, help='Absolute end (Unix seconds)')
    parser.add_argument('--resolver', help='Resolver address (default: you)')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="goalstake",
        description="Goal staking escrow client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  goalstake keygen
  goalstake init-goal run-10k --start-delay 60 --duration 3600
  goalstake one-click-stake run-10k 1
  goalstake stake run-10k
  goalstake resolve-failure run-10k <staker-address>
        """
    )
    parser.add_argument('--config', type=Path, help='Config file (default ~/.goalstake/config.json)')
    parser.add_argument('-y', '--yes', action='store_true', help='Sign without asking for approval')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--json-logs', action='store_true', help='JSON log lines on stderr')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    keygen_parser = subparsers.add_parser('keygen', help='Create a wallet keypair')
    keygen_parser.add_argument('--force', action='store_true', help='Overwrite an existing wallet')

    address_parser = subparsers.add_parser('address', help='Derive goal, vault and stake addresses')
    address_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')
    address_parser.add_argument('--staker', help='Staker address (default: your wallet)')

    goal_parser = subparsers.add_parser('goal', help='Show a goal')
    goal_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')

    stake_parser = subparsers.add_parser('stake', help='Show a stake')
    stake_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')
    stake_parser.add_argument('--staker', help='Staker address (default: your wallet)')

    balance_parser = subparsers.add_parser('balance', help='Show token and SOL balance')
    balance_parser.add_argument('--owner', help='Owner address (default: your wallet)')

    init_parser = subparsers.add_parser('init-goal', help='Create a goal')
    init_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')
    _add_window_arguments(init_parser)

    open_parser = subparsers.add_parser('open-stake', help='Open a stake on a goal')
    open_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')
    open_parser.add_argument('amount', help='Amount in whole tokens, e.g. 1.5')

    deposit_parser = subparsers.add_parser('deposit', help='Fund an opened stake')
    deposit_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')

    one_click_parser = subparsers.add_parser('one-click-stake', help='Open and fund a stake at once')
    one_click_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')
    one_click_parser.add_argument('amount', help='Amount in whole tokens, e.g. 1.5')

    create_parser = subparsers.add_parser('create-goal-and-stake', help='Create a goal and stake on it')
    create_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')
    create_parser.add_argument('amount', help='Amount in whole tokens, e.g. 1.5')
    _add_window_arguments(create_parser)

    cancel_parser = subparsers.add_parser('cancel', help='Cancel your stake before the goal starts')
    cancel_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')

    for command, help_text in (('resolve-success', 'Settle a stake as achieved'),
                               ('resolve-failure', 'Settle a stake as missed')):
        resolve_parser = subparsers.add_parser(command, help=help_text)
        resolve_parser.add_argument('goal', help='Goal identifier or 64-char hex hash')
        resolve_parser.add_argument('staker', help='Staker address')

    return parser


async def dispatch(cli: GoalStakeCLI, args) -> bool:
    command = args.command
    if command == 'goal':
        return await cli.goal(args.goal)
    if command == 'stake':
        return await cli.stake(args.goal, args.staker)
    if command == 'balance':
        return await cli.balance(args.owner)

    goal_hash = goal_hash_from_identifier(args.goal)
    if command in ('init-goal', 'create-goal-and-stake'):
        kwargs = _window_kwargs(args)
        if args.resolver:
            kwargs["resolver"] = Pubkey.from_string(args.resolver)
        if command == 'init-goal':
            return await cli.run_action("init_goal", goal_hash, **kwargs)
        return await cli.run_action("create_goal_and_stake", goal_hash, cli.amount(args.amount), **kwargs)
    if command == 'open-stake':
        return await cli.run_action("open_stake", goal_hash, cli.amount(args.amount))
    if command == 'deposit':
        return await cli.run_action("deposit_stake", goal_hash)
    if command == 'one-click-stake':
        return await cli.run_action("one_click_stake", goal_hash, cli.amount(args.amount))
    if command == 'cancel':
        return await cli.run_action("cancel_stake", goal_hash)
    if command == 'resolve-success':
        return await cli.run_action("resolve_success", goal_hash, Pubkey.from_string(args.staker))
    if command == 'resolve-failure':
        return await cli.run_action("resolve_failure", goal_hash, Pubkey.from_string(args.staker))
    raise ValueError(f"Unknown command: {command}")


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, json_format=args.json_logs)

    try:
        cli = GoalStakeCLI(load_config(args.config), assume_yes=args.yes)
        if args.command == 'keygen':
            ok = cli.keygen(args.force)
        elif args.command == 'address':
            ok = cli.address(args.goal, args.staker)
        else:
            ok = asyncio.run(dispatch(cli, args))
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
        sys.exit(130)
    except EscrowError as e:
        print(f"❌ {e.message}")
        print(f"   Kind: {e.kind}")
        if args.verbose:
            print(json.dumps(e.to_dict(), indent=2))
        sys.exit(1)
    except ValueError as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

    sys.exit(0 if ok else 1)


if __name__ == '__main__':
    main()
