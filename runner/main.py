"""
snipewatch command line entry point.

    snipewatch profiles
    snipewatch create-profile alpha --network MAINNET
    snipewatch add-snipe alpha <token> --amount 0.01 --credential wallet-1
    snipewatch test-snipe alpha <snipe-id>
    snipewatch monitor alpha [--once]
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from core.exceptions import SnipewatchError
from core.models import Network, SnipeResult
from infra.profile_store import ProfileStore
from infra.profile_lock import StaleLockGuard
from runner.controller import SnipeController
from tools.config_validator import AppConfig, load_app_config, validate_app_config

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig, verbose: bool = False) -> None:
    log_file = config.logging.file
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.logging.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def _store(config: AppConfig) -> ProfileStore:
    guard = StaleLockGuard(config.app.base_dir, config.locks.stale_timeout_seconds)
    return ProfileStore(config.app.base_dir, lock_guard=guard, max_versions=config.history.max_versions)


def _print_result(result: SnipeResult) -> None:
    if result.success:
        print(
            f"  OK   {result.snipe_id}  tx={result.tx_id or '-'}  out={result.amount_out}"
            f"  expected={result.expected_amount_out}  attempts={result.attempts}"
            f"  {result.execution_time_ms}ms"
        )
    else:
        print(f"  FAIL {result.snipe_id}  attempts={result.attempts}  error={result.error}")


def cmd_profiles(config: AppConfig, args) -> int:
    summaries = _store(config).list_profiles()
    if not summaries:
        print("No profiles found")
        return 0
    for s in summaries:
        holder = f" ({s.holder_id})" if s.holder_id else ""
        print(
            f"{s.name:20s} {s.active_snipe_count}/{s.snipe_count} active  "
            f"{s.status}{holder}  last used {s.last_used:%Y-%m-%d %H:%M}"
        )
    return 0


def cmd_create_profile(config: AppConfig, args) -> int:
    settings = config.profile_defaults()
    if args.network:
        settings.network = Network.parse(args.network)
    if args.amount:
        settings.default_amount = args.amount
    if args.sequential:
        settings.execute_in_parallel = False
    profile = _store(config).create_profile(args.name, settings)
    print(f"Created profile '{profile.name}' on {profile.settings.network.value}")
    return 0


def cmd_delete_profile(config: AppConfig, args) -> int:
    _store(config).delete_profile(args.name)
    print(f"Deleted profile '{args.name}'")
    return 0


def cmd_add_snipe(config: AppConfig, args) -> int:
    snipe = _store(config).add_snipe(
        args.profile,
        args.token,
        amount_btc=args.amount,
        credential_ref=args.credential or "",
        wallet_address=args.wallet or "",
    )
    print(f"Added snipe {snipe.id}: {snipe.token_address} -> {snipe.amount_btc} BTC")
    return 0


def cmd_remove_snipe(config: AppConfig, args) -> int:
    _store(config).remove_snipe(args.profile, args.snipe_id)
    print(f"Removed snipe {args.snipe_id}")
    return 0


def cmd_toggle_snipe(config: AppConfig, args) -> int:
    snipe = _store(config).toggle_snipe(args.profile, args.snipe_id)
    print(f"Snipe {snipe.id} is now {'ACTIVE' if snipe.is_active else 'INACTIVE'}")
    return 0


def cmd_status(config: AppConfig, args) -> int:
    store = _store(config)
    profile = store.load_profile(args.profile)
    info = store.guard.get_lock_info(args.profile)

    print(f"Profile:  {profile.name}")
    print(f"Network:  {profile.settings.network.value}")
    print(f"Lock:     {info.holder_id if info else 'free'}")
    print(f"Retries:  {profile.settings.max_retries} "
          f"({profile.settings.retry_delay_ms}-{profile.settings.max_retry_delay_ms}ms)")
    print(f"Slippage: {profile.settings.slippage_tolerance_pct}%")
    print(f"Snipes ({len(profile.active_snipes())}/{len(profile.snipes)} active):")
    for snipe in profile.snipes:
        marker = "*" if snipe.is_active else " "
        print(f"  {marker} {snipe.id}  {snipe.token_address}  {snipe.amount_btc} BTC  {snipe.status.value}")
    if profile.execution_history:
        last = profile.execution_history[-1]
        print(f"Last run: {last.get('timestamp')} {last.get('trigger')} "
              f"{last.get('succeeded')}/{last.get('total')} succeeded")
    return 0


def cmd_cleanup_locks(config: AppConfig, args) -> int:
    cleaned = _store(config).guard.cleanup_stale()
    print(f"Removed {cleaned} stale lock(s)")
    return 0


def cmd_validate_config(config_dir: str) -> int:
    errors = validate_app_config(config_dir)
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        return 1
    print("Configuration is valid")
    return 0


async def _test_snipe(controller: SnipeController, profile: str, snipe_id: str) -> SnipeResult:
    controller.open_profile(profile)
    try:
        return await controller.test_snipe(snipe_id)
    finally:
        await controller.close()


def cmd_test_snipe(config: AppConfig, args) -> int:
    controller = SnipeController.from_config(config)
    result = asyncio.run(_test_snipe(controller, args.profile, args.snipe_id))
    _print_result(result)
    return 0 if result.success else 1


async def _monitor(controller: SnipeController, profile: str, once: bool) -> List[SnipeResult]:
    controller.open_profile(profile)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    results: List[SnipeResult] = []
    try:
        await controller.start_monitoring()
        if not once:
            await stop.wait()
            return results

        waiter = asyncio.ensure_future(controller.run_until_complete())
        stopper = asyncio.ensure_future(stop.wait())
        done, pending = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if waiter in done:
            results = waiter.result()
        return results
    finally:
        logger.info("Shutting down monitor...")
        await controller.close()


def cmd_monitor(config: AppConfig, args) -> int:
    controller = SnipeController.from_config(config)
    results = asyncio.run(_monitor(controller, args.profile, args.once))
    for result in results:
        _print_result(result)
    return 0 if all(r.success for r in results) else 1


COMMANDS = {
    "profiles": cmd_profiles,
    "create-profile": cmd_create_profile,
    "delete-profile": cmd_delete_profile,
    "add-snipe": cmd_add_snipe,
    "remove-snipe": cmd_remove_snipe,
    "toggle-snipe": cmd_toggle_snipe,
    "status": cmd_status,
    "cleanup-locks": cmd_cleanup_locks,
    "test-snipe": cmd_test_snipe,
    "monitor": cmd_monitor,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="snipewatch: execute swaps the moment a network comes online")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("profiles", help="List profiles")

    p = sub.add_parser("create-profile", help="Create a profile")
    p.add_argument("name")
    p.add_argument("--network", choices=[n.value for n in Network], type=str.upper)
    p.add_argument("--amount", help="Default BTC amount for new snipes")
    p.add_argument("--sequential", action="store_true", help="Run snipes one after another")

    p = sub.add_parser("delete-profile", help="Delete a profile")
    p.add_argument("name")

    p = sub.add_parser("add-snipe", help="Add a snipe to a profile")
    p.add_argument("profile")
    p.add_argument("token", help="Token address or pool id")
    p.add_argument("--amount", help="BTC amount (default: profile default)")
    p.add_argument("--credential", help="Wallet credential reference")
    p.add_argument("--wallet", help="Receiving wallet address")

    for name, help_text in (("remove-snipe", "Remove a snipe"), ("toggle-snipe", "Activate/deactivate a snipe")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("profile")
        p.add_argument("snipe_id")

    p = sub.add_parser("status", help="Show a profile")
    p.add_argument("profile")

    sub.add_parser("cleanup-locks", help="Remove stale profile locks")
    sub.add_parser("validate-config", help="Validate config/app.yaml")

    p = sub.add_parser("test-snipe", help="Discover and simulate one snipe on REGTEST")
    p.add_argument("profile")
    p.add_argument("snipe_id")

    p = sub.add_parser("monitor", help="Watch the network and execute on the online transition")
    p.add_argument("profile")
    p.add_argument("--once", action="store_true", help="Exit after the first triggered run")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    args = build_parser().parse_args(argv)

    if args.command == "validate-config":
        return cmd_validate_config(args.config_dir)

    try:
        config = load_app_config(args.config_dir)
    except SnipewatchError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    setup_logging(config, args.verbose)

    try:
        return COMMANDS[args.command](config, args)
    except SnipewatchError as e:
        logger.error(str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
