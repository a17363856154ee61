#!/usr/bin/env python3
"""
Catalog Sync CLI

Run and operate the shop catalog sync engine.

Usage:
    catalog-sync run --serve          # Workers, scheduler and webhook endpoint
    catalog-sync sync shop-1          # Run a full sync now
    catalog-sync register-webhooks shop-1
    catalog-sync status               # Show sync checkpoints
    catalog-sync stats                # Show engine statistics
    catalog-sync test shop-1          # Test a shop's API credentials
"""

import argparse
import sys
import time

from colorama import Fore, Style, init

from catalog_sync import __version__
from catalog_sync.config import ConfigError, SyncConfig, configure_logging, get_config_path, load_config
from catalog_sync.models import EntityType
from catalog_sync.orchestrator import SyncOutcome
from catalog_sync.state import StateManager
from catalog_sync.tasks import SyncMode

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def print_banner():
    """Print the banner."""
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}Catalog Sync Engine{RESET}{BLUE} v{__version__:<38}║
║     Shop catalogs, kept in step with the upstream platform    ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def _load(args) -> SyncConfig | None:
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print_error(str(e))
        return None
    configure_logging(args.log_level or config.log_level, config.log_format)
    return config


def _build_engine(config: SyncConfig):
    from catalog_sync.engine import SyncEngine

    return SyncEngine(config)


def _require_tenant(config: SyncConfig, tenant_id: str) -> bool:
    if config.tenant(tenant_id) is None:
        print_error(f"Tenant '{tenant_id}' is not configured in {get_config_path()}")
        return False
    return True


def cmd_run(args):
    """Run workers and the reconcile scheduler, optionally serving webhooks."""
    config = _load(args)
    if config is None:
        return 1
    if not config.tenants:
        print_warning("No tenants configured - the engine will idle until one is installed")

    print_banner()
    engine = _build_engine(config)
    engine.start(initial_reconcile=not args.no_initial_sync)
    print_success(f"Workers: {config.max_workers}, reconcile every {config.reconcile_interval_hours:g}h")

    try:
        if args.serve:
            import uvicorn
            from catalog_sync.api import create_app

            if not config.app_secret:
                print_warning("No app secret set - every webhook will fail signature checks")
            print_info(f"Serving webhooks on http://{args.host}:{args.port}")
            uvicorn.run(create_app(engine.ingestor, engine.get_stats), host=args.host, port=args.port)
        else:
            print_info("Press Ctrl+C to stop")
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        print_info("Shutting down...")
        engine.stop()
    return 0


def cmd_sync(args):
    """Run one sync in the foreground."""
    config = _load(args)
    if config is None:
        return 1
    if not _require_tenant(config, args.tenant):
        return 1

    mode = SyncMode(args.mode)
    entity_type = EntityType(args.type) if args.type else None

    print_banner()
    print(f"{BOLD}Starting {mode.value} sync for {args.tenant}{RESET}\n")

    engine = _build_engine(config)
    try:
        report = engine.sync_now(args.tenant, mode, entity_type)
    finally:
        engine.client.close()

    print(f"  Applied:   {report.applied}")
    print(f"  Unchanged: {report.unchanged}")
    print(f"  Pruned:    {report.pruned}")
    if report.rejected:
        print_warning(f"  Skipped:   {report.skipped}")
        for item in report.rejected[:5]:
            print(f"    - {item}")
    if report.dropped_edges:
        print_warning(f"  Dropped category links: {len(report.dropped_edges)}")
        for edge in report.dropped_edges[:5]:
            print(f"    - {edge}")
    print()

    if report.outcome is SyncOutcome.COMPLETED:
        print_success("Sync complete!")
        return 0
    if report.outcome is SyncOutcome.RETRY_SCHEDULED:
        print_warning(f"Upstream unavailable, progress saved: {report.error}")
        print_info("Run the command again to resume")
        return 1
    print_error(f"Sync {report.outcome.value}: {report.error or ''}")
    return 1


def cmd_register_webhooks(args):
    """Subscribe a tenant's item groups to the webhook endpoint."""
    config = _load(args)
    if config is None:
        return 1
    if not _require_tenant(config, args.tenant):
        return 1
    if not config.webhook_url:
        print_error("webhook_url is not configured")
        print_info("Set it in the config file or export CATALOG_SYNC_WEBHOOK_URL")
        return 1

    engine = _build_engine(config)
    try:
        subscriptions = engine.register_webhooks(args.tenant)
    except Exception as e:
        print_error(f"Registration failed: {e}")
        return 1
    finally:
        engine.client.close()

    for group, subscription_id in subscriptions.items():
        print_success(f"{group}: subscription {subscription_id}")
    print_info(f"Callback: {config.callback_url(args.tenant)}")
    return 0


def cmd_status(args):
    """Show sync checkpoints per tenant."""
    config = _load(args)
    if config is None:
        return 1
    print_banner()

    try:
        state_mgr = StateManager(config.state_dir)
        tenant_ids = [args.tenant] if args.tenant else sorted(
            {t.id for t in config.tenants} | set(state_mgr.tenants())
        )
        if not tenant_ids:
            print_warning("No tenants configured")
            return 0

        for tenant_id in tenant_ids:
            checkpoint = state_mgr.load(tenant_id)
            print(f"{BOLD}{tenant_id}{RESET}")

            if checkpoint.last_full_sync:
                print(f"  Last full sync: {checkpoint.last_full_sync.strftime('%Y-%m-%d %H:%M:%S UTC')}")
            else:
                print_warning("  No full sync completed yet")

            if checkpoint.last_incremental:
                print(f"  Last incremental: {checkpoint.last_incremental.strftime('%Y-%m-%d %H:%M:%S UTC')}")

            if checkpoint.in_progress:
                print(f"  {YELLOW}Interrupted {checkpoint.sync_type} sync{RESET}, "
                      f"started {checkpoint.sync_started_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
                print(f"  Items applied: {checkpoint.items_applied}")

                done = [
                    f"{GREEN}{t.value} ✓{RESET}"
                    for t, progress in checkpoint.progress.items() if progress.complete
                ]
                if done:
                    print(f"  Completed: {', '.join(done)}")

            if checkpoint.errors:
                print_warning(f"  Errors: {len(checkpoint.errors)}")
                for err in checkpoint.errors[-3:]:
                    print(f"    - {err}")
            print()

        return 0

    except Exception as e:
        print_error(f"Failed to get status: {e}")
        return 1


def cmd_stats(args):
    """Show statistics of a running engine, or of the local configuration."""
    config = _load(args)
    if config is None:
        return 1
    print_banner()

    if args.url:
        import httpx

        try:
            response = httpx.get(f"{args.url.rstrip('/')}/health", timeout=10)
            response.raise_for_status()
        except httpx.HTTPError as e:
            print_error(f"Cannot reach {args.url}: {e}")
            return 1
        stats = response.json().get("stats", {})
    else:
        engine = _build_engine(config)
        stats = engine.get_stats()

    print(f"{BOLD}Engine Statistics{RESET}\n")
    print(f"  Pending tasks: {stats.get('pending_tasks', 0)}")
    print(f"  Ledger records: {stats.get('ledger_records', 0)}")
    running = stats.get("leases", {})
    if running:
        print(f"  Running: {', '.join(sorted(running))}")

    tenants = stats.get("tenants", {})
    if tenants:
        print(f"\n{BOLD}Tenants:{RESET}")
        for tenant_id, info in sorted(tenants.items()):
            color = RED if info["status"] == "Failed" else GREEN
            print(f"  {tenant_id}: {color}{info['status']}{RESET}"
                  f"{'' if info['enabled'] else ' (disabled)'}")
            if info.get("last_error"):
                print(f"    {info['last_error']}")

    client = stats.get("client")
    if client:
        print(f"\n{BOLD}API Client:{RESET}")
        print(f"  Requests: {client['request_count']}")
        print(f"  Errors: {client['error_count']} ({client['error_rate']:.2%})")
        for tenant_id, rl in sorted(client.get("rate_limiter", {}).items()):
            print(f"  {tenant_id}: {rl['requests_granted']} granted, "
                  f"{rl['requests_denied']} denied, "
                  f"{rl['total_wait_time_seconds']:.1f}s wait time")

    return 0


def cmd_test(args):
    """Test a tenant's upstream connection."""
    config = _load(args)
    if config is None:
        return 1
    if not _require_tenant(config, args.tenant):
        return 1

    tenant_config = config.tenant(args.tenant)
    tenant = tenant_config.to_tenant()
    print_info(f"Connecting to {tenant.base_url} as shop {tenant.shop_id}...")

    engine = _build_engine(config)
    try:
        result = engine.client.health_check(tenant)
    finally:
        engine.client.close()

    if result["status"] == "healthy":
        print_success("Connected successfully!")
        print_success(f"Shop: {result.get('shop', 'unknown')}")
        return 0
    print_error(f"Connection failed: {result.get('message', 'Unknown error')}")
    return 1


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Catalog Sync Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  catalog-sync run --serve                Run the service with the webhook endpoint
  catalog-sync sync shop-1                Run a full sync now
  catalog-sync sync shop-1 --type products
  catalog-sync register-webhooks shop-1   Subscribe to catalog changes
  catalog-sync status                     Show sync checkpoints
        """,
    )
    parser.add_argument("--config", help="Config file (default: ~/.catalog-sync/config.json)")
    parser.add_argument("--log-level", help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run workers and scheduler")
    run_parser.add_argument("--serve", action="store_true", help="Also serve the webhook endpoint")
    run_parser.add_argument("--host", default="0.0.0.0")
    run_parser.add_argument("--port", type=int, default=8080)
    run_parser.add_argument("--no-initial-sync", action="store_true",
                            help="Wait for the first scheduled reconcile")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run a sync now")
    sync_parser.add_argument("tenant")
    sync_parser.add_argument("--mode", choices=["full", "reconcile"], default="full")
    sync_parser.add_argument("--type", choices=[t.value for t in EntityType],
                             help="Only sync one entity type")

    # Webhook registration
    hooks_parser = subparsers.add_parser("register-webhooks", help="Subscribe to upstream changes")
    hooks_parser.add_argument("tenant")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("tenant", nargs="?")

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.add_argument("--url", help="Base URL of a running engine")

    # Test command
    test_parser = subparsers.add_parser("test", help="Test a tenant's connection")
    test_parser.add_argument("tenant")

    args = parser.parse_args(argv)

    if args.command is None:
        print_banner()
        parser.print_help()
        return 0

    commands = {
        "run": cmd_run,
        "sync": cmd_sync,
        "register-webhooks": cmd_register_webhooks,
        "status": cmd_status,
        "stats": cmd_stats,
        "test": cmd_test,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
