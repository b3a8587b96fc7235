"""Command-line entry point for MailHub."""

from __future__ import annotations

import argparse
import getpass
import logging
import signal
from pathlib import Path

from mailhub.core import (
    AppSettings,
    ServiceContainer,
    build_container,
    configure_logging,
    load_app_settings,
)
from mailhub.core.errors import MailhubError
from mailhub.core.models import PrivacyLevel, ProviderType
from mailhub.jobs import register_schedules
from mailhub.security import CredentialVault

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="MailHub sync and classification engine")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=[
            "info",
            "worker",
            "sync",
            "classify",
            "override",
            "add-account",
            "generate-key",
        ],
        help="Operation to execute.",
    )
    parser.add_argument(
        "--account-id",
        dest="account_id",
        type=int,
        default=None,
        help="Account to sync (default: every enabled account).",
    )
    parser.add_argument(
        "--message-id",
        dest="message_id",
        type=int,
        default=None,
        help="Message to classify or override (default: all unclassified).",
    )
    parser.add_argument(
        "--category-id",
        dest="category_id",
        type=int,
        default=None,
        help="Category chosen by the override command.",
    )
    parser.add_argument(
        "--remember",
        choices=["none", "sender", "domain"],
        default="none",
        help="Learn a rule from the override for the sender or its domain.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Reclassify messages that already have a category.",
    )
    parser.add_argument("--user-email", dest="user_email", default=None)
    parser.add_argument(
        "--provider",
        choices=[str(item) for item in ProviderType],
        default=str(ProviderType.IMAP),
    )
    parser.add_argument("--email", dest="email_address", default=None)
    parser.add_argument("--imap-host", dest="imap_host", default=None)
    parser.add_argument("--imap-port", dest="imap_port", type=int, default=None)
    parser.add_argument("--imap-username", dest="imap_username", default=None)
    parser.add_argument(
        "--privacy",
        choices=[str(item) for item in PrivacyLevel],
        default=None,
        help="Defaults to body_local_only for proton and full_access otherwise.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    command = args.command
    if command == "generate-key":
        print(CredentialVault.generate_key())
        return 0
    if command == "info":
        _print_info(settings)
        return 0

    container = build_container(settings)
    try:
        if command == "worker":
            _run_worker(container, settings)
        elif command == "sync":
            _run_sync(container, args.account_id)
        elif command == "classify":
            _run_classify(container, args.message_id, force=args.force)
        elif command == "override":
            _run_override(container, args)
        elif command == "add-account":
            _run_add_account(container, args, settings)
    except (MailhubError, KeyError) as exc:
        print(f"{command} failed: {exc}")
        return 1
    finally:
        container.close()
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging, secrets=settings.secret_values())
    raise SystemExit(execute(args, settings))


def _print_info(settings: AppSettings) -> None:
    print("MailHub is ready. Configure the vault key and LLM settings to get started.")
    print(f"Database path: {settings.storage.db_path}")
    print(f"Vault key configured: {'yes' if settings.vault.key else 'no'}")
    print(f"LLM provider: {settings.llm.provider} ({settings.llm.model})")
    print(f"Sync tick: {settings.queue.tick_cron}")


def _run_worker(container: ServiceContainer, settings: AppSettings) -> None:
    queue = container.resolve("queue")
    register_schedules(queue, settings.queue)
    pool = container.resolve("worker_pool")
    signal.signal(signal.SIGTERM, lambda *_: pool.request_stop())
    pool.start()
    try:
        pool.wait()
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; draining workers")
    finally:
        pool.stop()


def _run_sync(container: ServiceContainer, account_id: int | None) -> None:
    orchestrator = container.resolve("orchestrator")
    store = container.resolve("store")
    if account_id is not None:
        account_ids = [account_id]
    else:
        account_ids = [account.id for account in store.list_accounts(enabled_only=True)]
    if not account_ids:
        print("No enabled accounts to sync.")
        return
    for current in account_ids:
        outcome = orchestrator.sync_account(current)
        print(
            f"Account {current}: {outcome.status} "
            f"({len(outcome.new_message_ids)} new message(s), cursor {outcome.cursor})"
        )


def _run_classify(
    container: ServiceContainer, message_id: int | None, *, force: bool
) -> None:
    engine = container.resolve("engine")
    store = container.resolve("store")
    message_ids = (
        [message_id] if message_id is not None else store.list_unclassified_message_ids()
    )
    classified = 0
    for current in message_ids:
        outcome = engine.classify_message(current, force=force)
        if outcome is None:
            continue
        classified += 1
        review = " (needs review)" if outcome.needs_human_review else ""
        print(
            f"Message {current}: {outcome.category_name} "
            f"{outcome.confidence:.2f}{review}"
        )
    print(f"Classified {classified} message(s).")


def _run_override(container: ServiceContainer, args: argparse.Namespace) -> None:
    if args.message_id is None or args.category_id is None:
        raise SystemExit("override requires --message-id and --category-id")
    engine = container.resolve("engine")
    rule = engine.apply_override(
        args.message_id,
        args.category_id,
        make_permanent=args.remember != "none",
        apply_to_domain=args.remember == "domain",
    )
    print(f"Message {args.message_id} filed to category {args.category_id}.")
    if rule is not None:
        print(f"Learned rule {rule.id}: {rule.match_type}={rule.match_value}")


def _run_add_account(
    container: ServiceContainer, args: argparse.Namespace, settings: AppSettings
) -> None:
    if not args.user_email or not args.email_address:
        raise SystemExit("add-account requires --user-email and --email")
    store = container.resolve("store")
    vault = container.resolve("vault")
    provider = ProviderType(args.provider)
    user = store.find_user_by_email(args.user_email) or store.create_user(
        args.user_email
    )
    password = getpass.getpass(f"IMAP password for {args.email_address}: ")
    account = store.create_account(
        user.id,
        provider,
        args.email_address,
        imap_password_enc=vault.encrypt(password) if password else None,
        imap_host=args.imap_host,
        imap_port=args.imap_port,
        imap_username=args.imap_username,
        privacy_level=PrivacyLevel(args.privacy) if args.privacy else None,
        sync_interval_minutes=settings.sync.default_interval_minutes,
    )
    print(f"Added {provider} account {account.id} for {account.email_address}.")


if __name__ == "__main__":
    main()
