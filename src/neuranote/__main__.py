"""Entry point: python -m neuranote <command>

- summarize <image|voice> <file> --user <id>: run the pipeline and save the summary
- balance --user <id>:                        show the token balance and recent history
- signup --user <id>:                         open a token account with the signup bonus
- serve:                                      daemon mode (location webhook + scheduler)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from neuranote.config import NeuraNoteConfig, load_config

USAGE = """\
Usage: python -m neuranote <command>
  summarize <image|voice> <file> --user <id>   Summarize a file and save it
  balance --user <id>                          Show token balance and history
  signup --user <id>                           Open an account with the signup bonus
  serve                                        Daemon mode with webhook + scheduler"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _usage_error() -> None:
    print(USAGE)
    sys.exit(1)


def _pop_option(args: list[str], flag: str) -> str | None:
    if flag not in args:
        return None
    i = args.index(flag)
    if i + 1 >= len(args):
        _usage_error()
    value = args[i + 1]
    del args[i : i + 2]
    return value


async def _summarize(config: NeuraNoteConfig, kind_name: str, file_path: Path, user_id: str) -> None:
    from neuranote.daemon import NeuraNoteDaemon
    from neuranote.models.summary import ContentKind
    from neuranote.pipeline.progress import ProgressEvent

    def show(event: ProgressEvent) -> None:
        print(f"[{event.fraction:4.0%}] {event.message}")

    app = NeuraNoteDaemon(config).build_app()
    try:
        summary = await app.summarize_and_save(ContentKind(kind_name), file_path, user_id, show)
    finally:
        await app.stop()

    print(f"\n{summary.display_title}\n")
    print(summary.summarized_text)
    for dt in summary.date_times:
        print(f"  date: {dt.original_text} → {dt.parsed_datetime:%Y-%m-%d %H:%M} ({dt.kind.value})")
    for loc in summary.locations:
        where = f" → {loc.resolved_address}" if loc.resolved_address else ""
        print(f"  place: {loc.original_text}{where} ({loc.kind.value})")
    print(f"\nid={summary.id} cost={summary.tokens_cost} confidence={summary.confidence_score:.2f}")


async def _balance(config: NeuraNoteConfig, user_id: str) -> None:
    from neuranote.store.documents import DocumentStore
    from neuranote.tokens.ledger import TokenLedger

    ledger = TokenLedger(DocumentStore(config.data_dir), config.tokens)
    balance = await ledger.get_balance(user_id)
    print(f"{user_id}: {balance.remaining_tokens} of {balance.total_tokens} tokens remaining")
    for tx in await ledger.history(user_id, limit=10):
        print(
            f"  {tx.created_at:%Y-%m-%d %H:%M}  {tx.signed_amount:+d}  "
            f"{tx.description or tx.source.display_name}  ({tx.balance_before} → {tx.balance_after})"
        )


async def _signup(config: NeuraNoteConfig, user_id: str) -> None:
    from neuranote.store.documents import DocumentStore
    from neuranote.tokens.ledger import TokenLedger

    ledger = TokenLedger(DocumentStore(config.data_dir), config.tokens)
    tx = await ledger.open_account(user_id)
    if tx is None:
        print(f"{user_id} already has an account")
    else:
        print(f"Opened account for {user_id} with {tx.amount} tokens")


def _run_serve(config: NeuraNoteConfig) -> None:
    """Daemon mode: webhook + scheduler."""
    _setup_logging(config.log_level)

    from neuranote.daemon import NeuraNoteDaemon

    daemon = NeuraNoteDaemon(config)
    asyncio.run(daemon.run())


def main() -> None:
    args = sys.argv[1:]
    cmd = args.pop(0) if args else ""
    config = load_config()

    if cmd == "serve":
        _run_serve(config)
        return

    _setup_logging(config.log_level)
    user_id = _pop_option(args, "--user")
    if cmd == "summarize" and user_id and len(args) == 2 and args[0] in ("image", "voice"):
        from neuranote.errors import NeuraNoteError

        try:
            asyncio.run(_summarize(config, args[0], Path(args[1]), user_id))
        except NeuraNoteError as e:
            print(f"Error ({e.kind.value}): {e.message}", file=sys.stderr)
            sys.exit(2)
    elif cmd == "balance" and user_id and not args:
        asyncio.run(_balance(config, user_id))
    elif cmd == "signup" and user_id and not args:
        asyncio.run(_signup(config, user_id))
    else:
        _usage_error()


if __name__ == "__main__":
    main()
