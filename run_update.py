from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from components.entity_loader import load_entities
from enricher.config import Config, load_config
from enricher.pipeline import Pipeline
from extensions.logging import LoggingExtension

logger = logging.getLogger("run_update")


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Fill in PANTONE hex values by searching each code in a pooled headless browser"
    )
    p.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING (default from LOG_LEVEL)")
    p.add_argument("--checkpoint", type=Path, default=None, help="Checkpoint file (default data/checkpoint.json)")

    sub = p.add_subparsers(dest="command", required=True)

    up = sub.add_parser("update", help="Retry pending failures, then run or resume the main pass")
    up.add_argument("--colors", type=Path, default=None, help="Color list (.json or .csv); default data/colors.json")
    up.add_argument("--incremental", type=Path, default=None,
                    help="Existing colors file; only colors that are missing, changed or stale are processed")
    up.add_argument("--limit", type=int, default=None, help="Only load the first N colors")
    up.add_argument("--concurrency", type=int, default=None, help="1 = sequential, >1 = batched concurrent mode")
    up.add_argument("--batch-size", type=int, default=None, help="Colors per concurrent batch")
    up.add_argument("--save-interval", type=int, default=None, help="Sequential mode: save every N colors")
    up.add_argument("--pool-size", type=int, default=None, help="Max browser sessions")

    sub.add_parser("retry", help="Reprocess failed codes once each, then exit")

    st = sub.add_parser("stats", help="Print checkpoint statistics without processing")
    st.add_argument("--json", action="store_true", help="Print as JSON")

    rs = sub.add_parser("restore", help="Replace the checkpoint with a full backup")
    rs.add_argument("--backup", type=str, default=None, help="Backup file name (default: newest)")

    return p.parse_args(argv)


def _apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    changes = {}
    for arg_name, field_name in (
        ("concurrency", "concurrency"),
        ("batch_size", "batch_size"),
        ("save_interval", "save_interval"),
        ("pool_size", "pool_max_sessions"),
    ):
        val = getattr(args, arg_name, None)
        if val is not None:
            changes[field_name] = max(1, val)
    if args.checkpoint is not None:
        changes["checkpoint_file"] = args.checkpoint
    if args.log_level:
        changes["log_level"] = args.log_level.upper()
    return dataclasses.replace(cfg, **changes) if changes else cfg


def _print_stats(stats: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(stats, indent=2, ensure_ascii=False))
        return
    print(f"Cursor:        {stats['cursor']}")
    print(f"Colors:        {stats['entities']} ({stats['with_hex']} with hex)")
    print(f"Total:         {stats['total']}")
    print(f"Updated:       {stats['updated']}")
    print(f"Failed:        {stats['failed']}")
    print(f"Skipped:       {stats['skipped']}")
    print(f"Success rate:  {stats['success_rate']:.2f}%")
    print(f"Last updated:  {stats['last_updated']}")
    if not stats["consistent"]:
        print("WARNING: counters do not add up to total")
    if stats["failed_codes"]:
        print("Failed codes:")
        for code in stats["failed_codes"]:
            print(f"  - {code}")


# ----------------------------
# Main
# ----------------------------

async def main_async(args: argparse.Namespace) -> int:
    cfg = _apply_overrides(load_config(), args)
    log_ext = LoggingExtension(cfg.log_file, console_level=getattr(logging, cfg.log_level, logging.INFO))
    try:
        pipeline = Pipeline(cfg, log_ext=log_ext)

        if args.command == "stats":
            _print_stats(await pipeline.stats(), args.json)
            return 0

        if args.command == "restore":
            try:
                cp = await pipeline.restore(args.backup)
            except FileNotFoundError as e:
                logger.error("Restore failed: %s", e)
                return 2
            logger.info("Checkpoint restored: cursor=%d colors=%d", cp.cursor, len(cp.result_set))
            return 0

        entities = existing = None
        if args.command == "update":
            colors_path = args.colors or cfg.colors_file
            try:
                entities = load_entities(colors_path, limit=args.limit)
                if args.incremental is not None:
                    existing = load_entities(args.incremental)
            except FileNotFoundError as e:
                logger.error("Input file not found: %s", e)
                return 2
            except (ValueError, json.JSONDecodeError) as e:
                logger.error("Input file unreadable: %s", e)
                return 2

        async def _work() -> None:
            try:
                await pipeline.start()
                if args.command == "update":
                    await pipeline.update(entities, existing=existing)
                else:
                    await pipeline.retry()
            finally:
                await pipeline.close()

        code = await pipeline.run_guarded(_work)
        logger.info("Finished command=%s exit_code=%d", args.command, code)
        return code
    finally:
        log_ext.close()


# ----------------------------
# Entrypoint
# ----------------------------

def main(argv: Optional[list[str]] = None) -> None:
    sys.exit(asyncio.run(main_async(_parse_args(argv))))

if __name__ == "__main__":
    main()
