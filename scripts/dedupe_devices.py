import argparse
import logging
from pathlib import Path
import sys

if __package__ is None or __package__ == "":
    sys.path.append(str(Path(__file__).resolve().parents[1]))

from app.core.crypto import ConfigError, get_codec
from app.services.device_dedupe import dedupe_devices

logger = logging.getLogger("dedupe_devices")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Merge device rows that share a token hash.")
    parser.add_argument("--apply", action="store_true", help="Write merges and delete duplicates.")
    parser.add_argument("--dry-run", "--dry", dest="dry_run", action="store_true", help="Only report (default).")
    parser.add_argument("--page-size", type=int, default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        get_codec().validate()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    apply = args.apply and not args.dry_run
    if not apply:
        logger.info("Running in dry-run mode. Pass --apply to delete duplicates.")

    result = dedupe_devices(apply=apply, page_size=args.page_size)
    return 1 if result.failures > 0 else 0


if __name__ == "__main__":
    raise SystemExit(main())
