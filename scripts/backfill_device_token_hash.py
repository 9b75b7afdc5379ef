import argparse
import logging
from pathlib import Path
import sys

if __package__ is None or __package__ == "":
    sys.path.append(str(Path(__file__).resolve().parents[1]))

from app.core.crypto import ConfigError, get_codec
from app.services.device_backfill import backfill_device_token_hashes

logger = logging.getLogger("backfill_device_token_hash")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compute token hashes for devices registered before hashing.")
    parser.add_argument("--dry-run", "--dry", dest="dry_run", action="store_true")
    parser.add_argument("--chunk-size", type=int, default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    codec = get_codec()
    try:
        codec.validate()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    result = backfill_device_token_hashes(chunk_size=args.chunk_size, dry_run=args.dry_run, codec=codec)
    return 1 if result.failures > 0 else 0


if __name__ == "__main__":
    raise SystemExit(main())
