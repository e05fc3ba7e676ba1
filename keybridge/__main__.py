"""Entry point for keybridge: python -m keybridge"""

import logging
import sys

from keybridge.app import build_parser, KeybridgeApp


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return KeybridgeApp(args).run()


if __name__ == "__main__":
    sys.exit(main())
