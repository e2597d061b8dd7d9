"""Entry point for the graphpipe application."""

from __future__ import annotations

import sys

from .cli.app import run_cli


def main() -> int:
    """Run the graphpipe command dispatcher."""

    return run_cli()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
