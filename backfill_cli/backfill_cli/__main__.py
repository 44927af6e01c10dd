"""Entry point for `python -m backfill_cli` and the `tidefill` console script."""

from __future__ import annotations

from backfill_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
