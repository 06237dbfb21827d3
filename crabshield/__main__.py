"""Entry point for ``python -m crabshield``."""

from crabshield.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
