"""Entry point for ``python -m fxinfer``."""

from fxinfer.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
