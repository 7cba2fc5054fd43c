"""Module entrypoint for ``python -m shellgate``."""

from __future__ import annotations

from shellgate.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
