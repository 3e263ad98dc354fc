"""Module entrypoint for ``python -m taskwave``."""

from __future__ import annotations

from taskwave.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
