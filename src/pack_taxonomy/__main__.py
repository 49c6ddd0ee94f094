# src/pack_taxonomy/__main__.py
from __future__ import annotations


def main() -> int:
    """
    Module entrypoint:
      - python -m pack_taxonomy            -> CLI help
      - python -m pack_taxonomy <command>  -> CLI command
    """
    from pack_taxonomy.cli import main as cli_main

    # Let the CLI parse sys.argv itself.
    return int(cli_main())


if __name__ == "__main__":
    raise SystemExit(main())
