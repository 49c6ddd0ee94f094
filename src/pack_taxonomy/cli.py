"""Command-line interface for pack-taxonomy.

Each subcommand reads a pack record file and runs part of the pipeline
through :class:`pack_taxonomy.engine.PackTaxonomyEngine`, printing the
JSON report.  Run ``python -m pack_taxonomy --help`` for usage.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config_service import ConfigService, RunConfig
from .engine import PackTaxonomyEngine
from .errors import ConfigError

COMMAND_STEPS = {
    "classify": ("classify",),
    "cluster": ("cluster",),
    "matrix": ("classify", "cluster", "matrix"),
    "propose": ("classify", "cluster", "matrix", "propose"),
    "run": ("classify", "cluster", "matrix", "propose"),
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pack-taxonomy",
        description="pack-taxonomy - classify sample packs and propose a folder structure",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument("packs", help="Path to the pack records JSON file")
        subparser.add_argument("--taxonomy", help="Path to a taxonomy JSON file")
        subparser.add_argument("--config-dir", help="Directory holding config.json / taxonomy.json")
        subparser.add_argument(
            "--portable",
            "-p",
            action="store_true",
            help="Force portable mode (ignored if portable.flag is present)",
        )
        subparser.add_argument("--ai-endpoint", help="OpenAI-compatible chat completions URL")
        subparser.add_argument("--ai-model", help="Model name sent to the AI endpoint")
        subparser.add_argument("--no-ai", action="store_true", help="Disable the AI fallback")
        subparser.add_argument("--workers", type=int, default=1, help="Threads for the similarity matrix")
        subparser.add_argument("--output", "-o", help="Write the report to this file instead of stdout")
        subparser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    for command, help_text in (
        ("classify", "Classify packs (bundles, taxonomy, AI fallback)"),
        ("cluster", "Cluster equivalent folders and build fusion groups"),
        ("matrix", "Classify packs and build the adaptive matrix"),
        ("propose", "Classify, build the matrix and rank structure proposals"),
        ("run", "Run every step"),
    ):
        add_common(subparsers.add_parser(command, help=help_text))
    return parser


def _construct_engine(args: argparse.Namespace, config_service: ConfigService) -> PackTaxonomyEngine:
    portable = bool(args.portable)
    raw_config = config_service.load_config(cli_portable=portable)
    if args.ai_endpoint:
        raw_config["ai_endpoint"] = args.ai_endpoint
    if args.ai_model:
        raw_config["ai_model"] = args.ai_model
    if args.no_ai:
        raw_config["ai_enabled"] = False
    run_config = RunConfig.from_dict(raw_config)

    taxonomy_path = args.taxonomy or run_config.taxonomy_path
    index = config_service.load_taxonomy(
        Path(taxonomy_path).expanduser() if taxonomy_path else None,
        cli_portable=portable,
    )
    return PackTaxonomyEngine(index=index, config=run_config, workers=max(1, int(args.workers or 1)))


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config_service = ConfigService(
        app_dir=Path.cwd(),
        config_dir_override=Path(args.config_dir).expanduser() if args.config_dir else None,
    )
    try:
        packs = config_service.load_packs(Path(args.packs).expanduser())
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    engine = _construct_engine(args, config_service)
    report = engine.run(packs, steps=COMMAND_STEPS[args.command], log_to_console=args.verbose)
    text = json.dumps(report, indent=2)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
    else:
        print(text)
    return 0 if not report.get("errors") else 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
