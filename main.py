#!/usr/bin/env python3
"""
Light Invoice Worker - Main Entry Point

Logs into the Light Agência Virtual portal and downloads the bill PDF of an
installation for a reference month.

Usage:
    python main.py                                   # Read INPUT.json from storage
    python main.py --input input.json                # Explicit input file
    python main.py --username 12345678900 --password x --installation 9988 --month 03/2025
    python main.py --mode http                       # Browserless variant
    python main.py --version                         # Show version
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from billworker import __version__ as VERSION
from billworker.config import Config, get_config, reload_config
from billworker.core.worker import InvoiceWorker
from billworker.storage import ArtifactSink
from billworker.utils.logger import setup_logger


def setup_logging(config: Config, debug: bool = False):
    """Configure logging, including the per-run log inside the storage directory."""
    run_log = Path(config.storage.directory) / config.logging.run_log
    setup_logger(config, debug=debug, run_log=run_log)


def load_config(args: argparse.Namespace) -> Config:
    """Load configuration and apply command line overrides."""
    config = reload_config(args.config) if args.config else get_config()

    if args.mode:
        config.automation.mode = args.mode
    if args.headful:
        config.automation.headless = False
    if args.storage:
        config.storage.directory = args.storage
    if args.debug:
        config.app.debug = True
    return config


def build_input(args: argparse.Namespace, sink: ArtifactSink) -> Optional[Dict[str, Any]]:
    """Input record from --input (or INPUT.json), with individual flags on top."""
    if args.input:
        data = json.loads(Path(args.input).read_text(encoding="utf-8"))
    else:
        data = sink.read_input() or {}

    overrides = {
        "username": args.username,
        "password": args.password,
        "captchaApiKey": args.captcha_key,
        "installationCode": args.installation,
        "referenceMonth": args.month,
    }
    for key, value in overrides.items():
        if value is not None:
            data[key] = value

    logger.info(f"Final Input Object Keys: {', '.join(data) if data else 'null'}")
    return data or None


async def run_worker(args: argparse.Namespace, config: Config) -> int:
    sink = ArtifactSink(
        config.storage.directory,
        store=config.storage.key_value_store,
        dataset=config.storage.dataset,
    )
    worker = InvoiceWorker(config, sink)
    return await worker.run(build_input(args, sink))


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Light Invoice Worker - portal login and bill PDF download"
    )
    parser.add_argument("--version", "-v", action="store_true", help="Show version and exit")
    parser.add_argument("--input", help="JSON input file (default: INPUT.json in storage)")
    parser.add_argument("--username", help="CPF/CNPJ or e-mail")
    parser.add_argument("--password", help="Portal password")
    parser.add_argument("--captcha-key", dest="captcha_key", help="Anti-Captcha API key")
    parser.add_argument("--installation", help="Installation code")
    parser.add_argument("--month", help="Reference month (MM/YYYY)")
    parser.add_argument("--mode", choices=["browser", "http"], help="Execution strategy")
    parser.add_argument("--config", help="Path to config YAML")
    parser.add_argument("--storage", help="Storage directory")
    parser.add_argument("--headful", action="store_true", help="Show the browser window")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.version:
        print(f"Light Invoice Worker v{VERSION}")
        sys.exit(0)

    config = load_config(args)
    setup_logging(config, debug=args.debug)

    try:
        exit_code = asyncio.run(run_worker(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
