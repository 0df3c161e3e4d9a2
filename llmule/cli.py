#!/usr/bin/env python3
"""LLMule CLI - share your local LLMs with the LLMule network.

Usage:
    llmule                      # connect and serve requests
    llmule run --api-key KEY    # same, with an explicit key
    llmule status               # show which local backends and models are found

Environment variables (alternative to args, a .env file is also read):
    SERVER_URL              Network WebSocket URL
    API_URL                 Network HTTP API (registration)
    API_KEY                 API key
    OLLAMA_URL              Ollama server (default: http://localhost:11434)
    LMSTUDIO_URL            LM Studio server (default: http://localhost:1234/v1)
    EXO_URL                 EXO server (disabled when unset)
    MAX_CONCURRENT_MODELS   Distinct models served at once (default: 2)
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.table import Table

from .config import SessionSettings, load_config
from .credentials import CredentialProvider
from .errors import FatalSessionError
from .messages import WorkResponse
from .registry import BackendRegistry
from .session import SessionManager

log = logging.getLogger("llmule")
console = Console()


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


class LLMuleCLI:
    """Headless LLMule client."""

    def __init__(
        self,
        settings: SessionSettings,
        registry: BackendRegistry,
        credentials: CredentialProvider,
    ):
        self.settings = settings
        self.registry = registry
        self.credentials = credentials
        self.session: Optional[SessionManager] = None

        # Metrics
        self._requests = 0
        self._failures = 0
        self._tokens = 0
        self._start_time: Optional[datetime] = None

    async def run(self) -> int:
        """Run the client. Returns exit code."""
        self._start_time = datetime.now()
        self.session = SessionManager(self.registry, self.credentials, self.settings)
        self.session.on_request_complete = self._on_request_complete

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.session.request_shutdown)
            except NotImplementedError:
                # Windows: KeyboardInterrupt reaches asyncio.run instead
                pass

        log.info("=" * 50)
        log.info("LLMule client - Starting")
        log.info("=" * 50)

        try:
            await self.session.run()
            return 0
        except FatalSessionError as e:
            log.error(f"Fatal error: {e}")
            return 1
        finally:
            await self.registry.close()
            self._log_stats()
            log.info("Goodbye!")

    def _on_request_complete(self, response: WorkResponse, elapsed_ms: float) -> None:
        """Called when a request completes."""
        self._requests += 1
        if response.ok:
            tokens = response.result.usage.total_tokens
            self._tokens += tokens
            log.info(f"Request #{self._requests}: {tokens} tokens | {elapsed_ms / 1000:.1f}s")
        else:
            self._failures += 1
            log.info(f"Request #{self._requests}: {response.result.code} | {elapsed_ms / 1000:.1f}s")

    def _log_stats(self) -> None:
        if not self._start_time:
            return
        elapsed = (datetime.now() - self._start_time).total_seconds()
        log.info(
            f"Stats: {int(elapsed // 60)}m uptime | "
            f"{self._requests} requests ({self._failures} failed) | "
            f"{self._tokens:,} tokens"
        )


async def show_status(registry: BackendRegistry) -> int:
    """Print which backends are reachable and what they serve."""
    try:
        availability = await registry.check_backends()
        models = await registry.discover_models()
    finally:
        await registry.close()

    table = Table(title="Local LLM backends")
    table.add_column("Backend")
    table.add_column("URL")
    table.add_column("Status")
    table.add_column("Models")
    for kind, adapter in registry.adapters.items():
        names = [m.name for m in models if m.backend_type is kind]
        status = "[green]running[/green]" if availability.get(kind) else "[red]not detected[/red]"
        table.add_row(kind.value, adapter.base_url, status, ", ".join(names) or "-")
    console.print(table)
    console.print(f"Total models: {len(models)}")
    return 0 if models else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llmule",
        description="LLMule client - share your local LLMs with the network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  llmule
  llmule run --api-key KEY --max-concurrent 1
  llmule status
        """,
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run", "status"),
        default="run",
        help="run (default) or status",
    )
    parser.add_argument("--server", default=None, help="Network WebSocket URL (or SERVER_URL)")
    parser.add_argument("--api-key", default="", help="API key (or set API_KEY env var)")
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Distinct models served concurrently (or MAX_CONCURRENT_MODELS)",
    )
    parser.add_argument(
        "--no-input",
        action="store_true",
        help="Never prompt; fail if no API key is configured",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config()
        settings = SessionSettings.from_config(
            config,
            server_url=args.server,
            max_concurrency=args.max_concurrent,
        )
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        sys.exit(2)

    registry = BackendRegistry.from_config(config)

    if args.command == "status":
        sys.exit(asyncio.run(show_status(registry)))

    cli = LLMuleCLI(
        settings=settings,
        registry=registry,
        credentials=CredentialProvider(
            api_key=args.api_key,
            api_url=config["API_URL"],
            interactive=not args.no_input and sys.stdin.isatty(),
        ),
    )
    try:
        exit_code = asyncio.run(cli.run())
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
