"""API key acquisition.

Looks for a key in the command line, the environment and the saved config,
in that order. When none is found it walks the user through registering an
email address with the network.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Optional

import httpx
from rich.console import Console
from rich.prompt import Confirm, Prompt

from .config import LLMuleConfig, load_config
from .errors import AuthenticationMissing
from .messages import Credential

logger = logging.getLogger(__name__)


class CredentialProvider:
    """Supplies the API key, prompting for registration if absent."""

    def __init__(
        self,
        api_key: str = "",
        api_url: Optional[str] = None,
        interactive: bool = True,
        config_path: Optional[Path] = None,
        console: Optional[Console] = None,
    ):
        self.api_key = api_key
        self.api_url = (api_url or load_config()["API_URL"]).rstrip("/")
        self.interactive = interactive
        self.config_path = config_path
        self.console = console or Console()
        self._credential: Optional[Credential] = None

    async def get_credential(self) -> Credential:
        """Return the API key, registering interactively if needed.

        Raises:
            AuthenticationMissing: if no key exists and the user declined,
                aborted, or registration failed.
        """
        if self._credential:
            return self._credential

        token = self.api_key or load_config()["API_KEY"]
        if not token:
            token = LLMuleConfig.load(self.config_path).api_key
        if not token:
            if not self.interactive:
                raise AuthenticationMissing(
                    "No API key found. Set API_KEY or run interactively to register"
                )
            token = await self._register()

        self._credential = Credential(token=token)
        return self._credential

    async def _register(self) -> str:
        self.console.print("\n[yellow]No API key found. Starting registration process...[/yellow]")

        email = await self._ask(self._ask_email)
        if not email:
            raise AuthenticationMissing("Registration aborted")

        self.console.print("\n[cyan]Registering with server...[/cyan]")
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(f"{self.api_url}/auth/register", json={"email": email})
        except httpx.HTTPError as e:
            raise AuthenticationMissing(f"Registration failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not response.is_success or not data.get("apiKey"):
            reason = data.get("error")
            raise AuthenticationMissing(
                f"Registration failed: {reason or f'HTTP {response.status_code}'}"
            )

        api_key = data["apiKey"]
        self.console.print("\n[green]Registration successful![/green]")
        self.console.print("Please check your email to verify your account")
        self.console.print(f"\nYour API key: [bold]{api_key}[/bold]")

        verified = await self._ask(self._ask_verified)
        if not verified:
            raise AuthenticationMissing("Please verify your email before continuing")

        config = LLMuleConfig.load(self.config_path)
        config.api_key = api_key
        config.save(self.config_path)
        logger.info("API key saved to config")
        return api_key

    async def _ask(self, prompt_fn):
        """Run a blocking prompt on a daemon thread.

        If the awaiting task is cancelled the thread is abandoned; a prompt
        still reading stdin never keeps the process from exiting.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(result, error):
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def worker():
            result, error = None, None
            try:
                result = prompt_fn()
            except (EOFError, KeyboardInterrupt):
                pass
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(deliver, result, error)
            except RuntimeError:
                # The loop is gone; nobody is waiting for the answer
                pass

        threading.Thread(target=worker, name="llmule-prompt", daemon=True).start()
        return await future

    def _ask_email(self) -> str:
        while True:
            email = Prompt.ask("Please enter your email", console=self.console).strip()
            if not email:
                return ""
            if "@" in email:
                return email
            self.console.print("[red]Please enter a valid email[/red]")

    def _ask_verified(self) -> bool:
        return Confirm.ask(
            "Have you verified your email? (Check your inbox)", console=self.console
        )
