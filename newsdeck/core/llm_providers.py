"""Text generation backends for the AI features (OpenAI chat API, Codex CLI)."""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from newsdeck.core.settings import Settings

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"

DEFAULT_CODEX_COMMAND = "codex"
DEFAULT_CODEX_SANDBOX = "read-only"
DEFAULT_CODEX_TIMEOUT = 30.0


class LLMError(Exception):
    """Error during a text generation call."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class TextGenerator(ABC):
    """Plain prompt -> text completion."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        ...

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Return the raw model output for ``prompt``.

        ``temperature`` and ``max_tokens`` are hints; backends without such
        controls ignore them.

        Raises:
            LLMError: If the backend call fails.
            ValueError: If the prompt is blank.
        """
        ...


class OpenAIChatProvider(TextGenerator):
    """OpenAI chat completions over HTTP."""

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_MODEL,
        api_key: str | None = None,
        temperature: float = 0.3,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model = model or DEFAULT_OPENAI_MODEL
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()
        self._temperature = temperature
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    async def generate(
        self,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        if not prompt.strip():
            raise ValueError("prompt is empty")
        if not self._api_key:
            raise LLMError("OPENAI_API_KEY is not set", provider=self.name, retriable=False)

        request_body: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self._temperature if temperature is None else temperature,
        }
        if max_tokens:
            request_body["max_tokens"] = max_tokens

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            delay = INITIAL_DELAY
            last_error: Exception | None = None

            for attempt in range(MAX_RETRIES):
                try:
                    response = await client.post(
                        OPENAI_CHAT_URL,
                        headers={
                            "Authorization": f"Bearer {self._api_key}",
                            "Content-Type": "application/json",
                        },
                        json=request_body,
                    )
                    response.raise_for_status()
                    data = response.json()
                    return data["choices"][0]["message"]["content"] or ""

                except httpx.HTTPStatusError as e:
                    last_error = e
                    status = e.response.status_code
                    if status == 429:
                        if "quota" in e.response.text.lower():
                            raise LLMError(
                                "OpenAI quota exhausted",
                                provider=self.name,
                                retriable=False,
                            ) from e

                        logger.warning(
                            f"Rate limit hit, attempt {attempt + 1}/{MAX_RETRIES}. "
                            f"Waiting {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, MAX_DELAY)

                    elif status == 401:
                        raise LLMError("OpenAI API key rejected", provider=self.name) from e

                    elif status == 404:
                        raise LLMError(f"Model '{self._model}' is not available", provider=self.name) from e

                    else:
                        raise LLMError(
                            f"OpenAI API error: {status} - {e.response.text}",
                            provider=self.name,
                            retriable=status >= 500,
                        ) from e

                except (KeyError, IndexError, TypeError, ValueError) as e:
                    raise LLMError(f"Unexpected OpenAI response: {e}", provider=self.name) from e

            raise LLMError(
                f"Rate limit not cleared after {MAX_RETRIES} attempts",
                provider=self.name,
                retriable=True,
            ) from last_error


# (command, args, stdin) -> (returncode, stdout, stderr)
Runner = Callable[[str, list[str], str], Awaitable[tuple[int, str, str]]]


async def run_subprocess(command: str, args: list[str], stdin: str) -> tuple[int, str, str]:
    """Run ``command`` with ``stdin`` piped in; the process is killed on cancellation."""
    proc = await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate(stdin.encode("utf-8"))
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


@dataclass(frozen=True)
class CodexConfig:
    command: str = DEFAULT_CODEX_COMMAND
    model: str = ""
    web_search: str = ""
    reasoning_effort: str = ""
    reasoning_summary: str = ""
    verbosity: str = ""
    sandbox: str = DEFAULT_CODEX_SANDBOX
    timeout: float = DEFAULT_CODEX_TIMEOUT


class CodexCLIProvider(TextGenerator):
    """Runs ``codex exec`` as a subprocess, prompt on stdin."""

    def __init__(self, config: CodexConfig | None = None, runner: Runner | None = None):
        cfg = config or CodexConfig()
        self._config = CodexConfig(
            command=cfg.command.strip() or DEFAULT_CODEX_COMMAND,
            model=cfg.model.strip(),
            web_search=cfg.web_search.strip(),
            reasoning_effort=cfg.reasoning_effort.strip(),
            reasoning_summary=cfg.reasoning_summary.strip(),
            verbosity=cfg.verbosity.strip(),
            sandbox=cfg.sandbox.strip() or DEFAULT_CODEX_SANDBOX,
            timeout=cfg.timeout if cfg.timeout > 0 else DEFAULT_CODEX_TIMEOUT,
        )
        self._run = runner or run_subprocess

    @property
    def name(self) -> str:
        return "Codex CLI"

    @property
    def config(self) -> CodexConfig:
        return self._config

    def args(self) -> list[str]:
        cfg = self._config
        args = ["exec", "--skip-git-repo-check", "--sandbox", cfg.sandbox, "--color", "never"]
        if cfg.model:
            args += ["-m", cfg.model]
        options = (
            ("web_search", cfg.web_search),
            ("model_reasoning_effort", cfg.reasoning_effort),
            ("model_reasoning_summary", cfg.reasoning_summary),
            ("model_verbosity", cfg.verbosity),
        )
        for key, value in options:
            if value:
                args += ["-c", f'{key}="{value}"']
        args.append("-")
        return args

    async def generate(
        self,
        prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        # codex exec exposes no sampling controls
        if not prompt.strip():
            raise ValueError("prompt is empty")

        try:
            code, stdout, stderr = await asyncio.wait_for(
                self._run(self._config.command, self.args(), prompt),
                timeout=self._config.timeout,
            )
        except asyncio.TimeoutError as e:
            raise LLMError(
                f"codex exec timed out after {self._config.timeout:.0f}s",
                provider=self.name,
                retriable=True,
            ) from e
        except OSError as e:
            raise LLMError(f"codex exec failed: {e}", provider=self.name) from e

        if code != 0:
            reason = stderr.strip() or stdout.strip()
            message = f"codex exec failed: exit status {code}"
            if reason:
                message += f": {reason}"
            raise LLMError(message, provider=self.name)
        return stdout


def get_text_generator(settings: Settings) -> TextGenerator | None:
    """Build the configured backend, or None when AI features are off.

    Raises:
        ValueError: If the provider name is unknown.
    """
    if not settings.ai_enabled:
        return None

    provider = settings.ai_provider.lower()
    if provider == "openai":
        return OpenAIChatProvider(model=settings.ai_model or DEFAULT_OPENAI_MODEL)
    if provider == "codex":
        return CodexCLIProvider(
            CodexConfig(
                command=settings.codex_command,
                model=settings.ai_model,
                web_search=settings.codex_web_search,
                reasoning_effort=settings.codex_reasoning_effort,
                sandbox=settings.codex_sandbox,
                timeout=float(settings.ai_timeout_seconds),
            )
        )
    raise ValueError(f"Unknown AI provider: {provider}. Available: openai, codex, none")
