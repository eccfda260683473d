# scriptvet: Remote Script Trust Verification
# Copyright (C) 2026 scriptvet Project Contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""LLM judge: BYOK adapter for Gemini, Claude, OpenAI, and local models.

Each provider turns a prompt into a parsed JSON object. Providers raise
ProviderError on any failure; the narrator decides what that means for
the analysis.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from scriptvet.config import load_config
from scriptvet.exceptions import ProviderError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("gemini", "claude", "openai", "ollama", "local_openai")
GEMINI_DEFAULT_MODEL = "gemini-2.5-flash"
CLAUDE_DEFAULT_MODEL = "claude-sonnet-4-20250514"
OPENAI_DEFAULT_MODEL = "gpt-5-mini"
OLLAMA_DEFAULT_MODEL = "llama3"
OLLAMA_DEFAULT_HOST = "http://localhost:11434"
LOCAL_OPENAI_DEFAULT_URL = "http://localhost:11434/v1"

MAX_OUTPUT_TOKENS = 4096

# ── System prompt for the narrator ──

NARRATOR_SYSTEM_PROMPT = """You are a security analyst reviewing shell scripts before someone runs them on their machine. Installers often download and execute further scripts; you are given the script itself plus the results of fetching and checking every remote script it executes.

## What You Receive

1. The full text of the script under review.
2. A list of remote scripts it executes. For each one:
   - `url`: where it was fetched from
   - `status`: `verified` (content matches a curated hash), `unverified` (fetched, but the hash is unknown or changed), or `error` (could not be fetched)
   - `detail`: why the status was assigned
   - `digest`: SHA-256 of the fetched content, when available
   - `riskScore`: the score already assigned to that script after its own review (1-10)
   - `truncated`: true when the script was not reviewed because the nesting limit was reached
   - `excerpt`: the first part of the fetched content

## How To Judge

- Read the script like a story. What does it install, where does it write, what does it run as root?
- Treat remote scripts as part of the script. An unverified or unreachable script is a risk in itself because nobody can say what it will do at run time.
- Look for: pipe-to-shell, eval of downloaded content, disabled TLS checks, plain HTTP downloads, encoded payloads, reverse shells, persistence (cron, shell rc files, services), credential access, destructive deletes.
- List every binary the script downloads and runs or installs (for example `kubectl`, `docker-compose`, `helm`). Only list names that appear in the script.

## Scoring

`riskScore` is an integer from 1 (harmless) to 10 (do not run). It must be at least as high as the highest `riskScore` of any remote script listed.

## What You Deliver

Respond in JSON only:

```json
{
    "riskScore": <integer 1-10>,
    "report": "Markdown report: a one-paragraph summary, then the concerns you found with line references, then what a careful user should check before running it.",
    "billOfMaterials": {
        "externalBinaries": ["names of downloaded binaries"]
    }
}
```
"""


def build_narrative_prompt(
    script_content: str,
    verification_results: list[dict[str, Any]],
) -> str:
    """Build the user prompt for one script."""
    parts = ["## Script under review\n", "```sh", script_content.rstrip("\n"), "```\n"]

    parts.append("## Remote scripts executed by this script\n")
    if verification_results:
        parts.append("```json")
        parts.append(json.dumps(verification_results, indent=2, sort_keys=True))
        parts.append("```")
    else:
        parts.append("None.")

    return "\n".join(parts)


def parse_json_text(text: Optional[str]) -> dict[str, Any]:
    """Parse a model response that should be a JSON object.

    Tolerates a surrounding ```json fence, which some models add even when
    asked not to.
    """
    if not text or not text.strip():
        raise ProviderError("Empty response from model")

    body = text.strip()
    if body.startswith("```"):
        body = body.split("\n", 1)[1] if "\n" in body else ""
        if body.rstrip().endswith("```"):
            body = body.rstrip()[:-3]

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ProviderError(f"Model response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderError("Model response is not a JSON object")
    return data


class LLMProvider(ABC):
    """Base class for LLM providers."""

    name = "llm"

    async def analyze(self, prompt: str) -> dict[str, Any]:
        """Send prompt and return the parsed JSON object.

        Runs the blocking SDK call in a worker thread so concurrent fetches
        keep moving.
        """
        return await asyncio.to_thread(self.analyze_sync, prompt)

    @abstractmethod
    def analyze_sync(self, prompt: str) -> dict[str, Any]:
        """Synchronous version of analyze."""
        ...


class GeminiProvider(LLMProvider):
    """Google Gemini provider."""

    name = "gemini"

    def __init__(self, api_key: str, model_name: str = GEMINI_DEFAULT_MODEL) -> None:
        self.api_key = api_key
        self.model_name = model_name

    def analyze_sync(self, prompt: str) -> dict[str, Any]:
        try:
            from google import genai
            from google.genai import types
        except ImportError as e:
            raise ProviderError(
                "google-genai not installed. Install with: pip install 'scriptvet[llm]'"
            ) from e

        try:
            client = genai.Client(api_key=self.api_key)
            response = client.models.generate_content(
                model=self.model_name,
                contents=f"{NARRATOR_SYSTEM_PROMPT}\n\n{prompt}",
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                ),
            )
        except Exception as e:
            raise ProviderError(f"Gemini request failed: {e}") from e
        return parse_json_text(response.text)


class ClaudeProvider(LLMProvider):
    """Anthropic Claude provider."""

    name = "claude"

    def __init__(self, api_key: str, model_name: str = CLAUDE_DEFAULT_MODEL) -> None:
        self.api_key = api_key
        self.model_name = model_name

    def analyze_sync(self, prompt: str) -> dict[str, Any]:
        try:
            import anthropic
        except ImportError as e:
            raise ProviderError(
                "anthropic not installed. Install with: pip install 'scriptvet[llm]'"
            ) from e

        try:
            client = anthropic.Anthropic(api_key=self.api_key)
            response = client.messages.create(
                model=self.model_name,
                max_tokens=MAX_OUTPUT_TOKENS,
                system=NARRATOR_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as e:
            raise ProviderError(f"Claude request failed: {e}") from e
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return parse_json_text(text)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    name = "openai"

    def __init__(self, api_key: str, model_name: str = OPENAI_DEFAULT_MODEL) -> None:
        self.api_key = api_key
        self.model_name = model_name

    def _client(self):
        from openai import OpenAI

        return OpenAI(api_key=self.api_key)

    def analyze_sync(self, prompt: str) -> dict[str, Any]:
        try:
            client = self._client()
        except ImportError as e:
            raise ProviderError(
                "openai not installed. Install with: pip install 'scriptvet[llm]'"
            ) from e

        try:
            response = client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {"role": "system", "content": NARRATOR_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                max_completion_tokens=MAX_OUTPUT_TOKENS,
            )
        except Exception as e:
            raise ProviderError(f"{self.name} request failed: {e}") from e
        return parse_json_text(response.choices[0].message.content)


class LocalOpenAIProvider(OpenAIProvider):
    """Local OpenAI-compatible server (LM Studio, llama.cpp, vLLM, etc.)."""

    name = "local_openai"

    def __init__(self, base_url: str, model_name: str) -> None:
        super().__init__(api_key="not-needed", model_name=model_name)
        self.base_url = base_url.rstrip("/")

    def _client(self):
        from openai import OpenAI

        return OpenAI(base_url=self.base_url, api_key=self.api_key)


class OllamaProvider(LLMProvider):
    """Ollama local provider."""

    name = "ollama"

    def __init__(
        self,
        host: str = OLLAMA_DEFAULT_HOST,
        model: str = OLLAMA_DEFAULT_MODEL,
    ) -> None:
        self.host = host.rstrip("/")
        self.model = model

    def analyze_sync(self, prompt: str) -> dict[str, Any]:
        try:
            response = httpx.post(
                f"{self.host}/api/generate",
                json={
                    "model": self.model,
                    "prompt": f"{NARRATOR_SYSTEM_PROMPT}\n\n{prompt}",
                    "stream": False,
                    "format": "json",
                },
                timeout=120.0,
            )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"Ollama request failed: {e}") from e
        if not isinstance(result, dict):
            raise ProviderError("Ollama returned an unexpected payload")
        return parse_json_text(result.get("response"))


# name -> (provider class, API key env var, model env var, default model)
CLOUD_PROVIDERS: dict[str, tuple[type[LLMProvider], str, str, str]] = {
    "openai": (OpenAIProvider, "OPENAI_API_KEY", "SCRIPTVET_OPENAI_MODEL", OPENAI_DEFAULT_MODEL),
    "gemini": (GeminiProvider, "GEMINI_API_KEY", "SCRIPTVET_GEMINI_MODEL", GEMINI_DEFAULT_MODEL),
    "claude": (ClaudeProvider, "ANTHROPIC_API_KEY", "SCRIPTVET_CLAUDE_MODEL", CLAUDE_DEFAULT_MODEL),
}


def create_provider_from_inputs(
    provider: str,
    *,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    host: Optional[str] = None,
    base_url: Optional[str] = None,
) -> Optional[LLMProvider]:
    """Build a provider from explicit values (setup prompts or the config file).

    Logs an error and returns None when the provider name is unknown or a
    required value is missing.
    """
    selected = provider.strip().lower()
    if selected not in SUPPORTED_PROVIDERS:
        logger.error("Unsupported provider: %s", provider)
        return None

    if selected in CLOUD_PROVIDERS:
        cls, key_var, _, default_model = CLOUD_PROVIDERS[selected]
        key = (api_key or "").strip()
        if not key:
            logger.error("Missing %s", key_var)
            return None
        return cls(api_key=key, model_name=(model or default_model).strip())

    if selected == "local_openai":
        chosen = (model or "").strip()
        if not chosen:
            logger.error("Model name required for local OpenAI-compatible server")
            return None
        return LocalOpenAIProvider(
            base_url=(base_url or LOCAL_OPENAI_DEFAULT_URL).strip(),
            model_name=chosen,
        )

    return OllamaProvider(
        host=(host or OLLAMA_DEFAULT_HOST).strip(),
        model=(model or OLLAMA_DEFAULT_MODEL).strip(),
    )


def _provider_from_env(explicit: str) -> Optional[LLMProvider]:
    for name, (cls, key_var, model_var, default_model) in CLOUD_PROVIDERS.items():
        key = os.environ.get(key_var)
        if explicit == name or (not explicit and key):
            if key:
                logger.info("Using %s LLM provider", name)
                return cls(api_key=key, model_name=os.environ.get(model_var, default_model))

    if explicit == "ollama" or (not explicit and os.environ.get("OLLAMA_HOST")):
        host = os.environ.get("OLLAMA_HOST", OLLAMA_DEFAULT_HOST)
        logger.info("Using Ollama at %s", host)
        return OllamaProvider(host=host, model=os.environ.get("OLLAMA_MODEL", OLLAMA_DEFAULT_MODEL))

    local_url = os.environ.get("SCRIPTVET_LOCAL_OPENAI_URL")
    if explicit == "local_openai" or (not explicit and local_url):
        url = local_url or LOCAL_OPENAI_DEFAULT_URL
        logger.info("Using local OpenAI-compatible server at %s", url)
        return LocalOpenAIProvider(
            base_url=url,
            model_name=os.environ.get("SCRIPTVET_LOCAL_OPENAI_MODEL", "local-model"),
        )

    return None


def _provider_from_config(llm_cfg: dict) -> Optional[LLMProvider]:
    values = {
        field: str(llm_cfg.get(field) or "").strip() or None
        for field in ("model", "api_key", "host", "base_url")
    }
    key = values["api_key"]
    if key and key.startswith("env:"):
        values["api_key"] = os.environ.get(key[4:], "").strip() or None

    name = str(llm_cfg["provider"]).strip().lower()
    logger.info("Using LLM provider from config: %s", name)
    return create_provider_from_inputs(name, **values)


def detect_provider() -> Optional[LLMProvider]:
    """Pick an LLM provider from the environment, then ~/.scriptvet/config.yaml.

    SCRIPTVET_LLM_PROVIDER forces a choice. Otherwise the first of
    OPENAI_API_KEY, GEMINI_API_KEY, ANTHROPIC_API_KEY, OLLAMA_HOST and
    SCRIPTVET_LOCAL_OPENAI_URL that is set wins. The config file's ``llm:``
    section is the fallback; its ``api_key`` may be ``env:VAR_NAME``.
    """
    explicit = os.environ.get("SCRIPTVET_LLM_PROVIDER", "").strip().lower()
    provider = _provider_from_env(explicit)
    if provider is not None:
        return provider

    llm_cfg = load_config().get("llm")
    if isinstance(llm_cfg, dict) and llm_cfg.get("provider"):
        return _provider_from_config(llm_cfg)

    logger.info("No LLM provider configured, using the heuristic narrator")
    return None
