"""Decision model providers: OpenAI-compatible HTTP APIs and AWS Bedrock."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Protocol, runtime_checkable

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from ..errors import DecisionCallError, ModelUnavailableError
from ..state.types import ModelInfo, PruneDecision
from .prompts import DECISION_SYSTEM_PROMPT

log = logging.getLogger(__name__)

# provider id -> (base url, api key env var)
OPENAI_COMPATIBLE: dict[str, tuple[str, str]] = {
    "openai": ("https://api.openai.com/v1", "OPENAI_API_KEY"),
    "openrouter": ("https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"),
    "deepseek": ("https://api.deepseek.com/v1", "DEEPSEEK_API_KEY"),
    "xai": ("https://api.x.ai/v1", "XAI_API_KEY"),
}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


@runtime_checkable
class DecisionModel(Protocol):
    """Anything that can turn an analysis prompt into a PruneDecision."""

    @property
    def info(self) -> ModelInfo: ...

    async def decide(self, prompt: str) -> PruneDecision: ...

    async def aclose(self) -> None: ...


def parse_decision(text: str) -> PruneDecision:
    """Parse model output into a PruneDecision. Raises DecisionCallError."""
    raw = _FENCE.sub("", text.strip())
    start, end = raw.find("{"), raw.rfind("}")
    if start < 0 or end < start:
        raise DecisionCallError(f"No JSON object in decision output: {text[:120]!r}")
    try:
        return PruneDecision.model_validate(json.loads(raw[start:end + 1]))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise DecisionCallError(f"Malformed decision output: {exc}") from exc


class OpenAICompatibleModel:
    """Chat-completions endpoint with JSON response format."""

    def __init__(
        self,
        provider_id: str,
        model_id: str,
        api_key: str,
        base_url: str,
        timeout: float = 60.0,
        max_tokens: int = 1024,
    ) -> None:
        self._info = ModelInfo(provider_id=provider_id, model_id=model_id)
        self._max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @property
    def info(self) -> ModelInfo:
        return self._info

    async def decide(self, prompt: str) -> PruneDecision:
        try:
            resp = await self._client.post(
                "/chat/completions",
                json={
                    "model": self._info.model_id,
                    "max_tokens": self._max_tokens,
                    "response_format": {"type": "json_object"},
                    "messages": [
                        {"role": "system", "content": DECISION_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                },
            )
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
            raise DecisionCallError(f"{self._info} request failed: {exc}") from exc
        return parse_decision(content or "")

    async def aclose(self) -> None:
        await self._client.aclose()


class BedrockModel:
    """Anthropic models on AWS Bedrock via ``invoke_model``."""

    def __init__(self, model_id: str, region: str = "us-east-1", max_tokens: int = 1024) -> None:
        self._info = ModelInfo(provider_id="bedrock", model_id=model_id)
        self._client = boto3.client("bedrock-runtime", region_name=region)
        self._max_tokens = max_tokens

    @property
    def info(self) -> ModelInfo:
        return self._info

    async def decide(self, prompt: str) -> PruneDecision:
        text = await asyncio.to_thread(self._invoke, prompt)
        return parse_decision(text)

    def _invoke(self, prompt: str) -> str:
        body = json.dumps({
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self._max_tokens,
            "system": DECISION_SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        })
        try:
            response = self._client.invoke_model(modelId=self._info.model_id, body=body)
            result = json.loads(response["body"].read())
            return result["content"][0]["text"]
        except (BotoCoreError, ClientError, KeyError, IndexError, ValueError) as exc:
            raise DecisionCallError(f"{self._info} invocation failed: {exc}") from exc

    async def aclose(self) -> None:
        self._client.close()


def authenticated_providers(env: dict[str, str] | None = None) -> set[str]:
    """Providers with usable credentials in the environment."""
    env = os.environ if env is None else env
    found = {pid for pid, (_url, key) in OPENAI_COMPATIBLE.items() if env.get(key)}
    if _bedrock_credentials():
        found.add("bedrock")
    return found


def build_model(provider_id: str, model_id: str, env: dict[str, str] | None = None) -> DecisionModel:
    """Construct a decision model. Raises ModelUnavailableError."""
    env = os.environ if env is None else env
    if provider_id in OPENAI_COMPATIBLE:
        base_url, key_var = OPENAI_COMPATIBLE[provider_id]
        api_key = env.get(key_var)
        if not api_key:
            raise ModelUnavailableError(f"{key_var} is not set")
        return OpenAICompatibleModel(provider_id, model_id, api_key=api_key, base_url=base_url)
    if provider_id == "bedrock":
        if not _bedrock_credentials():
            raise ModelUnavailableError("No AWS credentials for Bedrock")
        return BedrockModel(model_id, region=env.get("AWS_REGION", "us-east-1"))
    raise ModelUnavailableError(f"Unsupported provider: {provider_id!r}")


def _bedrock_credentials() -> bool:
    try:
        return boto3.Session().get_credentials() is not None
    except BotoCoreError as exc:
        log.debug("AWS credential lookup failed: %s", exc)
        return False
