"""Code transformer backed by any OpenAI-compatible chat completions API."""

import json
import re
from typing import Any

import httpx
import structlog

from changeflow.exceptions import ExternalServiceError
from changeflow.models.domain import ChangeRequest, TransformResult
from changeflow.providers.base import CodeTransformer

log = structlog.get_logger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

SYSTEM_PROMPT = (
    "You edit source files. Apply the requested changes to the file and reply with a JSON object "
    'of the form {"content": "<complete new file>", "explanation": "<one paragraph>"}. '
    "Return the whole file, not a diff."
)


class OpenAICompatibleTransformer(CodeTransformer):
    """Transformer for OpenAI, vLLM, LM Studio and other compatible servers.

    Transport errors and non-2xx responses raise ``ExternalServiceError`` so
    the scheduler's recovery hook can retry them. A reply that cannot be
    parsed is reported as an unsuccessful ``TransformResult``.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        api_key: str | None = None,
        timeout: float = 300.0,
        temperature: float = 0.2,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the transformer.

        Args:
            base_url: API base URL (e.g., http://localhost:8000/v1)
            model: Model identifier to use
            api_key: Optional API key sent as a bearer token
            timeout: Request timeout in seconds
            temperature: Sampling temperature
            client: Preconfigured client, mainly for tests
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def disconnect(self) -> None:
        await self.client.aclose()

    async def transform(self, file_path: str, content: str, changes: list[ChangeRequest]) -> TransformResult:
        requested = "\n".join(f"{i}. {change.description.strip()}" for i, change in enumerate(changes, 1))
        prompt = (
            f"File: {file_path}\n\nRequested changes:\n{requested}\n\n"
            f"Current content:\n```\n{content}\n```"
        )
        log.info("transform_requested", path=file_path, changes=len(changes), model=self.model)

        reply = await self._complete(prompt, json_mode=True)
        try:
            payload = json.loads(_FENCE.sub("", reply.strip()))
        except json.JSONDecodeError:
            log.warning("transform_reply_unparseable", path=file_path)
            return TransformResult(success=False, error=f"Unparseable transformer reply for {file_path}")

        new_content = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(new_content, str) or not new_content.strip():
            return TransformResult(success=False, error=f"Transformer returned no content for {file_path}")

        return TransformResult(
            success=True,
            new_content=new_content,
            explanation=str(payload.get("explanation") or ""),
        )

    async def suggest_tests(self, file_path: str, content: str) -> str:
        prompt = (
            f"Suggest concise test cases (as a bullet list) for the following file {file_path}:\n"
            f"```\n{content}\n```"
        )
        return await self._complete(prompt, json_mode=False)

    async def _complete(self, prompt: str, json_mode: bool) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT if json_mode else "You are a senior test engineer."},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:500]
            log.error("transformer_request_failed", status_code=e.response.status_code)
            raise ExternalServiceError(
                f"Transformer API error ({e.response.status_code})",
                status_code=e.response.status_code,
                response_text=detail,
            ) from e
        except httpx.HTTPError as e:
            log.error("transformer_unreachable", url=self.base_url, error=str(e))
            raise ExternalServiceError(f"Transformer API unreachable: {e}") from e

        choices = response.json().get("choices", [])
        if not choices:
            raise ExternalServiceError("Transformer API returned no choices")
        return choices[0].get("message", {}).get("content", "") or ""
