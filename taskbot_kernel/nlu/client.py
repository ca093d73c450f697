"""
NLU Service — the external classifier/generator consumed through a structured-output contract.

The orchestrator treats this service as untrusted and possibly unavailable:
every structured object it returns is validated by the caller before use.

Three capabilities:
  - classify(prompt, schema)   -> dict matching `schema` (JSON mode)
  - generate(messages, tools)  -> Generation{text, tool_results}
  - research(messages)         -> Research{text, citations, search_count}

`OpenAIChatClient` talks to any OpenAI-compatible /chat/completions endpoint
and runs the tool-calling loop locally, so tool side effects happen in-process.
Research goes through the /responses endpoint with the hosted web search tool;
citations come from the url_citation annotations on the output text.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class UpstreamUnavailable(Exception):
    """Raised when the NLU service cannot be used at all (e.g. missing credentials)."""
    pass


class NLUError(Exception):
    """Raised when a single NLU call fails or returns an unusable payload."""
    pass


class Tool:
    """A function the generator may call. `fn` receives the decoded JSON arguments."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict,
        fn: Callable[..., Awaitable[dict]],
    ):
        self.name = name
        self.description = description
        self.parameters = parameters
        self.fn = fn

    def spec(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def run(self, arguments: dict) -> dict:
        return await self.fn(**arguments)


class Generation(BaseModel):
    text: str = ""
    tool_results: List[dict] = []           # {"tool", "args", "payload": {"result": ...}}


class Research(BaseModel):
    text: str = ""
    citations: List[dict] = []              # {"title", "url"}, unique by url
    search_count: int = 0


class NLUService(Protocol):
    """Protocol for the NLU/NLG backend — pluggable."""

    async def classify(
        self, prompt: str, schema: Type[BaseModel], system: Optional[str] = None,
    ) -> dict: ...

    async def generate(
        self, messages: List[dict], tools: Optional[List[Tool]] = None,
    ) -> Generation: ...

    async def research(self, messages: List[dict]) -> Research: ...


class OpenAIChatClient:
    """Client for an OpenAI-compatible chat-completions API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        max_tool_steps: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        research_model: Optional[str] = None,
        search_tool: str = "web_search",
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.research_model = research_model or model
        self.search_tool = search_tool
        self.timeout = httpx.Timeout(timeout, connect=10.0)
        self.max_tool_steps = max_tool_steps
        self._transport = transport

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def ensure_available(self) -> None:
        if not self.available:
            raise UpstreamUnavailable(
                "NLU service API key is not configured. "
                "Set TASKBOT_OPENAI_API_KEY in the environment or .env file."
            )

    async def classify(
        self, prompt: str, schema: Type[BaseModel], system: Optional[str] = None,
    ) -> dict:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({
            "role": "user",
            "content": (
                f"{prompt}\n\nRespond with a single JSON object matching this schema:\n"
                f"{json.dumps(schema.model_json_schema())}"
            ),
        })
        data = await self._complete({
            "model": self.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
            "temperature": 0,
        })
        content = self._message(data).get("content") or ""
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise NLUError(f"Structured output is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise NLUError("Structured output is not a JSON object")
        return parsed

    async def generate(
        self, messages: List[dict], tools: Optional[List[Tool]] = None,
    ) -> Generation:
        conversation = list(messages)
        by_name: Dict[str, Tool] = {t.name: t for t in tools or []}
        tool_results: List[dict] = []
        text = ""

        for _ in range(self.max_tool_steps):
            payload: Dict[str, Any] = {"model": self.model, "messages": conversation}
            if by_name:
                payload["tools"] = [t.spec() for t in by_name.values()]
            message = self._message(await self._complete(payload))
            text = message.get("content") or ""
            calls = message.get("tool_calls") or []
            if not calls:
                break

            conversation.append({
                "role": "assistant", "content": message.get("content"), "tool_calls": calls,
            })
            for call in calls:
                result = await self._run_tool(call, by_name)
                tool_results.append(result)
                conversation.append({
                    "role": "tool",
                    "tool_call_id": call.get("id", ""),
                    "content": json.dumps(result["payload"]["result"], default=str),
                })

        return Generation(text=text, tool_results=tool_results)

    async def research(self, messages: List[dict]) -> Research:
        data = await self._post("/responses", {
            "model": self.research_model,
            "input": messages,
            "tools": [{"type": self.search_tool}],
        })
        output = data.get("output") if isinstance(data, dict) else None
        if not isinstance(output, list):
            raise NLUError("Malformed research response")

        texts: List[str] = []
        citations: List[dict] = []
        seen = set()
        searches = 0
        for item in output:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "web_search_call":
                searches += 1
                continue
            if item.get("type") != "message":
                continue
            for part in item.get("content") or []:
                if not isinstance(part, dict) or part.get("type") != "output_text":
                    continue
                texts.append(part.get("text") or "")
                for annotation in part.get("annotations") or []:
                    if not isinstance(annotation, dict) or annotation.get("type") != "url_citation":
                        continue
                    url = annotation.get("url")
                    if not url or url in seen:
                        continue
                    seen.add(url)
                    citations.append({"title": annotation.get("title") or url, "url": url})

        logger.debug("Research used %d web search(es), %d citation(s)", searches, len(citations))
        return Research(
            text="\n\n".join(t for t in texts if t),
            citations=citations,
            search_count=searches,
        )

    async def _run_tool(self, call: dict, by_name: Dict[str, Tool]) -> dict:
        function = call.get("function") or {}
        name = function.get("name", "")
        try:
            args = json.loads(function.get("arguments") or "{}")
        except json.JSONDecodeError:
            args = {}
        tool = by_name.get(name)
        if tool is None:
            result = {"success": False, "error": f"Unknown tool: {name}"}
        else:
            try:
                result = await tool.run(args)
            except TypeError as e:
                # Model produced arguments the tool signature does not accept
                result = {"success": False, "error": f"Invalid arguments for {name}: {e}"}
        logger.debug("Tool %s -> success=%s", name, result.get("success"))
        return {"tool": name, "args": args, "payload": {"result": result}}

    async def _complete(self, payload: dict) -> dict:
        return await self._post("/chat/completions", payload)

    async def _post(self, path: str, payload: dict) -> dict:
        self.ensure_available()
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport,
            ) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.error("NLU request to %s timed out", url)
            raise NLUError("NLU request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error("NLU request failed with status %s", e.response.status_code)
            raise NLUError(f"NLU request failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("NLU request failed: %s", e)
            raise NLUError(f"NLU request failed: {e}") from e

    @staticmethod
    def _message(data: dict) -> dict:
        try:
            return data["choices"][0]["message"] or {}
        except (KeyError, IndexError, TypeError) as e:
            raise NLUError("Malformed completion response") from e
