"""Tests for the OpenAI-compatible NLU client, against a mocked transport."""

import json

import httpx
import pytest
from pydantic import BaseModel

from taskbot_kernel.nlu.client import NLUError, OpenAIChatClient, Tool, UpstreamUnavailable


class Schema(BaseModel):
    agentType: str


def _completion(content=None, tool_calls=None):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message}]}


def _client(responses, seen=None, **kwargs):
    queue = list(responses)

    def handler(request):
        if seen is not None:
            seen.append(json.loads(request.content))
        item = queue.pop(0)
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    return OpenAIChatClient(
        api_key="sk-test",
        base_url="https://nlu.example/v1/",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestAvailability:
    def test_missing_key(self):
        client = OpenAIChatClient(api_key=None)
        assert client.available is False
        with pytest.raises(UpstreamUnavailable):
            client.ensure_available()

    @pytest.mark.asyncio
    async def test_calls_fail_fast_without_key(self):
        with pytest.raises(UpstreamUnavailable):
            await OpenAIChatClient(api_key="").generate([{"role": "user", "content": "hi"}])


class TestClassify:
    @pytest.mark.asyncio
    async def test_json_object(self):
        seen = []
        client = _client([_completion(content='{"agentType": "task"}')], seen)
        result = await client.classify("route this", Schema, system="You route.")
        assert result == {"agentType": "task"}
        assert seen[0]["response_format"] == {"type": "json_object"}
        assert seen[0]["messages"][0] == {"role": "system", "content": "You route."}
        assert "agentType" in seen[0]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client([_completion(content="not json")])
        with pytest.raises(NLUError):
            await client.classify("route this", Schema)

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = _client([httpx.Response(503, json={"error": "overloaded"})])
        with pytest.raises(NLUError, match="503"):
            await client.classify("route this", Schema)

    @pytest.mark.asyncio
    async def test_malformed_completion(self):
        client = _client([{"choices": []}])
        with pytest.raises(NLUError):
            await client.classify("route this", Schema)


class TestGenerate:
    @pytest.mark.asyncio
    async def test_plain_text(self):
        client = _client([_completion(content="Hello!")])
        generation = await client.generate([{"role": "user", "content": "hi"}])
        assert generation.text == "Hello!"
        assert generation.tool_results == []

    @pytest.mark.asyncio
    async def test_tool_loop(self):
        calls = []

        async def create_task(title, priority="medium"):
            calls.append((title, priority))
            return {"success": True, "task": {"id": "t1", "title": title}}

        tool = Tool("create_task", "Create a task", {"type": "object", "properties": {}}, create_task)
        seen = []
        client = _client([
            _completion(tool_calls=[{
                "id": "call_1",
                "type": "function",
                "function": {"name": "create_task", "arguments": '{"title": "Buy milk"}'},
            }]),
            _completion(content="Created 'Buy milk'!"),
        ], seen)

        generation = await client.generate([{"role": "user", "content": "add buy milk"}], [tool])

        assert calls == [("Buy milk", "medium")]
        assert generation.text == "Created 'Buy milk'!"
        assert generation.tool_results == [{
            "tool": "create_task",
            "args": {"title": "Buy milk"},
            "payload": {"result": {"success": True, "task": {"id": "t1", "title": "Buy milk"}}},
        }]
        assert seen[0]["tools"][0]["function"]["name"] == "create_task"
        assert seen[1]["messages"][-1]["role"] == "tool"
        assert seen[1]["messages"][-1]["tool_call_id"] == "call_1"

    @pytest.mark.asyncio
    async def test_unknown_tool_and_bad_arguments_are_reported(self):
        async def get_task(task_id):
            return {"success": True}

        tool = Tool("get_task", "Get a task", {"type": "object", "properties": {}}, get_task)
        client = _client([
            _completion(tool_calls=[
                {"id": "a", "function": {"name": "nope", "arguments": "{}"}},
                {"id": "b", "function": {"name": "get_task", "arguments": '{"wrong": 1}'}},
            ]),
            _completion(content="Sorry."),
        ])
        generation = await client.generate([{"role": "user", "content": "x"}], [tool])
        results = [r["payload"]["result"] for r in generation.tool_results]
        assert results[0] == {"success": False, "error": "Unknown tool: nope"}
        assert results[1]["success"] is False

    @pytest.mark.asyncio
    async def test_tool_steps_are_bounded(self):
        async def ping():
            return {"success": True}

        tool = Tool("ping", "Ping", {"type": "object", "properties": {}}, ping)
        looping = _completion(tool_calls=[{"id": "p", "function": {"name": "ping", "arguments": ""}}])
        client = _client([looping, looping], max_tool_steps=2)
        generation = await client.generate([{"role": "user", "content": "x"}], [tool])
        assert len(generation.tool_results) == 2


def _research_output():
    return {"output": [
        {"type": "web_search_call", "id": "ws_1", "status": "completed"},
        {"type": "web_search_call", "id": "ws_2", "status": "completed"},
        {"type": "message", "role": "assistant", "content": [
            {
                "type": "output_text",
                "text": "CRM adoption grew in 2025 [Survey](https://example.com/survey).",
                "annotations": [
                    {"type": "url_citation", "url": "https://example.com/survey",
                     "title": "Survey", "start_index": 30, "end_index": 62},
                    {"type": "url_citation", "url": "https://example.com/survey",
                     "title": "Survey", "start_index": 0, "end_index": 3},
                    {"type": "url_citation", "url": "https://news.example.org/crm"},
                    {"type": "file_citation", "file_id": "f1"},
                ],
            },
            {"type": "output_text", "text": "Pricing stayed flat.", "annotations": []},
        ]},
    ]}


class TestResearch:
    @pytest.mark.asyncio
    async def test_web_search_request_and_annotations(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=_research_output())

        client = OpenAIChatClient(
            api_key="sk-test",
            base_url="https://nlu.example/v1",
            research_model="gpt-4o",
            transport=httpx.MockTransport(handler),
        )
        messages = [{"role": "user", "content": "research CRM trends"}]
        research = await client.research(messages)

        assert requests[0].url.path == "/v1/responses"
        assert requests[0].headers["Authorization"] == "Bearer sk-test"
        body = json.loads(requests[0].content)
        assert body == {"model": "gpt-4o", "input": messages, "tools": [{"type": "web_search"}]}

        assert research.text == (
            "CRM adoption grew in 2025 [Survey](https://example.com/survey).\n\nPricing stayed flat."
        )
        assert research.citations == [
            {"title": "Survey", "url": "https://example.com/survey"},
            {"title": "https://news.example.org/crm", "url": "https://news.example.org/crm"},
        ]
        assert research.search_count == 2

    @pytest.mark.asyncio
    async def test_no_annotations_no_citations(self):
        client = _client([{"output": [{"type": "message", "content": [
            {"type": "output_text", "text": "See [a blog](https://blog.example.org)."},
        ]}]}])
        research = await client.research([{"role": "user", "content": "x"}])
        assert research.citations == []
        assert research.search_count == 0

    @pytest.mark.asyncio
    async def test_search_tool_is_configurable(self):
        seen = []
        client = _client([{"output": []}], seen=seen, search_tool="web_search_preview")
        research = await client.research([{"role": "user", "content": "x"}])
        assert seen[0]["tools"] == [{"type": "web_search_preview"}]
        assert seen[0]["model"] == "gpt-4o-mini"
        assert research.text == ""

    @pytest.mark.asyncio
    async def test_malformed_output(self):
        client = _client([{"id": "resp_1"}])
        with pytest.raises(NLUError, match="Malformed research response"):
            await client.research([{"role": "user", "content": "x"}])

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = _client([httpx.Response(429, json={"error": "rate limited"})])
        with pytest.raises(NLUError, match="HTTP 429"):
            await client.research([{"role": "user", "content": "x"}])

    @pytest.mark.asyncio
    async def test_requires_key(self):
        with pytest.raises(UpstreamUnavailable):
            await OpenAIChatClient(api_key=None).research([{"role": "user", "content": "x"}])
