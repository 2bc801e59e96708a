"""Tests for transcript retrieval and tool-call extraction."""

import json
from contextlib import asynccontextmanager

import pytest
from aiohttp import test_utils, web

from convobridge.core.errors import TranscriptFetchError
from convobridge.transcripts import TranscriptClient, extract_tool_invocations, parse_tool_call


@asynccontextmanager
async def history_api(handler):
    app = web.Application()
    app.router.add_get("/v1/convai/conversations/{conversation_id}", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/")).rstrip("/")
    finally:
        await server.close()


class TestTranscriptClient:

    @pytest.mark.asyncio
    async def test_fetch_returns_transcript(self):
        seen = {}

        async def handler(request):
            seen["key"] = request.headers.get("xi-api-key")
            seen["id"] = request.match_info["conversation_id"]
            return web.json_response({
                "conversation_id": "C1",
                "transcript": [{"role": "agent", "message": "Hello"}],
            })

        async with history_api(handler) as base:
            client = TranscriptClient(api_key="xi-test", api_base=base)
            try:
                transcript = await client.fetch("C1")
            finally:
                await client.close()

        assert transcript == [{"role": "agent", "message": "Hello"}]
        assert seen == {"key": "xi-test", "id": "C1"}

    @pytest.mark.asyncio
    async def test_missing_transcript_is_empty(self):
        async def handler(request):
            return web.json_response({"conversation_id": "C1", "status": "processing"})

        async with history_api(handler) as base:
            client = TranscriptClient(api_key="xi-test", api_base=base)
            try:
                assert await client.fetch("C1") == []
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_non_200_raises(self):
        async def handler(request):
            return web.json_response({"detail": "not found"}, status=404)

        async with history_api(handler) as base:
            client = TranscriptClient(api_key="xi-test", api_base=base)
            try:
                with pytest.raises(TranscriptFetchError) as exc_info:
                    await client.fetch("missing")
            finally:
                await client.close()

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_non_list_transcript_raises(self):
        async def handler(request):
            return web.json_response({"transcript": "oops"})

        async with history_api(handler) as base:
            client = TranscriptClient(api_key="xi-test", api_base=base)
            try:
                with pytest.raises(TranscriptFetchError):
                    await client.fetch("C1")
            finally:
                await client.close()

    @pytest.mark.asyncio
    async def test_unreachable_service_raises(self):
        client = TranscriptClient(api_key="xi-test", api_base="http://127.0.0.1:9", timeout=2)
        try:
            with pytest.raises(TranscriptFetchError):
                await client.fetch("C1")
        finally:
            await client.close()


class TestToolCallParsing:

    def test_parse_json_params(self):
        invocation = parse_tool_call({
            "tool_name": "deploy_token",
            "request_id": "r1",
            "params_as_json": json.dumps({"name": "Moon"}),
        })
        assert invocation.name == "deploy_token"
        assert invocation.parameters == {"name": "Moon"}
        assert invocation.request_id == "r1"

    def test_parse_dict_and_empty_params(self):
        assert parse_tool_call({"tool_name": "t", "params_as_json": {"a": 1}}).parameters == {"a": 1}
        assert parse_tool_call({"tool_name": "t", "params_as_json": ""}).parameters == {}
        assert parse_tool_call({"tool_name": "t"}).parameters == {}

    @pytest.mark.parametrize("tool_call", [
        "not a dict",
        {"params_as_json": "{}"},
        {"tool_name": "t", "params_as_json": "{broken"},
        {"tool_name": "t", "params_as_json": "[1, 2]"},
    ])
    def test_parse_rejects_bad_tool_calls(self, tool_call):
        with pytest.raises(ValueError):
            parse_tool_call(tool_call)

    def test_extract_in_transcript_order(self):
        transcript = [
            {"role": "user", "message": "hi"},
            {"role": "agent", "tool_calls": [
                {"tool_name": "a", "params_as_json": "{}"},
                {"tool_name": "b", "params_as_json": "{broken"},
            ]},
            "junk entry",
            {"role": "agent", "tool_calls": None},
            {"role": "agent", "tool_calls": [{"tool_name": "c", "params_as_json": "{}"}]},
        ]
        assert [i.name for i in extract_tool_invocations(transcript)] == ["a", "c"]

    def test_extract_filters_by_name(self):
        transcript = [
            {"role": "agent", "tool_calls": [
                {"tool_name": "lookup", "params_as_json": "{}"},
                {"tool_name": "deploy_token", "params_as_json": "{}"},
            ]},
        ]
        found = extract_tool_invocations(transcript, tool_name="deploy_token")
        assert [i.name for i in found] == ["deploy_token"]

    def test_extract_empty_transcript(self):
        assert extract_tool_invocations([]) == []

    @pytest.mark.parametrize("value", [5, True, "deploy_token", {"tool_name": "x"}])
    def test_non_list_tool_calls_skipped(self, value):
        transcript = [
            {"role": "agent", "tool_calls": value},
            {"role": "agent", "tool_calls": [{"tool_name": "deploy_token", "params_as_json": "{}"}]},
        ]
        found = extract_tool_invocations(transcript)
        assert [i.name for i in found] == ["deploy_token"]
