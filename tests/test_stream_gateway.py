from types import SimpleNamespace

import pytest

from services.chat.cancel_token import CancelToken, GenerationCancelled, GenerationFailed
from services.chat.prompts import SystemPromptLoader
from services.chat.stream_gateway import OpenAIStreamGateway, reasoning_effort


class FakeStream:
    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event

    async def close(self):
        self.closed = True


class FakeResponses:
    def __init__(self, events=(), error=None):
        self.events = events
        self.error = error
        self.requests = []
        self.stream = None

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        self.stream = FakeStream(self.events)
        return self.stream


def _client(responses):
    return SimpleNamespace(responses=responses)


def _delta(text):
    return SimpleNamespace(type="response.output_text.delta", delta=text)


async def _collect(gateway, *args, **kwargs):
    return [fragment async for fragment in gateway.generate(*args, **kwargs)]


def test_reasoning_effort_mapping():
    assert reasoning_effort(None) is None
    assert reasoning_effort(0) == "minimal"
    assert reasoning_effort(1024) == "low"
    assert reasoning_effort(8192) == "medium"
    assert reasoning_effort(20000) == "high"


@pytest.mark.asyncio
async def test_streams_text_deltas(tmp_path):
    prompt_file = tmp_path / "system.txt"
    prompt_file.write_text("Be brief.\n", encoding="utf-8")
    responses = FakeResponses([
        SimpleNamespace(type="response.created"),
        _delta("Hel"),
        _delta("lo"),
        SimpleNamespace(type="response.completed"),
    ])
    gateway = OpenAIStreamGateway(_client(responses), model="test-model", prompt_loader=SystemPromptLoader(prompt_file))

    fragments = await _collect(
        gateway, [{"role": "user", "text": "hi"}, {"role": "model", "text": "hey"}], "again", CancelToken(), 8192
    )

    assert fragments == ["Hel", "lo"]
    assert responses.stream.closed
    request = responses.requests[0]
    assert request["model"] == "test-model"
    assert request["stream"] is True
    assert request["reasoning"] == {"effort": "medium"}
    assert [(item["role"], item["content"][0]["type"], item["content"][0]["text"]) for item in request["input"]] == [
        ("system", "input_text", "Be brief."),
        ("user", "input_text", "hi"),
        ("assistant", "output_text", "hey"),
        ("user", "input_text", "again"),
    ]


@pytest.mark.asyncio
async def test_missing_system_prompt_is_skipped(tmp_path):
    responses = FakeResponses([_delta("ok")])
    gateway = OpenAIStreamGateway(_client(responses), prompt_loader=SystemPromptLoader(tmp_path / "absent.txt"))

    assert await _collect(gateway, [], "q", CancelToken()) == ["ok"]
    assert [item["role"] for item in responses.requests[0]["input"]] == ["user"]
    assert "reasoning" not in responses.requests[0]


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_request():
    responses = FakeResponses([_delta("x")])
    gateway = OpenAIStreamGateway(_client(responses))
    token = CancelToken()
    token.cancel()

    with pytest.raises(GenerationCancelled):
        await _collect(gateway, [], "q", token)
    assert responses.requests == []


@pytest.mark.asyncio
async def test_failed_event_raises():
    failed = SimpleNamespace(type="response.failed", response=SimpleNamespace(error=SimpleNamespace(message="overloaded")))
    gateway = OpenAIStreamGateway(_client(FakeResponses([_delta("a"), failed])))

    with pytest.raises(GenerationFailed, match="overloaded"):
        await _collect(gateway, [], "q", CancelToken())


@pytest.mark.asyncio
async def test_client_errors_become_generation_failures():
    gateway = OpenAIStreamGateway(_client(FakeResponses(error=ConnectionError("network down"))))

    with pytest.raises(GenerationFailed):
        await _collect(gateway, [], "q", CancelToken())


def test_client_is_required():
    with pytest.raises(ValueError):
        OpenAIStreamGateway(None)


@pytest.mark.asyncio
async def test_cancel_mid_stream_stops_and_closes():
    responses = FakeResponses([_delta("Hel"), _delta("lo"), _delta(" there")])
    gateway = OpenAIStreamGateway(_client(responses))
    token = CancelToken()
    fragments = []

    with pytest.raises(GenerationCancelled):
        async for fragment in gateway.generate([], "q", token):
            fragments.append(fragment)
            token.cancel()

    assert fragments == ["Hel"]
    assert responses.stream.closed
