import json
from collections.abc import Callable

import httpx
import pytest

from kbsearch.llm.ollama import OllamaClient
from kbsearch.search.types import SearchResult

type ResultFactory = Callable[..., SearchResult]


def _make_result(
    key: str,
    score: float = 0.0,
    distance: float | None = None,
    preview: str = "",
    **kwargs,
) -> SearchResult:
    return SearchResult(
        file_path=f"/notes/{key}.org",
        line_number=1,
        preview=preview or f"preview of {key}",
        score=score,
        distance=distance,
        source_key=key,
        **kwargs,
    )


@pytest.fixture
def make_result() -> ResultFactory:
    return _make_result


class FakeOllama:
    """Scriptable stand-in for the oracle server, served through httpx.MockTransport."""

    def __init__(self, models: list[str] | None = None):
        self.models = models if models is not None else ["qwen3:0.6b", "qwen3:1.7b"]
        self.reply: Callable[[str], str] = lambda prompt: "5"
        self.tags_status = 200
        self.generate_status = 200
        # consumed one per generate call before falling back to generate_status
        self.generate_statuses: list[int] = []
        self.down = False
        self.timeout = False
        self.tag_calls = 0
        self.generate_calls = 0
        self.prompts: list[str] = []
        self.read_timeouts: dict[str, float] = {}
        self.request_paths: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        self.request_paths.append(request.url.path)
        self.read_timeouts[request.url.path] = request.extensions["timeout"]["read"]
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)

        if request.url.path == "/api/tags":
            self.tag_calls += 1
            return httpx.Response(self.tags_status, json={"models": [{"name": m} for m in self.models]})

        if request.url.path == "/api/generate":
            self.generate_calls += 1
            body = json.loads(request.content)
            self.prompts.append(body["prompt"])
            status = self.generate_statuses.pop(0) if self.generate_statuses else self.generate_status
            if status != 200:
                return httpx.Response(status, text="boom")
            return httpx.Response(200, json={"response": self.reply(body["prompt"])})

        return httpx.Response(404)

    def client(self) -> OllamaClient:
        return OllamaClient("http://oracle.test", transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()
