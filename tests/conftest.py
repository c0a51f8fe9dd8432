import asyncio
import sys
import threading
from pathlib import Path

import numpy as np
import pytest

SERVER = Path(__file__).resolve().parents[1] / "server"
if str(SERVER) not in sys.path:
    sys.path.insert(0, str(SERVER))

from nlp.exceptions import LLMError, MatchingFailure


def prompt_kind(messages) -> str:
    """Which prompt a rendered message list came from."""
    user = messages[-1]["content"]
    if "これは候補者の回答を必要とする質問ですか" in user:
        return "needs_answer"
    if "面接官（質問する側）" in user:
        return "identify"
    if "面接稿の候補一覧" in user:
        return "arbitrate"
    return "generate"


class FakeLLM:
    """Stand-in for LLMService.complete keyed by prompt kind.

    Each reply may be a string, an exception instance, or a callable taking
    the rendered messages.
    """

    def __init__(self, **replies):
        self.replies = {
            "needs_answer": "はい",
            "identify": '{"interviewers": ["spk1"]}',
            "arbitrate": '{"source": "generated", "answer": "draft", "candidate": null}',
            "generate": "generated answer",
        }
        self.replies.update(replies)
        self.calls = []

    async def complete(self, messages, model=None, temperature=None, max_tokens=None):
        kind = prompt_kind(messages)
        self.calls.append({
            "kind": kind,
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        reply = self.replies[kind]
        if callable(reply):
            reply = reply(messages)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def kinds(self):
        return [c["kind"] for c in self.calls]


class GatedLLM(FakeLLM):
    """FakeLLM whose replies for the given kinds wait until ``release()``.

    Uses a threading.Event so a test thread can release a call running in
    the TestClient event loop.
    """

    def __init__(self, gated=("generate",), **replies):
        super().__init__(**replies)
        self.gated = set(gated)
        self.started = threading.Event()
        self._gate = threading.Event()

    def release(self):
        self._gate.set()

    async def complete(self, messages, **kwargs):
        if prompt_kind(messages) in self.gated:
            self.started.set()
            while not self._gate.is_set():
                await asyncio.sleep(0.01)
        return await super().complete(messages, **kwargs)


class FakeEmbedder:
    """Embeds known texts to fixed vectors; anything else fails like a missing API key."""

    def __init__(self, vectors=None):
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in (vectors or {}).items()}
        self.batches = []

    async def embed(self, text):
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts):
        self.batches.append(list(texts))
        if not self.vectors:
            raise MatchingFailure("EMBEDDING_API_KEY未设置")
        return [self.vectors.get(t, np.zeros(3, dtype=np.float32)) for t in texts]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def llm_error():
    return LLMError("upstream unavailable")
