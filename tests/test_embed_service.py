import asyncio

import pytest

import services.embed_service as embed_module
from core.types import QAPair
from nlp.exceptions import MatchingFailure
from services.embed_service import EmbeddingService, parse_embeddings
from services.script_matcher import ScriptMatcher

GOOD_BODY = '{"data": [{"index": 1, "embedding": [0, 1]}, {"index": 0, "embedding": [1, 0]}]}'


class _Response:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _Session:
    """aiohttp.ClientSession stand-in replaying queued (status, body) replies."""

    replies = []

    def __init__(self, **kwargs):
        pass

    def post(self, url, headers=None, json=None):
        status, body = _Session.replies.pop(0)
        return _Response(status, body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def service(monkeypatch):
    monkeypatch.setattr(embed_module.aiohttp, "ClientSession", _Session)
    monkeypatch.setattr(_Session, "replies", [])
    service = EmbeddingService()
    service.api_key = "test-key"
    return service


def test_parse_embeddings_orders_by_index():
    vectors = parse_embeddings(GOOD_BODY, 2)
    assert [v.tolist() for v in vectors] == [[1.0, 0.0], [0.0, 1.0]]


@pytest.mark.parametrize("body", [
    "<html>gateway error</html>",
    "[1, 2]",
    '{"data": ["a"]}',
    '{"data": [{"index": 0, "embedding": ["x"]}]}',
    '{"result": []}',
])
def test_parse_embeddings_rejects_malformed_bodies(body):
    with pytest.raises(MatchingFailure):
        parse_embeddings(body, 1)


def test_count_mismatch_is_a_matching_failure():
    with pytest.raises(MatchingFailure):
        parse_embeddings(GOOD_BODY, 3)


def test_http_error_is_a_matching_failure(service):
    _Session.replies.append((500, "internal error"))
    with pytest.raises(MatchingFailure):
        asyncio.run(service.embed_batch(["質問"]))


def test_malformed_query_embedding_falls_through_to_no_match(service):
    _Session.replies.extend([
        (200, GOOD_BODY),
        (200, "not json at all"),
    ])
    matcher = ScriptMatcher(service)
    asyncio.run(matcher.set_pairs([
        QAPair(question="自己紹介をお願いします", answer="山田です"),
        QAPair(question="志望動機は？", answer="御社の事業に惹かれました"),
    ]))

    result = asyncio.run(matcher.match_question("簡単に自己紹介してください", priority_mode="similar"))
    assert result.match is None
    assert result.source == "none"
