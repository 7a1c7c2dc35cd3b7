from unittest import mock

import pytest
import requests

from spending_analyzer.ingest import completion as completion_module
from spending_analyzer.ingest.completion import CompletionClient, parse_json_object
from spending_analyzer.ingest.errors import CompletionError, MalformedResponseError


def response(status=200, body=None, text=""):
    r = mock.Mock(status_code=status, text=text)
    r.json.return_value = body if body is not None else {}
    return r


def ok(payload_text):
    return response(200, {"response": payload_text})


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(completion_module.time, "sleep", recorded.append)
    return recorded


def make_client(*side_effect):
    session = mock.Mock()
    session.post.side_effect = list(side_effect)
    client = CompletionClient(base_url="http://ollama:11434/", model="llama3", vision_model="llava",
                              timeout=10, max_retries=3, retry_delay=1, session=session)
    return client, session


def test_parse_plain_json():
    assert parse_json_object('{"a": 1}', "Test") == {"a": 1}


def test_parse_json_wrapped_in_prose():
    text = 'Sure! Here it is:\n```json\n{"transactions": []}\n```'
    assert parse_json_object(text, "Test") == {"transactions": []}


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{broken"])
def test_parse_rejects_non_objects(text):
    with pytest.raises(MalformedResponseError):
        parse_json_object(text, "Test")


def test_complete_json_posts_ollama_payload(sleeps):
    client, session = make_client(ok('{"ok": true}'))

    assert client.complete_json("Say ok", system="Be brief", operation="Ping") == {"ok": True}

    url = session.post.call_args.args[0]
    payload = session.post.call_args.kwargs["json"]
    assert url == "http://ollama:11434/api/generate"
    assert payload["model"] == "llama3"
    assert payload["format"] == "json"
    assert payload["stream"] is False
    assert payload["system"] == "Be brief"
    assert session.post.call_args.kwargs["timeout"] == 10
    assert sleeps == []


def test_vision_call_uses_vision_model_and_image(sleeps):
    client, session = make_client(ok('{"transactions": []}'))

    client.complete_vision_json("Read this", "aGVsbG8=", operation="Screenshot Parsing", timeout=90)

    payload = session.post.call_args.kwargs["json"]
    assert payload["model"] == "llava"
    assert payload["images"] == ["aGVsbG8="]
    assert session.post.call_args.kwargs["timeout"] == 90


def test_retryable_status_retried_with_backoff(sleeps):
    client, session = make_client(response(503, text="busy"), response(429, text="slow down"), ok('{"ok": 1}'))

    assert client.complete_json("x", operation="Retry") == {"ok": 1}
    assert session.post.call_count == 3
    assert sleeps == [1, 2]


def test_timeouts_exhaust_retries(sleeps):
    client, session = make_client(*[requests.exceptions.Timeout()] * 3)

    with pytest.raises(CompletionError) as exc:
        client.complete_json("x", operation="Slow")

    assert exc.value.retryable
    assert exc.value.operation == "Slow"
    assert session.post.call_count == 3
    assert sleeps == [1, 2]


def test_client_errors_not_retried(sleeps):
    client, session = make_client(response(400, text="bad request"))

    with pytest.raises(CompletionError) as exc:
        client.complete_json("x", operation="Bad")

    assert not exc.value.retryable
    assert session.post.call_count == 1
    assert sleeps == []


def test_malformed_json_not_retried(sleeps):
    client, session = make_client(ok("I cannot help with that"))

    with pytest.raises(MalformedResponseError):
        client.complete_json("x", operation="Chatty")
    assert session.post.call_count == 1


def test_per_call_retry_override(sleeps):
    client, session = make_client(requests.exceptions.ConnectionError("refused"))

    with pytest.raises(CompletionError):
        client.complete_json("x", operation="Once", max_retries=1)
    assert session.post.call_count == 1
