import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.exceptions import CompletionError
from core.model_adapter import CompletionService, ModelAdapter


def _response(content):
    response = MagicMock()
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    response.raise_for_status.return_value = None
    return response


def test_openrouter_request_carries_messages_and_auth():
    session = MagicMock()
    session.post.return_value = _response("hello")
    adapter = ModelAdapter(api_key="or-key", model_name="openrouter/auto", session=session)

    assert adapter.complete("hi", system_prompt="be brief") == "hello"

    url = session.post.call_args.args[0]
    kwargs = session.post.call_args.kwargs
    assert url == ModelAdapter.OPENROUTER_URL
    assert kwargs["headers"]["Authorization"] == "Bearer or-key"
    assert kwargs["json"]["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]


def test_responses_are_cached_by_prompt():
    session = MagicMock()
    session.post.return_value = _response("cached")
    adapter = ModelAdapter(api_key="or-key", session=session)

    adapter.complete("same")
    adapter.complete("same")
    adapter.complete("same", system_prompt="different")

    assert session.post.call_count == 2


def test_openai_is_tried_before_openrouter_and_falls_back():
    session = MagicMock()
    session.post.side_effect = [
        requests.exceptions.ConnectionError("down"),
        requests.exceptions.ConnectionError("down"),
        requests.exceptions.ConnectionError("down"),
        _response("from openrouter"),
    ]
    adapter = ModelAdapter(api_key="or-key", openai_api_key="oa-key", session=session)

    with patch("core.model_adapter.time.sleep") as sleep, patch("core.model_adapter.log_json"):
        assert adapter.complete("hi") == "from openrouter"

    urls = [c.args[0] for c in session.post.call_args_list]
    assert urls[:3] == [ModelAdapter.OPENAI_URL] * 3
    assert urls[3] == ModelAdapter.OPENROUTER_URL
    assert sleep.call_count == 2


def test_openai_uses_plain_model_name_for_routed_names():
    session = MagicMock()
    session.post.return_value = _response("ok")
    adapter = ModelAdapter(openai_api_key="oa-key", model_name="openrouter/auto", session=session)
    adapter.complete("hi")
    assert session.post.call_args.kwargs["json"]["model"] == "gpt-4o-mini"


def test_malformed_reply_is_completion_error():
    session = MagicMock()
    bad = MagicMock()
    bad.json.return_value = {"choices": []}
    session.post.return_value = bad
    adapter = ModelAdapter(api_key="or-key", session=session)

    with patch("core.model_adapter.log_json"), pytest.raises(CompletionError, match="No model"):
        adapter.complete("hi")


def test_no_backend_raises():
    adapter = ModelAdapter(session=MagicMock())
    assert adapter.is_available() is False
    with pytest.raises(CompletionError, match="No model backend configured"):
        adapter.complete("hi")


def test_local_command_receives_prompt_as_last_argument():
    adapter = ModelAdapter(local_model_command="ollama run llama3", session=MagicMock())
    completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="  local answer \n", stderr="")
    with patch("core.model_adapter.subprocess.run", return_value=completed) as run:
        assert adapter.complete("hi", system_prompt="sys") == "local answer"
    assert run.call_args.args[0] == ["ollama", "run", "llama3", "sys\n\nhi"]


def test_local_command_missing_binary_is_completion_error():
    adapter = ModelAdapter(local_model_command="no-such-binary", session=MagicMock())
    with patch("core.model_adapter.subprocess.run", side_effect=FileNotFoundError()), \
         pytest.raises(CompletionError):
        adapter.call_local("hi")


def test_from_config_reads_manager_values():
    values = {"api_key": "k", "model_name": "m/x", "llm_timeout_s": 5.0}
    manager = MagicMock()
    manager.get.side_effect = lambda key, default=None: values.get(key, default)
    adapter = ModelAdapter.from_config(manager)
    assert adapter.api_key == "k"
    assert adapter.model_name == "m/x"
    assert adapter.request_timeout_s == 5.0
    assert isinstance(adapter, CompletionService)
