import json
from types import SimpleNamespace

import pytest

from decision_memory.services import narrative
from decision_memory.services.narrative import NarrativeError, format_stats_for_llm, generate_profile_narrative


STATS = {"total_decisions": 12, "keep_rate": 0.5}


class _CompletionsStub:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _use_llm(monkeypatch, stub: _CompletionsStub) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setattr(narrative, "_chat_client", lambda: SimpleNamespace(chat=SimpleNamespace(completions=stub)))


def test_unconfigured_provider_returns_none() -> None:
    assert generate_profile_narrative(STATS) is None


def test_narrative_from_chat_completion(monkeypatch) -> None:
    stub = _CompletionsStub(content="  - Keeps half of what it sees.  ")
    _use_llm(monkeypatch, stub)

    assert generate_profile_narrative(STATS) == "- Keeps half of what it sees."
    call = stub.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert json.dumps(STATS, sort_keys=True) in call["messages"][1]["content"]


def test_xai_provider_picks_grok_model(monkeypatch) -> None:
    stub = _CompletionsStub(content="- Prefers warm tones.")
    monkeypatch.setenv("LLM_PROVIDER", "grok")
    monkeypatch.setenv("XAI_API_KEY", "xai-key")
    monkeypatch.setattr(narrative, "_chat_client", lambda: SimpleNamespace(chat=SimpleNamespace(completions=stub)))

    assert generate_profile_narrative(STATS) == "- Prefers warm tones."
    assert stub.calls[0]["model"] == "grok-4-fast-reasoning"


@pytest.mark.parametrize("stub", [_CompletionsStub(error=RuntimeError("503")), _CompletionsStub(content="   ")])
def test_failures_raise_narrative_error(monkeypatch, stub) -> None:
    _use_llm(monkeypatch, stub)

    with pytest.raises(NarrativeError):
        generate_profile_narrative(STATS)


def test_stats_are_embedded_in_prompt() -> None:
    prompt = format_stats_for_llm(STATS)

    assert prompt.endswith(json.dumps(STATS, sort_keys=True))
    assert prompt.startswith("Given the following statistics")
