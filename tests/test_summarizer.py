import pytest

from conftest import FakeCompletionProvider, run
from ragcore.errors import CompletionProviderError
from ragcore.services.summarizer import CompletionSummarizer, ExtractiveSummarizer, build_summarizer


def test_extractive_summary_is_bounded_and_keeps_every_part():
    summarizer = ExtractiveSummarizer(max_length=40)

    text = run(summarizer.summarize_messages(["user: " + "a" * 50, "assistant: short"]))

    assert len(text) <= 40
    assert "assistant: short" in text
    assert run(summarizer.compact_summaries(["", "  "])) == ""


def test_completion_summary_uses_transcript_and_clips():
    provider = FakeCompletionProvider(reply="  They agreed on Paris.  ")
    summarizer = CompletionSummarizer(provider, max_length=10)

    text = run(summarizer.summarize_messages(["user: where?", "assistant: Paris"]))

    assert text == "They agree"
    assert "user: where?\nassistant: Paris" in provider.prompts[0]


def test_completion_failure_falls_back_or_propagates():
    provider = FakeCompletionProvider(fail=True)

    with_fallback = CompletionSummarizer(provider, fallback=ExtractiveSummarizer())
    assert run(with_fallback.compact_summaries(["first", "second"])) == "first\nsecond"

    without_fallback = CompletionSummarizer(provider)
    with pytest.raises(CompletionProviderError):
        run(without_fallback.summarize_messages(["user: hi"]))


def test_build_summarizer_picks_by_name():
    provider = FakeCompletionProvider()

    assert isinstance(build_summarizer(provider, "completion"), CompletionSummarizer)
    assert isinstance(build_summarizer(None, "completion"), ExtractiveSummarizer)
    with pytest.raises(RuntimeError):
        build_summarizer(provider, "abstractive")
