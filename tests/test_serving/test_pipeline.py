"""End-to-end tests for StudyPipeline with fake provider clients."""

import json
from unittest.mock import MagicMock

import pytest

from studyrag.errors import (
    InsufficientCreditsError,
    InvalidRequestError,
    ParseError,
    SignInRequiredError,
    UpstreamProviderError,
)
from studyrag.generation.prompts import NO_CONTEXT_RESPONSE, NO_FLASHCARD_CONTENT
from studyrag.schemas import KeySource, Provider
from studyrag.serving.pipeline import StudyPipeline
from studyrag.serving.schemas import AskRequest, FlashcardRequest, IngestRequest

from conftest import (
    BIOLOGY_TEXT,
    CHEMISTRY_TEXT,
    chat_response,
    embedding_response,
    seed,
)

LECTURE = "\n\n".join(
    [
        "Mitochondria are the organelles that produce most of the cell's ATP supply.",
        "Ribosomes translate messenger RNA into chains of amino acids called proteins.",
        "The nucleus stores DNA and coordinates gene expression across the whole cell.",
    ]
)


def _cards(*pairs, source="whatever.pdf"):
    return json.dumps({"flashcards": [{"front": f, "back": b, "source": source} for f, b in pairs]})


@pytest.fixture
def small_chunk_pipeline(settings, index, ledger, team_store, client_factory):
    tuned = settings.model_copy(update={"chunk_target_tokens": 25})  # 100-char chunks
    return StudyPipeline(tuned, index, ledger, team_store, client_factory)


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

class TestIngest:

    def test_credits_ingest_indexes_and_deducts_per_page(self, small_chunk_pipeline, index, ledger):
        result = small_chunk_pipeline.ingest(
            IngestRequest(text=LECTURE, filename="cells.txt", user_id="alice", page_count=2)
        )

        assert result.chunks == 3
        assert index.count == 3
        assert result.vector_ids == ["cells.txt-chunk-0", "cells.txt-chunk-1", "cells.txt-chunk-2"]
        assert result.key_source == KeySource.CREDITS
        assert result.credits_used == 2
        assert result.remaining_balance == 98
        assert ledger.get_balance("alice") == 98
        assert result.warning is None

    def test_reingesting_same_source_overwrites(self, small_chunk_pipeline, index):
        request = IngestRequest(text=LECTURE, filename="cells.txt", api_key="sk-user-own-key-999")
        small_chunk_pipeline.ingest(request)
        small_chunk_pipeline.ingest(request)
        assert index.count == 3

    def test_filename_is_trimmed_before_indexing(self, small_chunk_pipeline, index):
        result = small_chunk_pipeline.ingest(
            IngestRequest(text=LECTURE, filename="  cells.txt ", api_key="sk-user-own-key-999")
        )

        assert result.filename == "cells.txt"
        assert result.vector_ids[0] == "cells.txt-chunk-0"
        assert small_chunk_pipeline.delete_source("cells.txt") == 3
        assert index.count == 0

    def test_word_count_reported_and_recorded(self, pipeline, ledger):
        counted = pipeline.ingest(IngestRequest(text=LECTURE, filename="cells.txt", user_id="alice"))
        given = pipeline.ingest(IngestRequest(text=LECTURE, filename="copy.txt", user_id="alice", word_count=7))

        assert counted.word_count == len(LECTURE.split())
        assert given.word_count == 7
        assert ledger.transactions("alice")[0].metadata["word_count"] == 7

    def test_page_count_defaults_from_length(self, pipeline, ledger):
        result = pipeline.ingest(IngestRequest(text="word " * 1300, filename="long.txt", user_id="alice"))
        assert result.page_count == 3   # 6499 chars after cleaning / 3000
        assert ledger.get_balance("alice") == 97

    def test_scanned_document_warning(self, pipeline):
        result = pipeline.ingest(
            IngestRequest(text=BIOLOGY_TEXT, filename="scan.pdf", user_id="alice", page_count=5)
        )
        assert result.warning and "scanned" in result.warning

    def test_empty_text_rejected_before_any_call(self, pipeline, client_factory):
        with pytest.raises(InvalidRequestError):
            pipeline.ingest(IngestRequest(text="  \n ", filename="empty.pdf", user_id="alice"))
        client_factory.openai_client.embeddings.create.assert_not_called()

    def test_anonymous_without_key_must_sign_in(self, pipeline, client_factory):
        with pytest.raises(SignInRequiredError):
            pipeline.ingest(IngestRequest(text=LECTURE, filename="cells.txt"))
        client_factory.openai_client.embeddings.create.assert_not_called()

    def test_too_many_pages_for_balance(self, pipeline, client_factory):
        with pytest.raises(InsufficientCreditsError) as excinfo:
            pipeline.ingest(IngestRequest(text=LECTURE, filename="cells.txt", user_id="bob", page_count=3))
        assert excinfo.value.cost == 3
        client_factory.openai_client.embeddings.create.assert_not_called()

    def test_embedding_failure_means_no_upsert_and_no_deduction(
        self, small_chunk_pipeline, client_factory, index, ledger
    ):
        def create(model, input):
            if input.startswith("Ribosomes"):
                raise RuntimeError("upstream 500")
            return embedding_response(input)

        client_factory.openai_client.embeddings.create.side_effect = create

        with pytest.raises(UpstreamProviderError):
            small_chunk_pipeline.ingest(IngestRequest(text=LECTURE, filename="cells.txt", user_id="alice"))

        assert index.count == 0
        assert ledger.get_balance("alice") == 100

    def test_team_key_ingest_is_free(self, pipeline, client_factory, ledger):
        result = pipeline.ingest(IngestRequest(text=LECTURE, filename="cells.txt", user_id="tim"))
        assert result.key_source == KeySource.TEAM
        assert result.team_name == "Biology Club"
        assert result.remaining_balance is None
        assert client_factory.openai_keys == ["sk-team-shared-11111111"]


# ---------------------------------------------------------------------------
# Ask
# ---------------------------------------------------------------------------

class TestAsk:

    def test_credits_ask_answers_with_sources_and_deducts_once(self, pipeline, seeded_index, ledger, client_factory):
        result = pipeline.ask(AskRequest(question="What is osmosis?", user_id="alice"))

        assert result.answer == "Osmosis moves water across a membrane [1]."
        assert [s.number for s in result.sources] == [1, 2, 3]
        assert {s.source for s in result.sources} == {"biology.pdf", "chemistry.pdf"}
        assert all(0 <= s.relevance <= 100 for s in result.sources)
        assert result.tokens_used == 120
        assert result.remaining_balance == 95
        assert ledger.get_balance("alice") == 95
        client_factory.openai_client.chat.completions.create.assert_called_once()

    def test_prompt_contains_numbered_context(self, pipeline, seeded_index, client_factory):
        pipeline.ask(AskRequest(question="What is osmosis?", user_id="alice"))
        prompt = client_factory.openai_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert "[1] From " in prompt
        assert "QUESTION: What is osmosis?" in prompt

    def test_source_filter_restricts_context(self, pipeline, seeded_index):
        result = pipeline.ask(
            AskRequest(question="bonds", user_id="alice", source_filenames=["chemistry.pdf"])
        )
        assert [s.source for s in result.sources] == ["chemistry.pdf"]

    def test_insufficient_credits_rejects_before_provider_calls(self, pipeline, seeded_index, client_factory, ledger):
        with pytest.raises(InsufficientCreditsError):
            pipeline.ask(AskRequest(question="What is osmosis?", user_id="bob"))

        client_factory.openai_client.embeddings.create.assert_not_called()
        client_factory.openai_client.chat.completions.create.assert_not_called()
        assert ledger.get_balance("bob") == 2

    def test_empty_context_short_circuits(self, pipeline, ledger, client_factory):
        result = pipeline.ask(AskRequest(question="What is osmosis?", user_id="alice"))

        assert result.no_results
        assert result.answer == NO_CONTEXT_RESPONSE
        assert result.sources == []
        client_factory.openai_client.chat.completions.create.assert_not_called()
        assert ledger.get_balance("alice") == 100

    def test_byok_never_touches_ledger(self, settings, seeded_index, team_store, client_factory):
        ledger = MagicMock()
        pipeline = StudyPipeline(settings, seeded_index, ledger, team_store, client_factory)

        result = pipeline.ask(AskRequest(question="What is osmosis?", api_key="sk-user-own-key-999"))

        assert result.key_source == KeySource.BYOK
        assert result.remaining_balance is None
        assert ledger.method_calls == []
        assert set(client_factory.openai_keys) == {"sk-user-own-key-999"}

    def test_completion_failure_means_no_deduction(self, pipeline, seeded_index, client_factory, ledger):
        client_factory.openai_client.chat.completions.create.side_effect = RuntimeError("overloaded")

        with pytest.raises(UpstreamProviderError):
            pipeline.ask(AskRequest(question="What is osmosis?", user_id="alice"))
        assert ledger.get_balance("alice") == 100

    def test_anthropic_byok_uses_server_key_for_embeddings(self, pipeline, seeded_index, client_factory):
        result = pipeline.ask(
            AskRequest(question="What is osmosis?", provider=Provider.ANTHROPIC, api_key="sk-ant-user-key-0001")
        )
        assert result.answer == "Claude says hello."
        assert client_factory.anthropic_keys == ["sk-ant-user-key-0001"]
        assert client_factory.openai_keys == ["sk-server-openai-000000"]

    def test_blank_question_rejected(self, pipeline):
        with pytest.raises(InvalidRequestError):
            pipeline.ask(AskRequest(question="   ", user_id="alice"))


# ---------------------------------------------------------------------------
# Flashcards
# ---------------------------------------------------------------------------

class TestFlashcards:

    @pytest.fixture
    def two_source_index(self, index):
        seed(
            index,
            [("biology.pdf", BIOLOGY_TEXT), ("Biology.pdf", BIOLOGY_TEXT + " Extra."), ("chemistry.pdf", CHEMISTRY_TEXT)],
        )
        return index

    def test_generates_per_source_and_deducts_once(self, pipeline, two_source_index, client_factory, ledger):
        client_factory.openai_client.chat.completions.create.side_effect = [
            chat_response(_cards(("Q1", "A1"), ("Q2", "A2"), ("Q3", "A3"))),
            chat_response(_cards(("C1", "D1"), ("", "no front"), ("C2", "D2"))),
        ]

        result = pipeline.flashcards(
            FlashcardRequest(source_filenames=["biology.pdf", "Biology.pdf", "chemistry.pdf"], count=4, user_id="alice")
        )

        assert len(result.flashcards) == 4
        assert all(card.id.startswith("flashcard-") for card in result.flashcards)
        assert {card.source.lower() for card in result.flashcards} <= {"biology.pdf", "chemistry.pdf"}
        assert sorted(name.lower() for name in result.flashcards_by_source) == ["biology.pdf", "chemistry.pdf"]
        assert result.tokens_used == 240
        assert result.remaining_balance == 95
        assert ledger.get_balance("alice") == 95

        calls = client_factory.openai_client.chat.completions.create.call_args_list
        assert len(calls) == 2
        assert all(c.kwargs["response_format"] == {"type": "json_object"} for c in calls)
        assert "generate 3 high-quality flashcards" in calls[0].kwargs["messages"][0]["content"]

    def test_source_label_is_forced(self, pipeline, index, client_factory):
        seed(index, [("chemistry.pdf", CHEMISTRY_TEXT)])
        client_factory.openai_client.chat.completions.create.return_value = chat_response(
            _cards(("Q", "A"), source="made-up.pdf")
        )

        result = pipeline.flashcards(FlashcardRequest(source_filenames=["chemistry.pdf"], user_id="alice"))

        assert [c.source for c in result.flashcards] == ["chemistry.pdf"]
        assert result.sources == ["chemistry.pdf"]

    def test_fallback_parse_still_produces_cards(self, pipeline, index, client_factory):
        seed(index, [("chemistry.pdf", CHEMISTRY_TEXT)])
        client_factory.openai_client.chat.completions.create.return_value = chat_response(
            'Here you go: [{"front": " Q ", "back": " A "}]'
        )

        result = pipeline.flashcards(FlashcardRequest(source_filenames=["chemistry.pdf"], user_id="alice"))

        assert [(c.front, c.back) for c in result.flashcards] == [("Q", "A")]

    def test_unparseable_output_fails_without_deduction(self, pipeline, index, client_factory, ledger):
        seed(index, [("chemistry.pdf", CHEMISTRY_TEXT)])
        client_factory.openai_client.chat.completions.create.return_value = chat_response("Sorry, I can't.")

        with pytest.raises(ParseError) as excinfo:
            pipeline.flashcards(FlashcardRequest(source_filenames=["chemistry.pdf"], user_id="alice"))

        assert excinfo.value.excerpt == "Sorry, I can't."
        assert ledger.get_balance("alice") == 100

    def test_one_failed_source_keeps_the_others(self, pipeline, index, client_factory, ledger, log_records):
        seed(index, [("biology.pdf", BIOLOGY_TEXT), ("chemistry.pdf", CHEMISTRY_TEXT)])
        client_factory.openai_client.chat.completions.create.side_effect = [
            chat_response(_cards(("Q1", "A1"), ("Q2", "A2"), ("Q3", "A3"))),
            chat_response("Sorry, I can't."),
        ]

        result = pipeline.flashcards(
            FlashcardRequest(source_filenames=["biology.pdf", "chemistry.pdf"], count=6, user_id="alice")
        )

        assert [c.front for c in result.flashcards] == ["Q1", "Q2", "Q3"]
        assert len(result.flashcards_by_source) == 1
        assert result.sources == list(result.flashcards_by_source)
        assert result.tokens_used == 240
        assert ledger.get_balance("alice") == 95
        assert any("Skipping" in r["message"] and r["level"].name == "WARNING" for r in log_records)

    def test_no_content_returns_message(self, pipeline, client_factory, ledger):
        result = pipeline.flashcards(FlashcardRequest(source_filenames=["missing.pdf"], user_id="alice"))

        assert result.flashcards == []
        assert result.message == NO_FLASHCARD_CONTENT
        client_factory.openai_client.chat.completions.create.assert_not_called()
        assert ledger.get_balance("alice") == 100

    def test_requires_sources(self, pipeline):
        with pytest.raises(InvalidRequestError):
            pipeline.flashcards(FlashcardRequest(source_filenames=[], user_id="alice"))

    def test_count_is_bounded(self, pipeline):
        with pytest.raises(InvalidRequestError):
            pipeline.flashcards(FlashcardRequest(source_filenames=["a.pdf"], count=0, user_id="alice"))


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

def test_delete_source_removes_all_chunks(pipeline, seeded_index):
    assert pipeline.delete_source("biology.pdf") == 2
    assert seeded_index.sources() == ["chemistry.pdf"]
    assert pipeline.delete_source("biology.pdf") == 0
