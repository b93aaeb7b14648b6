"""
Shared test fixtures for the StudyRAG test suite.

Provider SDK clients are replaced with MagicMock fakes so no test makes a
network call.  Embeddings are small (8 dimensions) and deterministic.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from loguru import logger

from studyrag.billing.ledger import InMemoryCreditLedger
from studyrag.billing.teams import InMemoryTeamKeyStore, Team
from studyrag.chunking.schemas import Chunk
from studyrag.config import Settings
from studyrag.embedding.faiss_index import FAISSIndex
from studyrag.embedding.schemas import EmbeddingVector
from studyrag.generation.providers import ClientFactory
from studyrag.schemas import Provider, SearchHit
from studyrag.serving.pipeline import StudyPipeline

DIM = 8
SERVER_OPENAI_KEY = "sk-server-openai-000000"
TEAM_KEY = "sk-team-shared-11111111"


# ---------------------------------------------------------------------------
# Fake provider responses
# ---------------------------------------------------------------------------

def fake_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic, strictly positive vector derived from the text."""
    values = [1.0 + (ord(c) % 5) for c in text[:dim]]
    return values + [1.0] * (dim - len(values))


def embedding_response(text: str, dim: int = DIM):
    return SimpleNamespace(
        data=[SimpleNamespace(embedding=fake_vector(text, dim))],
        usage=SimpleNamespace(total_tokens=max(1, len(text.split()))),
    )


def chat_response(content: str, prompt_tokens: int = 100, completion_tokens: int = 20):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def anthropic_response(content: str, input_tokens: int = 80, output_tokens: int = 30):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=content)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def make_openai_client(answer: str = "Osmosis moves water across a membrane [1].") -> MagicMock:
    client = MagicMock()
    client.embeddings.create.side_effect = lambda model, input: embedding_response(input)
    client.chat.completions.create.return_value = chat_response(answer)
    return client


def make_anthropic_client(answer: str = "Claude says hello.") -> MagicMock:
    client = MagicMock()
    client.messages.create.return_value = anthropic_response(answer)
    return client


class FakeClientFactory(ClientFactory):
    """Hands out the same fake clients and records which keys were used."""

    def __init__(self, openai_client=None, anthropic_client=None) -> None:
        self.openai_client = openai_client or make_openai_client()
        self.anthropic_client = anthropic_client or make_anthropic_client()
        self.openai_keys: list[str] = []
        self.anthropic_keys: list[str] = []

    def openai(self, api_key):
        self.openai_keys.append(api_key.get_secret_value())
        return self.openai_client

    def anthropic(self, api_key):
        self.anthropic_keys.append(api_key.get_secret_value())
        return self.anthropic_client


# ---------------------------------------------------------------------------
# Config & stores
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        openai_api_key=SERVER_OPENAI_KEY,
        embedding_dimensions=DIM,
        index_dir=str(tmp_path / "index"),
        ledger_path=str(tmp_path / "credits.json"),
        teams_path=str(tmp_path / "teams.json"),
        log_file=None,
    )


@pytest.fixture
def ledger():
    return InMemoryCreditLedger(balances={"alice": 100, "bob": 2})


@pytest.fixture
def team_store():
    return InMemoryTeamKeyStore(
        teams=[
            Team(name="Biology Club", owner_id="tara", api_key=TEAM_KEY, members=["tim"]),
            Team(name="Keyless Team", owner_id="kim", members=["kyle"]),
        ]
    )


@pytest.fixture
def index():
    return FAISSIndex(dimensions=DIM)


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def pipeline(settings, index, ledger, team_store, client_factory):
    return StudyPipeline(settings, index, ledger, team_store, client_factory)


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

BIOLOGY_TEXT = (
    "Osmosis is the movement of water molecules across a semi-permeable membrane "
    "from a region of low solute concentration to one of high solute concentration."
)
CHEMISTRY_TEXT = (
    "A covalent bond forms when two atoms share one or more pairs of electrons, "
    "which is typical between non-metal elements in organic compounds."
)


def seed(index: FAISSIndex, entries: list[tuple[str, str]]) -> list[EmbeddingVector]:
    """Upsert (source, text) pairs; chunk index is the position within each source."""
    counters: dict[str, int] = {}
    vectors = []
    for source, text in entries:
        idx = counters.get(source, 0)
        counters[source] = idx + 1
        chunk = Chunk(text=text, source_id=source, index=idx)
        vectors.append(EmbeddingVector.from_chunk(chunk, fake_vector(text)))
    index.upsert(vectors)
    return vectors


@pytest.fixture
def seeded_index(index):
    seed(
        index,
        [
            ("biology.pdf", BIOLOGY_TEXT),
            ("biology.pdf", BIOLOGY_TEXT + " Cells swell in hypotonic solutions."),
            ("chemistry.pdf", CHEMISTRY_TEXT),
        ],
    )
    return index


def hit(source: str, score: float, text: str = None, **extra) -> SearchHit:
    return SearchHit(
        text=text if text is not None else f"{source} passage with enough characters to pass the length filter.",
        source=source,
        score=score,
        **extra,
    )


# ---------------------------------------------------------------------------
# Log capture
# ---------------------------------------------------------------------------

@pytest.fixture
def log_records():
    """Collect loguru records emitted during the test."""
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(sink_id)


@pytest.fixture
def openai_provider():
    return Provider.OPENAI
