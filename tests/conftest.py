import random
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from examertric.blobs import LocalBlobStorage
from examertric.db import make_engine
from examertric.errors import TranscriptionFailed
from examertric.main import create_app
from examertric.question_bank import QuestionBank
from examertric.schemas import AnswerRecord, Principal
from examertric.scoring import matches_accepted
from examertric.services import Services
from examertric.session import ExamSession
from examertric.store import TreeStore
from examertric.transcription import TranscriptionResult


SMALL_EXAM = {
	"title": "Small exam",
	"sections": [
		{
			"id": "section1_standard",
			"title": "Written",
			"modality": "written",
			"variant": "standard",
			"questions": [
				{"id": "w1", "type": "blank", "prompt": "Capital of France?", "accepted_answers": ["Paris"]},
				{
					"id": "w2",
					"type": "multiple",
					"prompt": "Pick a colour",
					"accepted_answers": ["Blue"],
					"options": ["Red", "Blue", "Other"],
					"other_option": "Other",
				},
				{"id": "w3", "type": "blank", "prompt": "Days in a week?", "accepted_answers": ["7", "seven"]},
			],
		},
		{
			"id": "section1_control",
			"title": "Written (accommodation)",
			"modality": "written",
			"variant": "control",
			"questions": [
				{"id": "c1", "type": "blank", "prompt": "Colour of the sky?", "accepted_answers": ["blue"]},
			],
		},
		{
			"id": "section2_standard",
			"title": "Spoken",
			"modality": "audio",
			"variant": "standard",
			"questions": [
				{"id": "a1", "type": "audio", "prompt": "Capital of Italy?", "accepted_answers": ["Rome"]},
				{"id": "a2", "type": "audio", "prompt": "Legs on a spider?", "accepted_answers": ["8", "eight"]},
			],
		},
		{
			"id": "section2_control",
			"title": "Spoken (accommodation)",
			"modality": "audio",
			"variant": "control",
			"questions": [
				{"id": "b1", "type": "audio", "prompt": "What does a cat say?", "accepted_answers": ["meow"]},
			],
		},
	],
}

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
	def __init__(self, now: datetime = START):
		self.now = now

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> None:
		self.now = self.now + timedelta(**kwargs)


class FakeTranscriber:
	"""Answers with a fixed transcript; ``gate`` (an asyncio.Event) holds replies back."""

	def __init__(self, transcript: str = "Rome", confidence: float = 0.9):
		self.transcript = transcript
		self.confidence = confidence
		self.fail = False
		self.gate = None
		self.calls = []
		self.closed = False

	async def transcribe(self, audio, metadata, *, token=None):
		self.calls.append({"audio": audio, "metadata": metadata, "token": token})
		if self.gate is not None:
			await self.gate.wait()
		if self.fail:
			raise TranscriptionFailed("speech backend down")
		return TranscriptionResult(
			transcript=self.transcript,
			confidence=self.confidence,
			is_correct=matches_accepted(self.transcript, metadata.get("expectedAnswers") or []),
		)

	async def aclose(self):
		self.closed = True


def correct_text(question) -> str:
	if question.accepted_answers:
		return question.accepted_answers[0]
	return question.options[0] if question.options else "anything"


def make_answer(**fields) -> AnswerRecord:
	fields.setdefault("question_displayed_at", "2026-03-02T09:00:00.000Z")
	fields.setdefault("answered_at", "2026-03-02T09:00:05.000Z")
	return AnswerRecord(**fields)


async def goto(session, question_id: str) -> None:
	while await session.navigate("previous"):
		pass
	while session.current_question.id != question_id:
		assert await session.navigate("next")


@pytest.fixture
def clock():
	return FrozenClock()


@pytest.fixture
def store(tmp_path):
	store = TreeStore(make_engine(f"sqlite:///{tmp_path / 'tree.db'}"))
	store.init()
	yield store
	store.close()


@pytest.fixture
def blobs(tmp_path):
	blobs = LocalBlobStorage(tmp_path / "blobs", "http://testserver")
	blobs.init()
	return blobs


@pytest.fixture
def transcriber():
	return FakeTranscriber()


@pytest.fixture
def bank():
	return QuestionBank(SMALL_EXAM)


@pytest.fixture
def principal():
	return Principal(uid="user1", email="taker@example.com", token="tok-user1")


@pytest.fixture
def make_session(store, bank, blobs, transcriber, clock, principal):
	def factory(**kwargs):
		who = kwargs.pop("principal", principal)
		kwargs.setdefault("rng", random.Random(42))
		kwargs.setdefault("written_sample_size", 3)
		kwargs.setdefault("audio_sample_size", 2)
		return ExamSession(
			who,
			store=store,
			bank=bank,
			blobs=blobs,
			transcriber=transcriber,
			clock=clock,
			**kwargs,
		)

	return factory


@pytest.fixture
def services(store, blobs, transcriber, clock):
	services = Services(store=store, blobs=blobs, transcriber=transcriber, recognizer=transcriber, clock=clock)
	services.manager.timer_enabled = False
	return services


@pytest.fixture
def client(services):
	with TestClient(create_app(services)) as client:
		yield client
