"""
Exam Session State Machine
==========================

One ``ExamSession`` tracks one user's attempt through

	uninitialized -> loading -> active -> submitting -> submitted
	uninitialized/loading -> blocked

Transitions outside that table raise ``InvalidTransition``; the state field is
the single writer guard, so a timer expiry racing a user submit (or a double
click) appends exactly one ExamResult.

Progress is written as a full document on every answer and navigation step,
so a reload rebuilds the same position, answers and question sample.
Audio answers are transcribed in the background; a late transcript targets
the question key captured when the audio was submitted.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from .blobs import LocalBlobStorage
from .errors import (
	AlreadyCompleted,
	ConfirmationRequired,
	Forbidden,
	InvalidTransition,
	NotFound,
	PersistenceFailed,
	TranscriptionFailed,
	ValidationFailed,
)
from .events import VisibilityEventSource, VisibilityHub
from .question_bank import QuestionBank, question_key
from .sampler import select_subset
from .schemas import AnswerRecord, ExamProgress, ExamResult, Principal, Question, Section, TabChangeEvent
from .scoring import normalize, score_answers, score_percentage
from .store import TreeStore, progress_path, results_path
from .timeutil import Clock, from_epoch_ms, to_epoch_ms, to_iso, utc_now
from .transcription import Transcriber

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
	UNINITIALIZED = "uninitialized"
	LOADING = "loading"
	ACTIVE = "active"
	SUBMITTING = "submitting"
	SUBMITTED = "submitted"
	BLOCKED = "blocked"


_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
	SessionState.UNINITIALIZED: {SessionState.LOADING, SessionState.BLOCKED},
	SessionState.LOADING: {SessionState.ACTIVE, SessionState.BLOCKED},
	SessionState.ACTIVE: {SessionState.SUBMITTING},
	# Back to active when the result could not be saved, so the user can retry
	SessionState.SUBMITTING: {SessionState.SUBMITTED, SessionState.ACTIVE},
	SessionState.SUBMITTED: set(),
	SessionState.BLOCKED: set(),
}

TERMINAL_STATES = (SessionState.SUBMITTED, SessionState.BLOCKED)

NAV_NEXT = "next"
NAV_SKIP = "skip"
NAV_PREVIOUS = "previous"


class ExamSession:
	def __init__(
		self,
		principal: Principal,
		*,
		store: TreeStore,
		bank: QuestionBank,
		blobs: LocalBlobStorage,
		transcriber: Transcriber,
		events: Optional[VisibilityEventSource] = None,
		clock: Clock = utc_now,
		rng: Optional[random.Random] = None,
		time_limit: timedelta = timedelta(minutes=20),
		written_sample_size: int = 5,
		audio_sample_size: int = 5,
		language_code: str = "en-US",
		on_finished: Optional[Callable[["ExamSession"], None]] = None,
	) -> None:
		self.principal = principal
		self.store = store
		self.bank = bank
		self.blobs = blobs
		self.transcriber = transcriber
		self.events = events
		self.clock = clock
		self.rng = rng
		self.time_limit = time_limit
		self.written_sample_size = written_sample_size
		self.audio_sample_size = audio_sample_size
		self.language_code = language_code
		self.on_finished = on_finished

		self.state = SessionState.UNINITIALIZED
		self.answers: Dict[str, AnswerRecord] = {}
		self.current_section: str = bank.section_ids[0]
		self.current_question_index: int = 0
		self.start_timestamp: Optional[int] = None
		self.written_question_ids: List[str] = []
		self.audio_question_ids: List[str] = []
		self.result_id: Optional[str] = None
		self.last_error: Optional[str] = None

		self._tab_events: Tuple[TabChangeEvent, ...] = ()
		self._hidden_since: Optional[datetime] = None
		self._displayed_at: datetime = clock()
		self._submit_task: Optional[asyncio.Task] = None
		self._timer_task: Optional[asyncio.Task] = None
		self._background: Set[asyncio.Task] = set()
		self._unsubscribe = None

	# ------------------------------------------------------------------
	# state table
	# ------------------------------------------------------------------

	def _transition(self, target: SessionState) -> None:
		if target not in _TRANSITIONS[self.state]:
			raise InvalidTransition(f"Cannot go from {self.state.value} to {target.value}")
		logger.debug("session %s: %s -> %s", self.principal.uid, self.state.value, target.value)
		self.state = target

	def _require_active(self) -> None:
		if self.state is not SessionState.ACTIVE:
			raise InvalidTransition(f"Exam is not in progress (state: {self.state.value})")

	# ------------------------------------------------------------------
	# attempt layout
	# ------------------------------------------------------------------

	def _question_ids_for(self, section: Section) -> List[str]:
		if not section.sampled:
			return [q.id for q in section.questions]
		return self.written_question_ids if section.modality == "written" else self.audio_question_ids

	def questions_for(self, section_id: str) -> List[Question]:
		section = self.bank.section(section_id)
		by_id = {q.id: q for q in section.questions}
		# Ids dropped from the bank since sampling are skipped
		return [by_id[qid] for qid in self._question_ids_for(section) if qid in by_id]

	@property
	def _section_order(self) -> List[str]:
		return [sid for sid in self.bank.section_ids if self.questions_for(sid)]

	@property
	def total_questions(self) -> int:
		return sum(len(self.questions_for(sid)) for sid in self.bank.section_ids)

	@property
	def answered_count(self) -> int:
		return len(self.answers)

	@property
	def current_question(self) -> Question:
		questions = self.questions_for(self.current_section)
		if not questions:
			raise NotFound(f"Section {self.current_section} has no questions in this attempt")
		index = min(max(self.current_question_index, 0), len(questions) - 1)
		return questions[index]

	@property
	def current_key(self) -> str:
		return question_key(self.current_section, self.current_question.id)

	@property
	def is_first_question(self) -> bool:
		order = self._section_order
		return not order or (self.current_section == order[0] and self.current_question_index == 0)

	@property
	def is_last_question(self) -> bool:
		order = self._section_order
		if not order:
			return True
		return self.current_section == order[-1] and self.current_question_index >= len(self.questions_for(order[-1])) - 1

	@property
	def tab_change_events(self) -> Tuple[TabChangeEvent, ...]:
		return self._tab_events

	@property
	def tab_change_count(self) -> int:
		return sum(1 for e in self._tab_events if e.was_hidden)

	# ------------------------------------------------------------------
	# timing
	# ------------------------------------------------------------------

	def elapsed(self) -> timedelta:
		if self.start_timestamp is None:
			return timedelta(0)
		return self.clock() - from_epoch_ms(self.start_timestamp)

	def remaining_seconds(self) -> int:
		return max(0, int((self.time_limit - self.elapsed()).total_seconds()))

	def is_expired(self) -> bool:
		return self.start_timestamp is not None and self.elapsed() >= self.time_limit

	# ------------------------------------------------------------------
	# loading
	# ------------------------------------------------------------------

	async def load(self) -> None:
		if self.state not in (SessionState.UNINITIALIZED, SessionState.LOADING):
			raise InvalidTransition(f"Session already {self.state.value}")
		uid = self.principal.uid
		try:
			results = self.store.read(results_path(uid))
			raw = self.store.read(progress_path(uid))
		except PersistenceFailed as e:
			logger.error("Failed to load exam progress for %s: %s", uid, e.detail)
			self.last_error = e.user_message
			if self.state is SessionState.UNINITIALIZED:
				self._transition(SessionState.LOADING)
			return

		if results or (isinstance(raw, dict) and raw.get("submitted")):
			self._transition(SessionState.BLOCKED)
			raise AlreadyCompleted("You have already completed the exam.")
		if self.state is SessionState.UNINITIALIZED:
			self._transition(SessionState.LOADING)

		if raw:
			try:
				progress = ExamProgress.model_validate(raw)
			except ValidationError as e:
				logger.error("Stored progress for %s is unreadable: %s", uid, e)
				self.last_error = "Your saved progress could not be read."
				return
			self._restore(progress)
		else:
			self._start_fresh()
			try:
				self.store.write(progress_path(uid), self._progress_doc())
			except PersistenceFailed as e:
				logger.error("Failed to create exam progress for %s: %s", uid, e.detail)
				self.last_error = e.user_message
				return

		self.last_error = None
		self._displayed_at = self.clock()
		self._transition(SessionState.ACTIVE)
		if self.events is not None and self._unsubscribe is None:
			self._unsubscribe = self.events.subscribe(self.on_visibility)
		if self.is_expired():
			logger.info("Time budget already spent for %s; auto-submitting", uid)
			try:
				await self.submit(auto=True)
			except PersistenceFailed:
				# Stays active; the timer retries
				pass

	def _start_fresh(self) -> None:
		self.written_question_ids = select_subset(self.bank.pool("written"), self.written_sample_size, self.rng)
		self.audio_question_ids = select_subset(self.bank.pool("audio"), self.audio_sample_size, self.rng)
		self.start_timestamp = to_epoch_ms(self.clock())
		self.current_section = self._section_order[0]
		self.current_question_index = 0
		self.answers = {}

	def _restore(self, progress: ExamProgress) -> None:
		self.answers = dict(progress.answers)
		self.start_timestamp = progress.start_timestamp if progress.start_timestamp is not None else to_epoch_ms(self.clock())
		self._tab_events = tuple(progress.tab_change_events)
		if progress.written_question_ids is None or progress.audio_question_ids is None:
			# Legacy progress without a stored sample: the saved index may now
			# point at a different question
			logger.warning("Progress for %s has no stored question sample; drawing a new one", self.principal.uid)
		self.written_question_ids = (
			list(progress.written_question_ids)
			if progress.written_question_ids is not None
			else select_subset(self.bank.pool("written"), self.written_sample_size, self.rng)
		)
		self.audio_question_ids = (
			list(progress.audio_question_ids)
			if progress.audio_question_ids is not None
			else select_subset(self.bank.pool("audio"), self.audio_sample_size, self.rng)
		)
		order = self._section_order
		if progress.current_section in order:
			self.current_section = progress.current_section
			self.current_question_index = max(0, progress.current_question_index)
		else:
			self.current_section = order[0]
			self.current_question_index = 0

	# ------------------------------------------------------------------
	# persistence
	# ------------------------------------------------------------------

	def _progress_doc(self) -> Dict[str, Any]:
		return ExamProgress(
			start_timestamp=self.start_timestamp,
			current_section=self.current_section,
			current_question_index=self.current_question_index,
			answers=self.answers,
			submitted=False,
			tab_change_events=list(self._tab_events),
			tab_change_count=self.tab_change_count,
			written_question_ids=self.written_question_ids,
			audio_question_ids=self.audio_question_ids,
		).to_doc()

	def _save_progress(self) -> bool:
		# Whole-document overwrite; the in-memory answer survives a failed write
		try:
			self.store.write(progress_path(self.principal.uid), self._progress_doc())
		except PersistenceFailed as e:
			logger.warning("Failed to save progress for %s: %s", self.principal.uid, e.detail)
			self.last_error = e.user_message
			return False
		self.last_error = None
		return True

	# ------------------------------------------------------------------
	# navigation
	# ------------------------------------------------------------------

	def _advance(self) -> bool:
		questions = self.questions_for(self.current_section)
		if self.current_question_index < len(questions) - 1:
			self.current_question_index += 1
			return True
		order = self._section_order
		idx = order.index(self.current_section) if self.current_section in order else -1
		if idx < len(order) - 1:
			self.current_section = order[idx + 1]
			self.current_question_index = 0
			return True
		return False

	def _retreat(self) -> bool:
		if self.current_question_index > 0:
			self.current_question_index -= 1
			return True
		order = self._section_order
		idx = order.index(self.current_section) if self.current_section in order else 0
		if idx > 0:
			self.current_section = order[idx - 1]
			self.current_question_index = len(self.questions_for(self.current_section)) - 1
			return True
		return False

	async def navigate(self, direction: str) -> bool:
		self._require_active()
		if direction in (NAV_NEXT, NAV_SKIP):
			moved = self._advance()
		elif direction == NAV_PREVIOUS:
			moved = self._retreat()
		else:
			raise ValidationFailed(f"Unknown direction: {direction}")
		if moved:
			self._displayed_at = self.clock()
			self._save_progress()
		return moved

	# ------------------------------------------------------------------
	# answers
	# ------------------------------------------------------------------

	def _new_record(self, question: Question, now: datetime, **fields: Any) -> AnswerRecord:
		return AnswerRecord(
			time_to_answer_ms=max(0, to_epoch_ms(now) - to_epoch_ms(self._displayed_at)),
			question_displayed_at=to_iso(self._displayed_at),
			answered_at=to_iso(now),
			expected_answers=list(question.accepted_answers),
			**fields,
		)

	async def save_text_answer(self, text: str, other_text: Optional[str] = None) -> Tuple[str, AnswerRecord]:
		self._require_active()
		question = self.current_question
		if question.type == "audio":
			raise ValidationFailed("This question needs a spoken answer.")
		value = (text or "").strip()
		if not value:
			raise ValidationFailed("Please provide an answer before continuing.")
		if question.type == "multiple" and question.options:
			chosen = next((o for o in question.options if normalize(o) == normalize(value)), None)
			if chosen is None:
				raise ValidationFailed("Please choose one of the listed options.")
			value = chosen
			if question.other_option and value == question.other_option:
				suffix = (other_text or "").strip()
				if not suffix:
					raise ValidationFailed("Please specify your answer for this option.")
				value = f"{value}: {suffix}"

		key = self.current_key
		now = self.clock()
		record = self._new_record(question, now, text=value)
		self.answers[key] = record
		self._advance()
		self._displayed_at = now
		self._save_progress()
		return key, record

	async def submit_audio(self, audio: bytes, *, audio_question_duration_ms: Optional[int] = None) -> Tuple[str, AnswerRecord]:
		self._require_active()
		question = self.current_question
		if question.type != "audio":
			raise ValidationFailed("This question needs a written answer.")
		key = self.current_key
		now = self.clock()
		blob = self.blobs.upload(f"examAnswers/{self.principal.uid}/{key}/{to_epoch_ms(now)}.webm", audio)
		record = self._new_record(
			question,
			now,
			audio_url=blob.url,
			storage_path=blob.path,
			audio_question_duration_ms=audio_question_duration_ms,
		)
		self.answers[key] = record
		self._advance()
		self._displayed_at = now
		self._save_progress()
		if audio:
			self._spawn(self._transcribe(key, blob.path, audio, list(question.accepted_answers)))
		else:
			logger.info("Empty recording for %s; left for manual review", key)
		return key, record

	def _spawn(self, coro) -> asyncio.Task:
		task = asyncio.create_task(coro)
		self._background.add(task)
		task.add_done_callback(self._background_done)
		return task

	def _background_done(self, task: asyncio.Task) -> None:
		self._background.discard(task)
		if not task.cancelled() and task.exception() is not None:
			logger.error("Background task failed for %s", self.principal.uid, exc_info=task.exception())

	def cancel_background(self) -> None:
		for task in list(self._background):
			task.cancel()

	async def drain(self) -> None:
		"""Wait for in-flight background transcriptions."""
		while self._background:
			await asyncio.gather(*list(self._background), return_exceptions=True)

	async def _transcribe(self, key: str, storage_path: str, audio: bytes, expected: List[str]) -> None:
		metadata = {"languageCode": self.language_code, "expectedAnswers": expected, "questionKey": key}
		try:
			result = await self.transcriber.transcribe(audio, metadata, token=self.principal.token)
		except TranscriptionFailed as e:
			logger.info("No transcript for %s (%s); left for manual review", key, e.detail)
			return
		if not result.transcript:
			logger.info("Empty transcript for %s; left for manual review", key)
			return
		if self.state is not SessionState.ACTIVE:
			logger.info("Dropping late transcript for %s: session is %s", key, self.state.value)
			return
		record = self.answers.get(key)
		if record is None or record.storage_path != storage_path:
			logger.info("Dropping transcript for %s: answer was replaced", key)
			return
		self.answers[key] = record.model_copy(update={"text": result.transcript})
		self._save_progress()

	# ------------------------------------------------------------------
	# telemetry
	# ------------------------------------------------------------------

	def on_visibility(self, hidden: bool) -> None:
		now = self.clock()
		if hidden:
			self._hidden_since = now
			event = TabChangeEvent(timestamp=to_iso(now), was_hidden=True)
		else:
			duration = None
			if self._hidden_since is not None:
				duration = max(0, to_epoch_ms(now) - to_epoch_ms(self._hidden_since))
			self._hidden_since = None
			event = TabChangeEvent(timestamp=to_iso(now), was_hidden=False, duration_hidden_ms=duration)
		self._tab_events = self._tab_events + (event,)

	# ------------------------------------------------------------------
	# submission
	# ------------------------------------------------------------------

	async def submit(self, *, confirmed: bool = False, auto: bool = False) -> str:
		if self.state is SessionState.SUBMITTED and self.result_id:
			return self.result_id
		if self.state is SessionState.SUBMITTING and self._submit_task is not None:
			return await asyncio.shield(self._submit_task)
		self._require_active()
		if not auto and not confirmed and self.answered_count < self.total_questions:
			raise ConfirmationRequired(
				f"You have answered {self.answered_count} out of {self.total_questions} questions. Submit anyway?"
			)
		self._transition(SessionState.SUBMITTING)
		self._submit_task = asyncio.create_task(self._finalize("timeout" if auto else "user"))
		return await asyncio.shield(self._submit_task)

	async def _finalize(self, reason: str) -> str:
		uid = self.principal.uid
		now = self.clock()
		outcome = score_answers(self.answers, self.bank)
		answered = self.answered_count
		result = ExamResult(
			user_id=uid,
			email=self.principal.email,
			answers=self.answers,
			analysis=outcome.analysis,
			score=score_percentage(outcome.correct_answers, answered),
			correct_answers=outcome.correct_answers,
			timestamp=to_iso(now),
			time_spent=max(0, (to_epoch_ms(now) - (self.start_timestamp or to_epoch_ms(now))) // 1000),
			total_questions=self.total_questions,
			answered_count=answered,
			tab_change_events=list(self._tab_events),
			tab_change_count=self.tab_change_count,
		)
		try:
			path = self.store.push_create(results_path(uid))
			self.store.write(path, result.to_doc())
		except PersistenceFailed as e:
			logger.error("Failed to save exam result for %s: %s", uid, e.detail)
			self.last_error = e.user_message
			self._submit_task = None
			self._transition(SessionState.ACTIVE)
			raise
		self.result_id = path.rsplit("/", 1)[-1]
		try:
			self.store.write(progress_path(uid), {"submitted": True})
		except PersistenceFailed as e:
			# The stored result alone already bars another attempt
			logger.error("Result %s saved but progress not marked submitted for %s: %s", self.result_id, uid, e.detail)
		self._transition(SessionState.SUBMITTED)
		logger.info("Exam submitted for %s (%s): result %s, score %s%%", uid, reason, self.result_id, result.score)
		self.teardown()
		return self.result_id

	# ------------------------------------------------------------------
	# timer and lifecycle
	# ------------------------------------------------------------------

	async def tick(self) -> bool:
		"""One timer step; returns True when it triggered the auto-submit."""
		if self.state is not SessionState.ACTIVE or not self.is_expired():
			return False
		try:
			await self.submit(auto=True)
		except PersistenceFailed:
			return False
		return True

	async def _run_timer(self, interval: float) -> None:
		while self.state not in TERMINAL_STATES:
			await asyncio.sleep(interval)
			await self.tick()

	def start_timer(self, interval: float = 1.0) -> None:
		if self._timer_task is None or self._timer_task.done():
			self._timer_task = asyncio.create_task(self._run_timer(interval))

	def teardown(self) -> None:
		if self._unsubscribe is not None:
			self._unsubscribe()
			self._unsubscribe = None
		timer = self._timer_task
		self._timer_task = None
		if timer is not None and not timer.done() and timer is not asyncio.current_task():
			timer.cancel()
		if self.on_finished is not None:
			self.on_finished(self)

	# ------------------------------------------------------------------
	# views
	# ------------------------------------------------------------------

	def snapshot(self) -> Dict[str, Any]:
		data: Dict[str, Any] = {
			"state": self.state.value,
			"answeredCount": self.answered_count,
			"totalQuestions": self.total_questions,
			"remainingSeconds": self.remaining_seconds(),
			"tabChangeCount": self.tab_change_count,
			"resultId": self.result_id,
			"error": self.last_error,
		}
		if self.state is not SessionState.ACTIVE:
			return data
		question = self.current_question
		section = self.bank.section(self.current_section)
		existing = self.answers.get(self.current_key)
		data.update(
			{
				"currentSection": section.id,
				"sectionTitle": section.title,
				"currentQuestionIndex": self.current_question_index,
				"questionsInSection": len(self.questions_for(section.id)),
				"questionKey": self.current_key,
				"question": {
					"id": question.id,
					"type": question.type,
					"prompt": question.prompt,
					"options": question.options,
					"ttsText": question.tts_text,
				},
				"currentAnswer": existing.to_doc() if existing else None,
				"isFirstQuestion": self.is_first_question,
				"isLastQuestion": self.is_last_question,
			}
		)
		return data


class SessionManager:
	"""In-memory registry of live sessions, one per user, rebuilt from stored progress on demand."""

	def __init__(
		self,
		*,
		store: TreeStore,
		bank: QuestionBank,
		blobs: LocalBlobStorage,
		transcriber: Transcriber,
		hub: Optional[VisibilityHub] = None,
		clock: Clock = utc_now,
		rng: Optional[random.Random] = None,
		time_limit: timedelta = timedelta(minutes=20),
		written_sample_size: int = 5,
		audio_sample_size: int = 5,
		language_code: str = "en-US",
		timer_enabled: bool = True,
		tick_seconds: float = 1.0,
	) -> None:
		self.store = store
		self.bank = bank
		self.blobs = blobs
		self.transcriber = transcriber
		self.hub = hub if hub is not None else VisibilityHub()
		self.clock = clock
		self.rng = rng
		self.time_limit = time_limit
		self.written_sample_size = written_sample_size
		self.audio_sample_size = audio_sample_size
		self.language_code = language_code
		self.timer_enabled = timer_enabled
		self.tick_seconds = tick_seconds
		self._sessions: Dict[str, ExamSession] = {}

	def _new_session(self, principal: Principal) -> ExamSession:
		return ExamSession(
			principal,
			store=self.store,
			bank=self.bank,
			blobs=self.blobs,
			transcriber=self.transcriber,
			events=self.hub.source_for(principal.uid),
			clock=self.clock,
			rng=self.rng,
			time_limit=self.time_limit,
			written_sample_size=self.written_sample_size,
			audio_sample_size=self.audio_sample_size,
			language_code=self.language_code,
			on_finished=self._forget,
		)

	def _forget(self, session: ExamSession) -> None:
		uid = session.principal.uid
		if self._sessions.get(uid) is session:
			del self._sessions[uid]
		self.hub.discard(uid)

	def peek(self, uid: str) -> Optional[ExamSession]:
		return self._sessions.get(uid)

	def latest_result(self, uid: str) -> Optional[Tuple[str, Dict[str, Any]]]:
		"""Newest stored result for ``uid`` as ``(result_id, document)``."""
		results = self.store.read(results_path(uid)) or {}
		if not results:
			return None
		result_id = max(results)
		return result_id, results[result_id]

	@property
	def live_count(self) -> int:
		return len(self._sessions)

	async def open(self, principal: Principal) -> ExamSession:
		if principal.is_admin:
			raise Forbidden("Administrators cannot take the exam.")
		session = self._sessions.get(principal.uid)
		if session is not None and session.state in (SessionState.ACTIVE, SessionState.SUBMITTING):
			session.principal = principal
			return session
		if session is None or session.state in TERMINAL_STATES:
			session = self._new_session(principal)
			self._sessions[principal.uid] = session
		try:
			await session.load()
		except AlreadyCompleted:
			self._forget(session)
			raise
		if session.state is SessionState.ACTIVE and self.timer_enabled:
			session.start_timer(self.tick_seconds)
		return session

	async def close(self) -> None:
		for session in list(self._sessions.values()):
			session.cancel_background()
			session.teardown()
		self._sessions.clear()
