import asyncio
import random
from datetime import timedelta

import pytest

from examertric.errors import (
	AlreadyCompleted,
	ConfirmationRequired,
	Forbidden,
	InvalidTransition,
	PersistenceFailed,
	ValidationFailed,
)
from examertric.events import VisibilityEventSource
from examertric.schemas import ExamProgress, Principal
from examertric.session import SessionManager, SessionState
from examertric.store import progress_path, results_path
from examertric.timeutil import to_epoch_ms

from conftest import correct_text, goto


def test_fresh_load_samples_and_persists_progress(make_session, store):
	session = make_session(written_sample_size=2)
	asyncio.run(session.load())
	assert session.state is SessionState.ACTIVE
	assert len(session.written_question_ids) == 2
	assert len(session.audio_question_ids) == 2
	# 2 sampled + 1 control + 2 sampled + 1 control
	assert session.total_questions == 6
	assert session.current_section == "section1_standard"
	stored = store.read(progress_path("user1"))
	assert stored["writtenQuestionIds"] == session.written_question_ids
	assert stored["startTimestamp"] == session.start_timestamp
	assert stored["submitted"] is False


def test_resume_restores_answers_position_and_sample(make_session):
	async def scenario():
		first = make_session(written_sample_size=2)
		await first.load()
		await first.save_text_answer(correct_text(first.current_question))
		await first.navigate("next")
		second = make_session(written_sample_size=2, rng=random.Random(999))
		await second.load()
		return first, second

	first, second = asyncio.run(scenario())
	assert second.state is SessionState.ACTIVE
	assert second.answers == first.answers
	assert second.current_section == first.current_section
	assert second.current_question_index == first.current_question_index
	assert second.written_question_ids == first.written_question_ids
	assert second.audio_question_ids == first.audio_question_ids
	assert second.start_timestamp == first.start_timestamp


def test_missing_sample_is_regenerated_on_resume(make_session, store, clock):
	store.write(progress_path("user1"), {"startTimestamp": to_epoch_ms(clock()), "currentSection": "section1_control", "currentQuestionIndex": 0})
	session = make_session()
	asyncio.run(session.load())
	assert session.state is SessionState.ACTIVE
	assert sorted(session.written_question_ids) == ["w1", "w2", "w3"]
	assert session.current_section == "section1_control"


def _write_progress(store, clock, *, started_ago):
	progress = ExamProgress(
		start_timestamp=to_epoch_ms(clock() - started_ago),
		current_section="section1_standard",
		current_question_index=0,
		written_question_ids=["w1", "w2", "w3"],
		audio_question_ids=["a1", "a2"],
	)
	store.write(progress_path("user1"), progress.to_doc())


def test_expired_attempt_auto_submits_on_load(make_session, store, clock):
	_write_progress(store, clock, started_ago=timedelta(minutes=20, seconds=1))
	session = make_session()
	asyncio.run(session.load())
	assert session.state is SessionState.SUBMITTED
	results = store.read(results_path("user1"))
	assert len(results) == 1
	assert store.read(progress_path("user1")) == {"submitted": True}


def test_attempt_within_time_limit_stays_active(make_session, store, clock):
	_write_progress(store, clock, started_ago=timedelta(minutes=19))
	session = make_session()
	asyncio.run(session.load())
	assert session.state is SessionState.ACTIVE
	assert session.remaining_seconds() == 60
	assert store.read(results_path("user1")) is None


def test_timer_tick_submits_once_time_runs_out(make_session, store, clock):
	async def scenario():
		session = make_session()
		await session.load()
		clock.advance(minutes=19, seconds=59)
		early = await session.tick()
		clock.advance(seconds=1)
		fired = await session.tick()
		again = await session.tick()
		return session, early, fired, again

	session, early, fired, again = asyncio.run(scenario())
	assert (early, fired, again) == (False, True, False)
	assert session.state is SessionState.SUBMITTED
	assert len(store.read(results_path("user1"))) == 1


def test_double_submit_appends_one_result(make_session, store):
	async def scenario():
		session = make_session()
		await session.load()
		ids = await asyncio.gather(session.submit(confirmed=True), session.submit(confirmed=True))
		later = await session.submit(confirmed=True)
		return ids, later

	ids, later = asyncio.run(scenario())
	assert ids[0] == ids[1] == later
	assert list(store.read(results_path("user1"))) == [ids[0]]


def test_timer_racing_user_submit_appends_one_result(make_session, store, clock):
	async def scenario():
		session = make_session()
		await session.load()
		clock.advance(minutes=25)
		await asyncio.gather(session.submit(confirmed=True), session.tick())
		return session

	session = asyncio.run(scenario())
	assert session.state is SessionState.SUBMITTED
	assert len(store.read(results_path("user1"))) == 1


def test_existing_result_blocks_every_load(make_session, store):
	store.write(results_path("user1") + "/r1", {"score": 40, "timestamp": "2026-03-01T10:00:00.000Z"})
	for _ in range(2):
		session = make_session()
		with pytest.raises(AlreadyCompleted):
			asyncio.run(session.load())
		assert session.state is SessionState.BLOCKED
	assert store.read(progress_path("user1")) is None


def test_submitted_progress_blocks_load(make_session, store):
	store.write(progress_path("user1"), {"submitted": True})
	session = make_session()
	with pytest.raises(AlreadyCompleted):
		asyncio.run(session.load())


def test_load_failure_stays_loading(make_session, store, monkeypatch):
	def broken_read(path):
		raise PersistenceFailed("unable to open database file")

	monkeypatch.setattr(store, "read", broken_read)
	session = make_session()
	asyncio.run(session.load())
	assert session.state is SessionState.LOADING
	assert "unreachable" in session.last_error


def test_navigation_stops_at_both_ends(make_session, store):
	async def scenario():
		session = make_session()
		await session.load()
		at_start = await session.navigate("previous")
		steps = 0
		while await session.navigate("next"):
			steps += 1
		at_end = await session.navigate("skip")
		return session, at_start, steps, at_end

	session, at_start, steps, at_end = asyncio.run(scenario())
	assert at_start is False
	assert steps == session.total_questions - 1
	assert at_end is False
	assert session.is_last_question
	assert session.current_section == "section2_control"
	assert store.read(progress_path("user1"))["currentSection"] == "section2_control"


def test_previous_crosses_back_into_prior_section(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "c1")
		await session.navigate("previous")
		return session

	session = asyncio.run(scenario())
	assert session.current_section == "section1_standard"
	assert session.current_question_index == 2


def test_unknown_direction_is_rejected(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		await session.navigate("sideways")

	with pytest.raises(ValidationFailed):
		asyncio.run(scenario())


def test_empty_answer_is_rejected(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		await session.save_text_answer("   ")

	with pytest.raises(ValidationFailed):
		asyncio.run(scenario())


def test_saving_answer_records_timing_and_advances(make_session, store, clock):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "w1")
		clock.advance(seconds=12)
		return session, await session.save_text_answer(" Paris ")

	session, (key, record) = asyncio.run(scenario())
	assert key == "section1_standard_w1"
	assert record.text == "Paris"
	assert record.time_to_answer_ms == 12000
	assert record.expected_answers == ["Paris"]
	assert session.current_key != key
	assert store.read(progress_path("user1"))["answers"][key]["text"] == "Paris"


def test_multiple_choice_other_option_records_suffix(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "w2")
		with pytest.raises(ValidationFailed):
			await session.save_text_answer("Green")
		with pytest.raises(ValidationFailed):
			await session.save_text_answer("Other", "  ")
		return await session.save_text_answer("Other", "Teal")

	key, record = asyncio.run(scenario())
	assert record.text == "Other: Teal"


def test_choice_matching_ignores_case_and_whitespace(make_session, store):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "w2")
		key, record = await session.save_text_answer("  blue ")
		result_id = await session.submit(confirmed=True)
		return key, record, result_id

	key, record, result_id = asyncio.run(scenario())
	assert record.text == "Blue"
	analysis = store.read(f"{results_path('user1')}/{result_id}/analysis")
	assert analysis[key]["correct"] is True


def test_other_option_matches_case_insensitively(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "w2")
		return await session.save_text_answer(" other", "Teal")

	_, record = asyncio.run(scenario())
	assert record.text == "Other: Teal"


def test_empty_recording_is_kept_for_review(make_session, store, transcriber):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "a1")
		key, record = await session.submit_audio(b"")
		await session.drain()
		return session, key, record

	session, key, record = asyncio.run(scenario())
	assert record.audio_url
	assert transcriber.calls == []
	assert session.answers[key].text is None
	assert store.read(progress_path("user1"))["answers"][key]["storagePath"] == record.storage_path


def test_text_answer_on_audio_question_is_rejected(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "a1")
		await session.save_text_answer("Rome")

	with pytest.raises(ValidationFailed):
		asyncio.run(scenario())


def test_progress_save_failure_keeps_answer_in_memory(make_session, store, monkeypatch):
	async def scenario():
		session = make_session()
		await session.load()
		original = store.write

		def failing_write(path, value):
			if path.startswith("examProgress/"):
				raise PersistenceFailed("PERMISSION_DENIED")
			return original(path, value)

		monkeypatch.setattr(store, "write", failing_write)
		key, _ = await session.save_text_answer(correct_text(session.current_question))
		return session, key

	session, key = asyncio.run(scenario())
	assert key in session.answers
	assert "Permission denied" in session.last_error
	assert session.state is SessionState.ACTIVE


def test_audio_answer_is_uploaded_and_transcript_merged(make_session, store, transcriber, blobs):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "a1")
		key, record = await session.submit_audio(b"webm-bytes", audio_question_duration_ms=3200)
		await session.drain()
		return session, key, record

	session, key, record = asyncio.run(scenario())
	assert key == "section2_standard_a1"
	assert record.storage_path.startswith("examAnswers/user1/section2_standard_a1/")
	assert record.storage_path.endswith(".webm")
	assert record.audio_url.startswith("http://testserver/blobs/examAnswers/user1/")
	assert (blobs.root / record.storage_path).read_bytes() == b"webm-bytes"
	assert session.answers[key].text == "Rome"
	assert store.read(progress_path("user1"))["answers"][key]["text"] == "Rome"
	call = transcriber.calls[0]
	assert call["token"] == "tok-user1"
	assert call["metadata"] == {"languageCode": "en-US", "expectedAnswers": ["Rome"], "questionKey": key}


def test_transcript_targets_the_question_it_was_recorded_for(make_session, transcriber):
	async def scenario():
		transcriber.gate = asyncio.Event()
		session = make_session()
		await session.load()
		await goto(session, "a1")
		key, _ = await session.submit_audio(b"one")
		# User moves on and answers something else before the transcript lands
		moved_to = session.current_key
		transcriber.gate.set()
		await session.drain()
		return session, key, moved_to

	session, key, moved_to = asyncio.run(scenario())
	assert moved_to != key
	assert session.answers[key].text == "Rome"
	assert moved_to not in session.answers


def test_transcription_failure_leaves_audio_for_review(make_session, transcriber):
	transcriber.fail = True

	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "a1")
		key, _ = await session.submit_audio(b"clip")
		await session.drain()
		return session, key

	session, key = asyncio.run(scenario())
	assert session.state is SessionState.ACTIVE
	assert session.answers[key].text is None
	assert session.answers[key].audio_url


def test_late_transcript_after_submit_is_dropped(make_session, store, transcriber):
	async def scenario():
		transcriber.gate = asyncio.Event()
		session = make_session()
		await session.load()
		await goto(session, "a1")
		key, _ = await session.submit_audio(b"clip")
		result_id = await session.submit(confirmed=True)
		transcriber.gate.set()
		await session.drain()
		return key, result_id

	key, result_id = asyncio.run(scenario())
	assert store.read(progress_path("user1")) == {"submitted": True}
	result = store.read(f"{results_path('user1')}/{result_id}")
	assert "text" not in result["answers"][key]


def test_replaced_audio_answer_ignores_older_transcript(make_session, transcriber, clock):
	async def scenario():
		transcriber.gate = asyncio.Event()
		session = make_session()
		await session.load()
		await goto(session, "a1")
		key, _ = await session.submit_audio(b"first")
		await session.navigate("previous")
		clock.advance(seconds=3)
		_, second = await session.submit_audio(b"second")
		transcriber.transcript = "rome"
		transcriber.gate.set()
		await session.drain()
		return session, key, second

	session, key, second = asyncio.run(scenario())
	assert session.answers[key].storage_path == second.storage_path
	assert session.answers[key].text == "rome"


def test_visibility_events_are_appended_with_hidden_duration(make_session, clock):
	events = VisibilityEventSource()

	async def scenario():
		session = make_session(events=events)
		await session.load()
		events.publish(True)
		clock.advance(seconds=5)
		events.publish(False)
		events.publish(True)
		return session

	session = asyncio.run(scenario())
	log = session.tab_change_events
	assert [e.was_hidden for e in log] == [True, False, True]
	assert log[1].duration_hidden_ms == 5000
	assert session.tab_change_count == 2
	assert isinstance(log, tuple)


def test_teardown_unsubscribes_from_visibility(make_session, store):
	events = VisibilityEventSource()

	async def scenario():
		session = make_session(events=events)
		await session.load()
		events.publish(True)
		assert events.listener_count == 1
		await session.submit(confirmed=True)
		return session

	asyncio.run(scenario())
	assert events.listener_count == 0
	result = next(iter(store.read(results_path("user1")).values()))
	assert result["tabChangeCount"] == 1


def test_incomplete_submit_needs_confirmation(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		try:
			await session.submit()
		except ConfirmationRequired as e:
			return session, e

	session, error = asyncio.run(scenario())
	assert error.detail == "You have answered 0 out of 7 questions. Submit anyway?"
	assert session.state is SessionState.ACTIVE


def test_result_scores_against_answered_questions(make_session, store, clock):
	async def scenario():
		session = make_session()
		await session.load()
		await goto(session, "w1")
		await session.save_text_answer("paris")
		await goto(session, "w3")
		await session.save_text_answer("eight")
		clock.advance(minutes=3)
		return await session.submit(confirmed=True)

	result_id = asyncio.run(scenario())
	result = store.read(f"{results_path('user1')}/{result_id}")
	assert result["answeredCount"] == 2
	assert result["totalQuestions"] == 7
	assert result["correctAnswers"] == 1
	assert result["score"] == 50
	assert result["timeSpent"] == 180
	assert result["userId"] == "user1"
	assert result["email"] == "taker@example.com"
	assert result["analysis"]["section1_standard_w3"]["expectedAnswers"] == ["7", "seven"]


def test_failed_result_write_allows_retry(make_session, store, monkeypatch):
	original = store.write

	def failing_write(path, value):
		if path.startswith("examResults/"):
			raise PersistenceFailed("service unavailable")
		return original(path, value)

	async def scenario():
		session = make_session()
		await session.load()
		monkeypatch.setattr(store, "write", failing_write)
		with pytest.raises(PersistenceFailed):
			await session.submit(confirmed=True)
		state_after_failure = session.state
		monkeypatch.setattr(store, "write", original)
		result_id = await session.submit(confirmed=True)
		return session, state_after_failure, result_id

	session, state_after_failure, result_id = asyncio.run(scenario())
	assert state_after_failure is SessionState.ACTIVE
	assert session.state is SessionState.SUBMITTED
	assert list(store.read(results_path("user1"))) == [result_id]


def test_actions_after_submit_are_invalid(make_session):
	async def scenario():
		session = make_session()
		await session.load()
		await session.submit(confirmed=True)
		await session.navigate("next")

	with pytest.raises(InvalidTransition):
		asyncio.run(scenario())


def test_manager_refuses_admins_and_reuses_live_sessions(store, bank, blobs, transcriber, clock):
	manager = SessionManager(store=store, bank=bank, blobs=blobs, transcriber=transcriber, clock=clock, timer_enabled=False)

	async def scenario():
		with pytest.raises(Forbidden):
			await manager.open(Principal(uid="boss", is_admin=True))
		first = await manager.open(Principal(uid="u9", token="a"))
		second = await manager.open(Principal(uid="u9", token="b"))
		await first.submit(confirmed=True)
		with pytest.raises(AlreadyCompleted):
			await manager.open(Principal(uid="u9", token="c"))
		await manager.close()
		return first, second

	first, second = asyncio.run(scenario())
	assert first is second
	assert first.principal.token == "b"
	assert manager.peek("u9") is None


def test_manager_forgets_finished_sessions(store, bank, blobs, transcriber, clock):
	manager = SessionManager(store=store, bank=bank, blobs=blobs, transcriber=transcriber, clock=clock, timer_enabled=False)

	async def scenario():
		for n in range(3):
			session = await manager.open(Principal(uid=f"u{n}"))
			assert manager.hub.get(f"u{n}").listener_count == 1
			await session.submit(confirmed=True)
		# A refused reopen leaves nothing behind either
		with pytest.raises(AlreadyCompleted):
			await manager.open(Principal(uid="u0"))
		return manager.latest_result("u0")

	result_id, result = asyncio.run(scenario())
	assert manager.live_count == 0
	assert manager.hub.source_count == 0
	assert result["userId"] == "u0"
	assert result_id in store.read(results_path("u0"))
