from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import NotFound, PersistenceFailed
from .schemas import AnalysisEntry, Principal, ReviewRecord
from .scoring import AUDIO_PLACEHOLDER, recompute_aggregate
from .store import TreeStore, progress_path, results_path, review_path, reviews_path, user_path
from .timeutil import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationOutcome:
	review: ReviewRecord
	updated_results: List[str] = field(default_factory=list)
	failed_results: Dict[str, str] = field(default_factory=dict)


def _find_answer(store: TreeStore, user_id: str, question_key: str, results: Dict[str, Any]) -> Dict[str, Any]:
	answer = store.read(f"{progress_path(user_id)}/answers/{question_key}")
	if isinstance(answer, dict) and (answer.get("audioUrl") or answer.get("text")):
		return answer
	# Progress answers are dropped on submit; fall back to the newest result holding the key
	for _, result in sorted(results.items(), key=lambda kv: str((kv[1] or {}).get("timestamp", "")), reverse=True):
		candidate = ((result or {}).get("answers") or {}).get(question_key)
		if isinstance(candidate, dict):
			return candidate
	return {}


def apply_review(
	store: TreeStore,
	reviewer: Principal,
	*,
	user_id: str,
	question_key: str,
	corrected_transcript: str,
	is_correct: bool,
	mark: Optional[float] = None,
	max_mark: Optional[float] = None,
	clock: Clock = utc_now,
) -> ReconciliationOutcome:
	"""Record an administrator's grading of one answer and fold it into every stored result.

	The review is written to ``audioReviews`` and mirrored into the live
	progress answer. Each result holding ``question_key`` gets its analysis
	entry overwritten and its score recomputed from the freshly read analysis
	map; a failure on one result is logged and does not stop the others.
	"""
	results = store.read(results_path(user_id)) or {}
	answer = _find_answer(store, user_id, question_key, results)
	if not answer:
		raise NotFound(f"No answer {question_key} for user {user_id}")

	review = ReviewRecord(
		reviewer_id=reviewer.uid,
		reviewer_email=reviewer.email,
		corrected_transcript=corrected_transcript,
		is_correct=is_correct,
		reviewed_at=to_iso(clock()),
		audio_url=answer.get("audioUrl"),
		storage_path=answer.get("storagePath"),
		mark=mark,
		max_mark=max_mark,
	)
	doc = review.to_doc()
	store.write(review_path(user_id, question_key), doc)
	store.write(f"{progress_path(user_id)}/answers/{question_key}/review", doc)

	outcome = ReconciliationOutcome(review=review)
	for result_id, result in results.items():
		stored_answer = ((result or {}).get("answers") or {}).get(question_key)
		if not isinstance(stored_answer, dict):
			continue
		base = f"{results_path(user_id)}/{result_id}"
		entry = AnalysisEntry(
			correct=is_correct,
			user_answer=stored_answer.get("text") or (AUDIO_PLACEHOLDER if stored_answer.get("audioUrl") else ""),
			expected_answers=stored_answer.get("expectedAnswers") or answer.get("expectedAnswers") or [],
			reviewer_id=reviewer.uid,
			reviewer_email=reviewer.email,
			corrected_transcript=corrected_transcript,
			reviewed_at=review.reviewed_at,
			mark=mark,
			max_mark=max_mark,
		)
		try:
			store.write(f"{base}/analysis/{question_key}", entry.to_doc())
			# Read back so the aggregate reflects the entry just written
			analysis = store.read(f"{base}/analysis") or {}
			score, correct_answers = recompute_aggregate(analysis)
			store.write(f"{base}/score", score)
			store.write(f"{base}/correctAnswers", correct_answers)
		except PersistenceFailed as e:
			logger.warning("Failed to reconcile result %s for %s: %s", result_id, user_id, e.detail)
			outcome.failed_results[result_id] = e.user_message
			continue
		outcome.updated_results.append(result_id)
	logger.info(
		"Review of %s/%s by %s: %d result(s) updated, %d failed",
		user_id, question_key, reviewer.uid, len(outcome.updated_results), len(outcome.failed_results),
	)
	return outcome


def list_candidates(store: TreeStore) -> List[Dict[str, Any]]:
	"""Users with progress or results, joined with their profile."""
	uids = set((store.read("examProgress") or {}).keys()) | set((store.read("examResults") or {}).keys())
	users: List[Dict[str, Any]] = []
	for uid in sorted(uids):
		profile = store.read(user_path(uid)) or {}
		users.append({"uid": uid, "email": profile.get("email"), "name": profile.get("name")})
	return users


def list_review_items(store: TreeStore, user_id: str, *, pending_only: bool = False) -> List[Dict[str, Any]]:
	items: Dict[str, Dict[str, Any]] = {}

	def collect(key: str, answer: Dict[str, Any], reviewed: Optional[Dict[str, Any]]) -> None:
		audio_url = answer.get("audioUrl")
		transcript = answer.get("text")
		item = items.get(key)
		if item is None:
			if not audio_url:
				return
			item = items[key] = {
				"userId": user_id,
				"questionKey": key,
				"audioUrl": audio_url,
				"storagePath": answer.get("storagePath"),
				"transcript": transcript,
				"expectedAnswers": answer.get("expectedAnswers") or [],
				"review": None,
			}
		if reviewed and not item["review"]:
			item["review"] = reviewed

	progress = store.read(progress_path(user_id)) or {}
	for key, answer in (progress.get("answers") or {}).items():
		if isinstance(answer, dict):
			collect(key, answer, answer.get("review"))
	for result in (store.read(results_path(user_id)) or {}).values():
		analysis = (result or {}).get("analysis") or {}
		for key, answer in ((result or {}).get("answers") or {}).items():
			if not isinstance(answer, dict):
				continue
			entry = analysis.get(key) or {}
			collect(key, answer, entry if entry.get("reviewerId") else None)
	# A review mirrored into submitted progress has no answer body of its own
	for key, answer in (progress.get("answers") or {}).items():
		if key in items and isinstance(answer, dict) and answer.get("review"):
			items[key]["review"] = answer["review"]
	# The progress mirror is lost on the next whole-document save
	for key, review in (store.read(reviews_path(user_id)) or {}).items():
		if key in items and isinstance(review, dict) and not items[key]["review"]:
			items[key]["review"] = review

	out = []
	for key in sorted(items):
		item = items[key]
		item["reviewed"] = item["review"] is not None
		if pending_only and item["reviewed"]:
			continue
		out.append(item)
	return out
