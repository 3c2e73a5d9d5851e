from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Tuple

from .errors import NotFound
from .question_bank import QuestionBank
from .schemas import AnalysisEntry, AnswerRecord

logger = logging.getLogger(__name__)

AUDIO_PLACEHOLDER = "Audio response"


def normalize(text: str | None) -> str:
	return (text or "").strip().lower()


def matches_accepted(text: str | None, accepted_answers: Iterable[str]) -> bool:
	given = normalize(text)
	return any(normalize(a) == given for a in accepted_answers)


def round_half_up(value: float) -> int:
	return int(math.floor(value + 0.5))


def score_percentage(correct_answers: int, answered_count: int) -> int:
	# Denominator is what was answered, not what was assigned
	if answered_count <= 0:
		return 0
	return round_half_up(correct_answers / answered_count * 100)


@dataclass
class ScoreOutcome:
	correct_answers: int = 0
	analysis: Dict[str, AnalysisEntry] = field(default_factory=dict)


def score_answers(answers: Mapping[str, AnswerRecord], bank: QuestionBank) -> ScoreOutcome:
	outcome = ScoreOutcome()
	for key, record in answers.items():
		try:
			_, question = bank.resolve(key)
		except NotFound as e:
			logger.error("Skipping answer %s during scoring: %s", key, e.detail)
			continue
		expected = list(question.accepted_answers)
		if record.text:
			correct = matches_accepted(record.text, expected)
			if correct:
				outcome.correct_answers += 1
			outcome.analysis[key] = AnalysisEntry(correct=correct, user_answer=record.text, expected_answers=expected)
		elif record.audio_url:
			# Pending manual review; only an administrator can flip this
			outcome.analysis[key] = AnalysisEntry(correct=False, user_answer=AUDIO_PLACEHOLDER, expected_answers=expected)
	return outcome


def _is_number(value: Any) -> bool:
	return isinstance(value, (int, float)) and not isinstance(value, bool)


def recompute_aggregate(analysis: Mapping[str, Any]) -> Tuple[int, int]:
	"""Return ``(score, correct_answers)`` for a stored analysis map.

	Entries carrying a numeric ``mark`` contribute ``mark`` out of ``maxMark``
	(default 1); entries without one contribute 1 or 0 from ``correct``.
	"""
	sum_marks = 0.0
	sum_max = 0.0
	count_correct = 0
	for entry in analysis.values():
		if not isinstance(entry, dict):
			continue
		mark = entry.get("mark")
		has_mark = _is_number(mark)
		sum_marks += mark if has_mark else (1 if entry.get("correct") is True else 0)
		max_mark = entry.get("maxMark")
		sum_max += max_mark if _is_number(max_mark) else 1
		if (has_mark and mark > 0) or entry.get("correct") is True:
			count_correct += 1
	score = round_half_up(sum_marks / sum_max * 100) if sum_max > 0 else 0
	return score, count_correct
