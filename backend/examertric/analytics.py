from __future__ import annotations
from typing import Any, Dict, List, Optional

from .scoring import round_half_up

SCORE_BUCKETS = ["0-20", "21-40", "41-60", "61-80", "81-100"]


def _bucket(score: float) -> str:
	if score <= 20:
		return "0-20"
	if score <= 40:
		return "21-40"
	if score <= 60:
		return "41-60"
	if score <= 80:
		return "61-80"
	return "81-100"


def summarize_results(results: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
	"""Aggregate stats across a user's stored results; None when there are none."""
	if not results:
		return None
	total = len(results)
	avg_score = sum(r.get("score") or 0 for r in results) / total
	avg_time = sum(r.get("timeSpent") or 0 for r in results) / total
	avg_completion = sum(
		(r.get("answeredCount") or 0) / r["totalQuestions"] * 100 if r.get("totalQuestions") else 0
		for r in results
	) / total

	text_answers = 0
	audio_answers = 0
	for r in results:
		for answer in (r.get("answers") or {}).values():
			if not isinstance(answer, dict):
				continue
			if answer.get("text"):
				text_answers += 1
			if answer.get("audioUrl"):
				audio_answers += 1

	distribution = {b: 0 for b in SCORE_BUCKETS}
	for r in results:
		distribution[_bucket(r.get("score") or 0)] += 1

	return {
		"totalExams": total,
		"avgScore": round(avg_score, 1),
		"avgTime": round_half_up(avg_time),
		"avgCompletion": round(avg_completion, 1),
		"textAnswers": text_answers,
		"audioAnswers": audio_answers,
		"scoreDistribution": [{"range": b, "count": distribution[b]} for b in SCORE_BUCKETS],
	}
