from __future__ import annotations
import random
from typing import Iterable, List, Optional


def select_subset(question_ids: Iterable[str], count: int, rng: Optional[random.Random] = None) -> List[str]:
	"""Pick ``count`` distinct ids uniformly at random.

	Fisher-Yates shuffle over the whole pool, then truncate. Duplicate ids in the
	input are collapsed first so the result never repeats an id. Call once per
	attempt and persist the result; resumed attempts must reuse it.
	"""
	rng = rng or random
	pool = list(dict.fromkeys(question_ids))
	for i in range(len(pool) - 1, 0, -1):
		j = rng.randint(0, i)
		pool[i], pool[j] = pool[j], pool[i]
	return pool[:max(0, count)]
