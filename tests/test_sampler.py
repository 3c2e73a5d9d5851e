import random

from examertric.question_bank import QuestionBank
from examertric.sampler import select_subset


def test_select_subset_returns_five_unique_ids_from_pool():
	pool = QuestionBank().pool("written")
	assert len(pool) >= 5
	for seed in range(200):
		picked = select_subset(pool, 5, random.Random(seed))
		assert len(picked) == 5
		assert len(set(picked)) == 5
		assert set(picked) <= set(pool)


def test_select_subset_collapses_duplicates():
	picked = select_subset(["a", "a", "b", "c", "c", "d", "e", "f"], 5, random.Random(1))
	assert len(picked) == 5
	assert len(set(picked)) == 5


def test_select_subset_small_pool_returns_everything():
	picked = select_subset(["x", "y"], 5, random.Random(3))
	assert sorted(picked) == ["x", "y"]


def test_select_subset_does_not_mutate_input():
	pool = ["a", "b", "c", "d", "e", "f"]
	select_subset(pool, 3, random.Random(9))
	assert pool == ["a", "b", "c", "d", "e", "f"]


def test_select_subset_varies_across_calls():
	pool = [f"q{i}" for i in range(1, 13)]
	draws = {tuple(select_subset(pool, 5, random.Random(seed))) for seed in range(20)}
	assert len(draws) > 1
