from __future__ import annotations
from typing import Any, Dict, List, Tuple

from .errors import NotFound
from .schemas import Question, Section


EXAM_DATA: Dict[str, Any] = {
	"title": "Written vs. Oral Assessment Study",
	"description": "Answer each question in writing or by speaking, as instructed. You have 20 minutes.",
	"sections": [
		{
			"id": "section1_standard",
			"title": "Section 1: Written questions",
			"modality": "written",
			"variant": "standard",
			"questions": [
				{"id": "q1", "type": "blank", "prompt": "What is the capital city of France?", "accepted_answers": ["Paris"]},
				{"id": "q2", "type": "blank", "prompt": "How many continents are there on Earth?", "accepted_answers": ["7", "seven"]},
				{"id": "q3", "type": "blank", "prompt": "Which gas do plants absorb from the air for photosynthesis?", "accepted_answers": ["carbon dioxide", "CO2"]},
				{"id": "q4", "type": "blank", "prompt": "What is 12 multiplied by 8?", "accepted_answers": ["96", "ninety-six", "ninety six"]},
				{"id": "q5", "type": "blank", "prompt": "Who wrote the play 'Romeo and Juliet'?", "accepted_answers": ["Shakespeare", "William Shakespeare"]},
				{"id": "q6", "type": "blank", "prompt": "What is the largest planet in our solar system?", "accepted_answers": ["Jupiter"]},
				{"id": "q7", "type": "blank", "prompt": "What is the chemical symbol for gold?", "accepted_answers": ["Au"]},
				{
					"id": "q8",
					"type": "multiple",
					"prompt": "Which of these is a primary colour of light?",
					"accepted_answers": ["Green"],
					"options": ["Yellow", "Green", "Orange", "Purple"],
				},
				{
					"id": "q9",
					"type": "multiple",
					"prompt": "Which organ pumps blood around the body?",
					"accepted_answers": ["Heart", "The heart"],
					"options": ["Lungs", "Liver", "Heart", "Kidneys"],
				},
				{
					"id": "q10",
					"type": "multiple",
					"prompt": "How do you usually prefer to revise for exams?",
					"accepted_answers": [],
					"options": ["Reading notes", "Practice questions", "Talking it through", "Other (please specify)"],
					"other_option": "Other (please specify)",
				},
				{"id": "q11", "type": "blank", "prompt": "What is the boiling point of water in degrees Celsius at sea level?", "accepted_answers": ["100", "100 degrees", "one hundred"]},
				{"id": "q12", "type": "blank", "prompt": "What is the opposite of 'ancient'?", "accepted_answers": ["modern", "new"]},
			],
		},
		{
			"id": "section1_control",
			"title": "Section 1: Written questions (accommodation)",
			"modality": "written",
			"variant": "control",
			"questions": [
				{"id": "c1", "type": "blank", "prompt": "What colour is the sky on a clear day?", "accepted_answers": ["blue"]},
				{"id": "c2", "type": "blank", "prompt": "How many days are there in a week?", "accepted_answers": ["7", "seven"]},
				{"id": "c3", "type": "blank", "prompt": "What do bees make?", "accepted_answers": ["honey"]},
				{
					"id": "c4",
					"type": "multiple",
					"prompt": "Which animal is known as the king of the jungle?",
					"accepted_answers": ["Lion"],
					"options": ["Elephant", "Lion", "Tiger", "Giraffe"],
				},
				{"id": "c5", "type": "blank", "prompt": "What is 5 plus 3?", "accepted_answers": ["8", "eight"]},
				{"id": "c6", "type": "blank", "prompt": "Which season comes after winter?", "accepted_answers": ["spring"]},
			],
		},
		{
			"id": "section2_standard",
			"title": "Section 2: Spoken questions",
			"modality": "audio",
			"variant": "standard",
			"questions": [
				{"id": "a1", "type": "audio", "prompt": "Listen and answer aloud: what is the capital of Italy?", "tts_text": "What is the capital of Italy?", "accepted_answers": ["Rome"]},
				{"id": "a2", "type": "audio", "prompt": "Listen and answer aloud: how many legs does a spider have?", "tts_text": "How many legs does a spider have?", "accepted_answers": ["8", "eight"]},
				{"id": "a3", "type": "audio", "prompt": "Listen and answer aloud: what is the freezing point of water in Celsius?", "tts_text": "What is the freezing point of water in degrees Celsius?", "accepted_answers": ["0", "zero"]},
				{"id": "a4", "type": "audio", "prompt": "Listen and answer aloud: which planet is known as the red planet?", "tts_text": "Which planet is known as the red planet?", "accepted_answers": ["Mars"]},
				{"id": "a5", "type": "audio", "prompt": "Listen and answer aloud: what is 9 times 7?", "tts_text": "What is nine times seven?", "accepted_answers": ["63", "sixty-three", "sixty three"]},
				{"id": "a6", "type": "audio", "prompt": "Listen and answer aloud: who painted the Mona Lisa?", "tts_text": "Who painted the Mona Lisa?", "accepted_answers": ["Leonardo da Vinci", "da Vinci", "Leonardo"]},
				{"id": "a7", "type": "audio", "prompt": "Listen and answer aloud: what is the longest river in Africa?", "tts_text": "What is the longest river in Africa?", "accepted_answers": ["the Nile", "Nile"]},
				{"id": "a8", "type": "audio", "prompt": "Listen and answer aloud: what is the plural of 'mouse'?", "tts_text": "What is the plural of mouse?", "accepted_answers": ["mice"]},
				{"id": "a9", "type": "audio", "prompt": "Listen and answer aloud: which ocean is the largest?", "tts_text": "Which ocean is the largest?", "accepted_answers": ["Pacific", "the Pacific", "Pacific Ocean"]},
				{"id": "a10", "type": "audio", "prompt": "Describe, in one or two sentences, your favourite way to learn something new.", "tts_text": "Describe, in one or two sentences, your favourite way to learn something new.", "accepted_answers": []},
				{"id": "a11", "type": "audio", "prompt": "Listen and answer aloud: what is the square root of 81?", "tts_text": "What is the square root of eighty-one?", "accepted_answers": ["9", "nine"]},
				{"id": "a12", "type": "audio", "prompt": "Listen and answer aloud: in which country are the pyramids of Giza?", "tts_text": "In which country are the pyramids of Giza?", "accepted_answers": ["Egypt"]},
			],
		},
		{
			"id": "section2_control",
			"title": "Section 2: Spoken questions (accommodation)",
			"modality": "audio",
			"variant": "control",
			"questions": [
				{"id": "b1", "type": "audio", "prompt": "Listen and answer aloud: what sound does a cat make?", "tts_text": "What sound does a cat make?", "accepted_answers": ["meow", "miaow"]},
				{"id": "b2", "type": "audio", "prompt": "Listen and answer aloud: what is 2 plus 2?", "tts_text": "What is two plus two?", "accepted_answers": ["4", "four"]},
				{"id": "b3", "type": "audio", "prompt": "Listen and answer aloud: what colour is grass?", "tts_text": "What colour is grass?", "accepted_answers": ["green"]},
				{"id": "b4", "type": "audio", "prompt": "Listen and answer aloud: which meal do people eat in the morning?", "tts_text": "Which meal do people eat in the morning?", "accepted_answers": ["breakfast"]},
				{"id": "b5", "type": "audio", "prompt": "Listen and answer aloud: how many hours are in a day?", "tts_text": "How many hours are in a day?", "accepted_answers": ["24", "twenty-four", "twenty four"]},
				{"id": "b6", "type": "audio", "prompt": "Say your favourite colour.", "tts_text": "Say your favourite colour.", "accepted_answers": []},
			],
		},
	],
}


def question_key(section_id: str, question_id: str) -> str:
	return f"{section_id}_{question_id}"


def parse_question_key(key: str) -> Tuple[str, str]:
	# Section ids contain underscores, question ids never do
	section_id, sep, question_id = (key or "").rpartition("_")
	if not sep or not section_id or not question_id:
		raise NotFound(f"Malformed question key: {key!r}")
	return section_id, question_id


class QuestionBank:
	"""Read-only catalog of exam sections."""

	def __init__(self, data: Dict[str, Any] = EXAM_DATA) -> None:
		self.title: str = data.get("title", "")
		self.description: str = data.get("description", "")
		self.sections: List[Section] = [Section.model_validate(s) for s in data["sections"]]
		self._by_id: Dict[str, Section] = {s.id: s for s in self.sections}

	@property
	def section_ids(self) -> List[str]:
		return [s.id for s in self.sections]

	def section(self, section_id: str) -> Section:
		section = self._by_id.get(section_id)
		if section is None:
			raise NotFound(f"Unknown section: {section_id}")
		return section

	def question(self, section_id: str, question_id: str) -> Question:
		for q in self.section(section_id).questions:
			if q.id == question_id:
				return q
		raise NotFound(f"Unknown question {question_id} in section {section_id}")

	def resolve(self, key: str) -> Tuple[Section, Question]:
		section_id, question_id = parse_question_key(key)
		return self.section(section_id), self.question(section_id, question_id)

	def sampled_section(self, modality: str) -> Section:
		for s in self.sections:
			if s.modality == modality and s.sampled:
				return s
		raise NotFound(f"No sampled {modality} section")

	def pool(self, modality: str) -> List[str]:
		return [q.id for q in self.sampled_section(modality).questions]
