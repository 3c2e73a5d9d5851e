from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


QuestionType = Literal["blank", "multiple", "audio"]


class Question(BaseModel):
	id: str
	type: QuestionType
	prompt: str
	accepted_answers: List[str] = Field(default_factory=list)
	options: Optional[List[str]] = None
	# Option label that asks for a free-text suffix ("Other (please specify)")
	other_option: Optional[str] = None
	tts_text: Optional[str] = None

	model_config = ConfigDict(frozen=True)


class Section(BaseModel):
	id: str
	title: str
	modality: Literal["written", "audio"]
	variant: Literal["standard", "control"]
	questions: List[Question]

	model_config = ConfigDict(frozen=True)

	@property
	def sampled(self) -> bool:
		return self.variant == "standard"


class Document(BaseModel):
	"""Stored documents use camelCase keys."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def to_doc(self) -> Dict[str, Any]:
		return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TabChangeEvent(Document):
	timestamp: str
	was_hidden: bool
	duration_hidden_ms: Optional[int] = None

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ReviewRecord(Document):
	reviewer_id: str
	reviewer_email: Optional[str] = None
	corrected_transcript: str
	is_correct: bool
	reviewed_at: str
	audio_url: Optional[str] = None
	storage_path: Optional[str] = None
	mark: Optional[float] = None
	max_mark: Optional[float] = None


class AnswerRecord(Document):
	text: Optional[str] = None
	audio_url: Optional[str] = None
	storage_path: Optional[str] = None
	time_to_answer_ms: int = 0
	question_displayed_at: str
	answered_at: str
	audio_question_duration_ms: Optional[int] = None
	expected_answers: Optional[List[str]] = None
	review: Optional[ReviewRecord] = None


class ExamProgress(Document):
	start_timestamp: Optional[int] = None  # epoch milliseconds
	current_section: Optional[str] = None
	current_question_index: int = 0
	answers: Dict[str, AnswerRecord] = Field(default_factory=dict)
	submitted: bool = False
	tab_change_events: List[TabChangeEvent] = Field(default_factory=list)
	tab_change_count: int = 0
	written_question_ids: Optional[List[str]] = None
	audio_question_ids: Optional[List[str]] = None


class AnalysisEntry(Document):
	correct: bool
	user_answer: str
	expected_answers: List[str] = Field(default_factory=list)
	reviewer_id: Optional[str] = None
	reviewer_email: Optional[str] = None
	corrected_transcript: Optional[str] = None
	reviewed_at: Optional[str] = None
	mark: Optional[float] = None
	max_mark: Optional[float] = None


class ExamResult(Document):
	user_id: str
	email: Optional[str] = None
	answers: Dict[str, AnswerRecord] = Field(default_factory=dict)
	analysis: Dict[str, AnalysisEntry] = Field(default_factory=dict)
	score: int = 0
	correct_answers: int = 0
	timestamp: str
	time_spent: int = 0  # seconds
	total_questions: int = 0
	answered_count: int = 0
	tab_change_events: List[TabChangeEvent] = Field(default_factory=list)
	tab_change_count: int = 0


class Principal(BaseModel):
	uid: str
	email: Optional[str] = None
	is_admin: bool = False
	# Raw bearer token, forwarded to the transcription endpoint
	token: Optional[str] = Field(default=None, repr=False)
