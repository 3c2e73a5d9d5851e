"""
Exam Taking Endpoints
=====================

HTTP face of the exam session state machine. Each call opens (or resumes)
the caller's session from stored progress and drives one transition.

API Endpoints:
- POST /exam/session: open or resume the attempt
- GET /exam/session: current snapshot
- POST /exam/navigate: next / previous / skip
- POST /exam/answers/text: save a written or multiple-choice answer
- POST /exam/answers/audio: upload a spoken answer (multipart)
- POST /exam/visibility: tab hidden/visible telemetry
- POST /exam/submit: finish the attempt
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import Field

from ..errors import AlreadyCompleted
from ..schemas import Document, Principal
from ..services import Services, get_services
from ..session import NAV_NEXT, NAV_PREVIOUS, NAV_SKIP, SessionState
from .auth import get_current_principal


router = APIRouter(prefix="/exam", tags=["exam"])


class NavigateRequest(Document):
	direction: str = Field(default=NAV_NEXT, pattern=f"^({NAV_NEXT}|{NAV_PREVIOUS}|{NAV_SKIP})$")


class TextAnswerRequest(Document):
	text: str
	other_text: Optional[str] = None


class VisibilityRequest(Document):
	hidden: bool


class SubmitRequest(Document):
	confirm: bool = False


@router.post("/session")
async def open_session(principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	"""Open the caller's attempt, resuming stored progress.

	Raises:
		AlreadyCompleted: a result already exists for this user (409)
		Forbidden: administrators do not take the exam (403)
	"""
	session = await services.manager.open(principal)
	return session.snapshot()


@router.get("/session")
async def get_session(principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	session = await services.manager.open(principal)
	return session.snapshot()


@router.post("/navigate")
async def navigate(req: NavigateRequest, principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	session = await services.manager.open(principal)
	moved = await session.navigate(req.direction)
	return {"moved": moved, **session.snapshot()}


@router.post("/answers/text")
async def save_text_answer(req: TextAnswerRequest, principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	session = await services.manager.open(principal)
	key, record = await session.save_text_answer(req.text, req.other_text)
	return {**session.snapshot(), "savedQuestionKey": key, "answer": record.to_doc()}


@router.post("/answers/audio")
async def save_audio_answer(
	file: UploadFile = File(...),
	audio_question_duration_ms: Optional[int] = Form(default=None, alias="audioQuestionDurationMs"),
	principal: Principal = Depends(get_current_principal),
	services: Services = Depends(get_services),
):
	"""Store a recorded answer and start its transcription in the background.

	The transcript, when it arrives, is merged into the answer recorded here
	even if the user has already moved on. An empty recording is kept and
	left for manual review.
	"""
	audio = await file.read()
	session = await services.manager.open(principal)
	key, record = await session.submit_audio(audio, audio_question_duration_ms=audio_question_duration_ms)
	return {**session.snapshot(), "savedQuestionKey": key, "answer": record.to_doc()}


@router.post("/visibility")
async def visibility(req: VisibilityRequest, principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)) -> Dict[str, Any]:
	source = services.hub.get(principal.uid)
	delivered = source.publish(req.hidden) if source is not None else 0
	session = services.manager.peek(principal.uid)
	return {"delivered": delivered, "tabChangeCount": session.tab_change_count if session else 0}


@router.post("/submit")
async def submit(req: SubmitRequest, principal: Principal = Depends(get_current_principal), services: Services = Depends(get_services)):
	"""Finish the attempt.

	Submitting again after the attempt finished returns the stored result
	instead of an error.
	"""
	session = services.manager.peek(principal.uid)
	if session is None or session.state is not SessionState.SUBMITTING:
		try:
			session = await services.manager.open(principal)
		except AlreadyCompleted:
			latest = services.manager.latest_result(principal.uid)
			if latest is None:
				raise
			result_id, result = latest
			return {
				"state": SessionState.SUBMITTED.value,
				"resultId": result_id,
				"answeredCount": result.get("answeredCount", 0),
				"totalQuestions": result.get("totalQuestions", 0),
				"tabChangeCount": result.get("tabChangeCount", 0),
			}
	result_id = await session.submit(confirmed=req.confirm)
	return {"resultId": result_id, **session.snapshot()}
