from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from ..question_bank import parse_question_key
from ..reconciliation import apply_review, list_candidates, list_review_items
from ..schemas import Document, Principal
from ..services import Services, get_services
from .auth import require_admin


router = APIRouter(prefix="/admin", tags=["admin"])


class ReviewRequest(Document):
	user_id: str
	question_key: str
	corrected_transcript: str = ""
	is_correct: bool
	mark: Optional[float] = Field(default=None, ge=0)
	max_mark: Optional[float] = Field(default=None, gt=0)


@router.get("/users")
async def users(admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
	return list_candidates(services.store)


@router.get("/users/{uid}/answers")
async def user_answers(
	uid: str,
	pending_only: bool = False,
	admin: Principal = Depends(require_admin),
	services: Services = Depends(get_services),
):
	return list_review_items(services.store, uid, pending_only=pending_only)


@router.post("/reviews")
async def review(req: ReviewRequest, admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
	"""Grade one spoken answer and recompute every result that holds it."""
	parse_question_key(req.question_key)
	outcome = apply_review(
		services.store,
		admin,
		user_id=req.user_id,
		question_key=req.question_key,
		corrected_transcript=req.corrected_transcript,
		is_correct=req.is_correct,
		mark=req.mark,
		max_mark=req.max_mark,
		clock=services.clock,
	)
	return {
		"review": outcome.review.to_doc(),
		"updatedResults": outcome.updated_results,
		"failedResults": outcome.failed_results,
	}
