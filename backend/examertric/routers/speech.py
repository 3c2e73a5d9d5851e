from __future__ import annotations
import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from ..errors import ExamertricError, Unauthenticated
from ..services import Services, get_services
from ..timeutil import to_iso
from .auth import verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/speech-to-text", tags=["speech"])


def _error(status_code: int, message: str) -> JSONResponse:
	return JSONResponse(status_code=status_code, content={"error": message})


def _bearer(request: Request) -> str:
	header = request.headers.get("authorization") or ""
	if not header.startswith("Bearer "):
		raise Unauthenticated("Unauthorized")
	return header[len("Bearer "):].strip()


async def _read_multipart(request: Request) -> Tuple[Optional[bytes], Dict[str, Any]]:
	"""First file part is the audio; text fields are JSON-decoded into metadata by name."""
	form = await request.form()
	audio: Optional[bytes] = None
	metadata: Dict[str, Any] = {}
	for name, value in form.multi_items():
		if isinstance(value, UploadFile):
			if audio is None:
				audio = await value.read()
			continue
		try:
			parsed = json.loads(value)
		except ValueError:
			parsed = value
		if name == "metadata" and isinstance(parsed, dict):
			metadata.update(parsed)
		else:
			metadata[name] = parsed
	return audio, metadata


@router.post("")
async def speech_to_text(request: Request, services: Services = Depends(get_services)):
	"""Transcribe a WEBM/Opus clip (base64 JSON or multipart upload) and grade it against ``metadata.expectedAnswers``.

	Errors are returned as ``{"error": message}``: 401 for a missing or bad
	token, 400 when no audio is sent, 500 for anything else.
	"""
	try:
		principal = verify_token(_bearer(request))
	except Unauthenticated:
		return _error(401, "Unauthorized")

	if (request.headers.get("content-type") or "").startswith("multipart/form-data"):
		audio, metadata = await _read_multipart(request)
		if not audio:
			return _error(400, "Missing audio payload.")
	else:
		try:
			body = await request.json()
		except ValueError:
			body = None
		if not isinstance(body, dict):
			body = {}
		encoded = body.get("audioBase64") or body.get("audio")
		if not encoded:
			return _error(400, "Missing audio payload.")
		metadata = body.get("metadata") if isinstance(body.get("metadata"), dict) else {}
		try:
			audio = base64.b64decode(encoded, validate=True)
		except (binascii.Error, ValueError, TypeError):
			return _error(400, "Audio payload is not valid base64.")

	try:
		result = await services.recognizer.transcribe(audio, metadata)
		record = {
			**result.to_dict(),
			"metadata": metadata,
			"createdAt": to_iso(services.clock()),
		}
		services.store.write(services.store.push_create(f"speechTranscripts/{principal.uid}"), record)
	except ExamertricError as e:
		logger.error("Speech-to-text failed for %s: %s", principal.uid, e.detail)
		return _error(500, e.detail)
	return result.to_dict()
