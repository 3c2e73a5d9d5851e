from __future__ import annotations
from typing import Optional


class ExamertricError(Exception):
	"""Base for every error the API turns into a user-facing message."""

	status_code: int = 500
	code: str = "error"

	def __init__(self, detail: str = "") -> None:
		super().__init__(detail)
		self.detail = detail or self.__class__.__name__


class Unauthenticated(ExamertricError):
	status_code = 401
	code = "unauthenticated"


class Forbidden(ExamertricError):
	status_code = 403
	code = "forbidden"


class AlreadyCompleted(ExamertricError):
	status_code = 409
	code = "already-completed"


class ValidationFailed(ExamertricError):
	status_code = 422
	code = "validation-failed"


class ConfirmationRequired(ExamertricError):
	status_code = 409
	code = "confirmation-required"


class InvalidTransition(ExamertricError):
	status_code = 409
	code = "invalid-transition"


class UploadFailed(ExamertricError):
	status_code = 502
	code = "upload-failed"


class TranscriptionFailed(ExamertricError):
	status_code = 502
	code = "transcription-failed"


class NotFound(ExamertricError):
	status_code = 404
	code = "not-found"


PERMISSION_DENIED = "permission-denied"
UNAVAILABLE = "unavailable"
UNKNOWN = "unknown"

_CATEGORY_MESSAGES = {
	PERMISSION_DENIED: "Permission denied by the data store. Check the database access rules for this account.",
	UNAVAILABLE: "The data store is unreachable. Check your connection and try again.",
	UNKNOWN: "Could not save your data. Please try again.",
}


def classify_persistence_error(message: str) -> str:
	text = (message or "").lower()
	if "permission" in text or "denied" in text or "readonly" in text or "read-only" in text:
		return PERMISSION_DENIED
	if "unavailable" in text or "unable to open" in text or "network" in text or "timeout" in text or "connection" in text:
		return UNAVAILABLE
	return UNKNOWN


class PersistenceFailed(ExamertricError):
	"""Store read/write failure, classified into a user-facing category."""

	code = "persistence-failed"

	def __init__(self, detail: str = "", category: Optional[str] = None) -> None:
		super().__init__(detail)
		self.category = category or classify_persistence_error(detail)
		self.status_code = 503 if self.category == UNAVAILABLE else 500

	@property
	def user_message(self) -> str:
		return _CATEGORY_MESSAGES[self.category]
