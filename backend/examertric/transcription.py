from __future__ import annotations
import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import speech_v1p1beta1 as speech

from .errors import TranscriptionFailed
from .scoring import matches_accepted
from .settings import settings


@dataclass
class TranscriptionResult:
	transcript: str
	confidence: float
	is_correct: bool

	def to_dict(self) -> Dict[str, Any]:
		return {"transcript": self.transcript, "confidence": self.confidence, "isCorrect": self.is_correct}


class Transcriber(Protocol):
	async def transcribe(self, audio: bytes, metadata: Dict[str, Any], *, token: Optional[str] = None) -> TranscriptionResult: ...

	async def aclose(self) -> None: ...


def _expected_answers(metadata: Dict[str, Any]) -> List[str]:
	expected = metadata.get("expectedAnswers") or []
	if not isinstance(expected, list):
		return []
	return [str(a) for a in expected]


class SpeechTranscriber:
	"""Google Cloud Speech-to-Text, called in-process."""

	def __init__(
		self,
		client: Optional[Any] = None,
		*,
		sample_rate_hertz: Optional[int] = None,
		language_code: Optional[str] = None,
	) -> None:
		self._client = client
		self.sample_rate_hertz = sample_rate_hertz or settings.speech_sample_rate_hertz
		self.language_code = language_code or settings.speech_language_code

	def _get_client(self) -> Any:
		if self._client is None:
			try:
				self._client = speech.SpeechClient()
			except (GoogleAuthError, GoogleAPIError) as e:
				raise TranscriptionFailed(f"Speech client unavailable: {e}") from e
		return self._client

	def _recognize(self, audio: bytes, language_code: str) -> tuple[str, float]:
		config = speech.RecognitionConfig(
			encoding=speech.RecognitionConfig.AudioEncoding.WEBM_OPUS,
			sample_rate_hertz=self.sample_rate_hertz,
			language_code=language_code,
			enable_automatic_punctuation=True,
			model="default",
		)
		try:
			response = self._get_client().recognize(config=config, audio=speech.RecognitionAudio(content=audio))
		except GoogleAPIError as e:
			raise TranscriptionFailed(f"Speech API error: {e}") from e
		results = [r for r in response.results if r.alternatives]
		transcript = " ".join(r.alternatives[0].transcript for r in results).strip()
		confidence = float(results[0].alternatives[0].confidence) if results else 0.0
		return transcript, confidence

	async def transcribe(self, audio: bytes, metadata: Dict[str, Any], *, token: Optional[str] = None) -> TranscriptionResult:
		if not audio:
			raise TranscriptionFailed("Empty audio payload received.")
		language_code = str(metadata.get("languageCode") or self.language_code)
		transcript, confidence = await asyncio.to_thread(self._recognize, audio, language_code)
		return TranscriptionResult(
			transcript=transcript,
			confidence=confidence,
			is_correct=matches_accepted(transcript, _expected_answers(metadata)) if transcript else False,
		)

	async def aclose(self) -> None:
		return None


class HttpTranscriber:
	"""Client for a remote speech-to-text endpoint (bearer-token authenticated)."""

	def __init__(self, url: Optional[str] = None, *, client: Optional[httpx.AsyncClient] = None, timeout: float = 30) -> None:
		self.url = url or settings.speech_function_url
		if not self.url:
			raise ValueError("SPEECH_FUNCTION_URL is not configured")
		self._client = client or httpx.AsyncClient(timeout=timeout)

	async def transcribe(self, audio: bytes, metadata: Dict[str, Any], *, token: Optional[str] = None) -> TranscriptionResult:
		if not token:
			raise TranscriptionFailed("Not authenticated")
		payload = {"audioBase64": base64.b64encode(audio).decode("ascii"), "metadata": metadata}
		headers = {"Authorization": f"Bearer {token}"}
		try:
			r = await self._client.post(self.url, json=payload, headers=headers)
		except httpx.RequestError as e:
			raise TranscriptionFailed(f"Transcription request failed: {e}") from e
		if r.status_code >= 400:
			message = f"Request failed: {r.status_code}"
			try:
				body = r.json()
				if isinstance(body, dict):
					message = body.get("error") or body.get("detail") or body.get("message") or message
			except ValueError:
				if r.text:
					message = r.text
			raise TranscriptionFailed(str(message))
		try:
			data = r.json()
			return TranscriptionResult(
				transcript=str(data.get("transcript") or ""),
				confidence=float(data.get("confidence") or 0.0),
				is_correct=bool(data.get("isCorrect")),
			)
		except (ValueError, TypeError, AttributeError) as e:
			raise TranscriptionFailed(f"Unexpected transcription response: {r.text}") from e

	async def aclose(self) -> None:
		await self._client.aclose()
